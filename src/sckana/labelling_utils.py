from __future__ import annotations

import gzip
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.stats import rankdata

from .errors import LabellingError
from .matrices import INVALID_BLOCK, convert_to_factor

LOGGER = logging.getLogger(__name__)

REFERENCE_BASE_URL = "https://github.com/kanaverse/singlepp-references/releases/download/2023-04-28"

# Taxonomy id -> references with pre-ranked expression profiles.
AVAILABLE_REFERENCES = {
    "9606": [
        "BlueprintEncode",
        "DatabaseImmuneCellExpression",
        "HumanPrimaryCellAtlas",
        "MonacoImmune",
        "NovershternHematopoietic",
    ],
    "10090": ["ImmGen", "MouseRNAseq"],
}

GENE_ID_TYPES = ("ENSEMBL", "SYMBOL", "ENTREZ")

# A label's score is this quantile of the correlations with its samples.
QUANTILE = 0.8
# Labels within this distance of the top score go through another round of fine-tuning.
TUNE_THRESHOLD = 0.05


@dataclass
class LabelReference:
    """A downloaded reference: ranked profiles (samples x genes), sample labels and pairwise markers."""

    name: str
    ranks: np.ndarray
    labels: np.ndarray
    label_names: List[str]
    markers: Dict[Tuple[int, int], np.ndarray]
    genes: Dict[str, List[Optional[List[str]]]] = field(default_factory=dict)


@dataclass
class TrainedReference:
    """
    A reference restricted to the genes it shares with one dataset.

    ``test_indices[p]`` is the dataset row of shared gene ``p``; ``ranks`` and
    ``markers`` are expressed in shared-gene positions.
    """

    name: str
    label_names: List[str]
    labels: np.ndarray
    ranks: np.ndarray
    test_indices: np.ndarray
    markers: Dict[Tuple[int, int], np.ndarray]

    def num_features(self) -> int:
        return int(self.test_indices.size)


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------
_REFERENCES: Dict[str, LabelReference] = {}


def flush_references() -> None:
    """Drop every cached reference."""
    _REFERENCES.clear()


def _lines(payload: bytes) -> List[str]:
    with gzip.open(io.BytesIO(payload), "rt", encoding="utf-8") as fh:
        return [line.rstrip("\r\n") for line in fh]


def parse_ranks(payload: bytes) -> np.ndarray:
    """One sample per line, comma-separated ranks for every gene."""
    rows = [np.array(line.split(","), dtype=np.float64) for line in _lines(payload) if line]
    if not rows:
        return np.zeros((0, 0))
    return np.vstack(rows)


def parse_markers(payload: bytes) -> Dict[Tuple[int, int], np.ndarray]:
    """Lines of ``<label>\\t<other label>\\t<gene>...``: markers of the first label over the second."""
    out = {}
    for line in _lines(payload):
        if not line:
            continue
        fields = line.split("\t")
        genes = np.array([int(x) for x in fields[2:] if x != ""], dtype=np.int64)
        out[(int(fields[0]), int(fields[1]))] = genes
    return out


def parse_genes(payload: bytes) -> List[Optional[List[str]]]:
    """One line per reference gene; several ids are tab-separated and an empty line means no id."""
    return [line.split("\t") if line else None for line in _lines(payload)]


def fetch_reference(name: str, gene_id_type: str, download) -> LabelReference:
    """
    Reference ``name`` with gene ids of ``gene_id_type``, cached process-wide.
    ``download(url) -> bytes`` fetches each gzipped file.
    """
    gene_id_type = str(gene_id_type).upper()
    if gene_id_type not in GENE_ID_TYPES:
        raise LabellingError(
            "UnknownGeneType",
            f"unknown gene id type '{gene_id_type}'. Available: {', '.join(GENE_ID_TYPES)}",
            gene_id_type=gene_id_type,
        )

    def get(suffix: str) -> bytes:
        return download(f"{REFERENCE_BASE_URL}/{name}_{suffix}")

    ref = _REFERENCES.get(name)
    if ref is None:
        ranks = parse_ranks(get("matrix.csv.gz"))
        labels = np.array([int(x) for x in _lines(get("labels_fine.csv.gz")) if x], dtype=np.int64)
        label_names = [x for x in _lines(get("label_names_fine.csv.gz")) if x]
        markers = parse_markers(get("markers_fine.gmt.gz"))
        if labels.size != ranks.shape[0]:
            raise LabellingError(
                "MalformedReference",
                f"reference '{name}' has {ranks.shape[0]} profiles but {labels.size} labels",
                reference=name,
            )
        if labels.size and (labels.min() < 0 or labels.max() >= len(label_names)):
            raise LabellingError("MalformedReference", f"reference '{name}' has out-of-range labels", reference=name)

        ref = LabelReference(name, ranks, labels, label_names, markers)
        _REFERENCES[name] = ref
        LOGGER.info("Cached reference %s with %d profiles and %d labels", name, labels.size, len(label_names))

    if gene_id_type not in ref.genes:
        genes = parse_genes(get(f"genes_{gene_id_type.lower()}.csv.gz"))
        if len(genes) != ref.ranks.shape[1]:
            raise LabellingError(
                "MalformedReference",
                f"reference '{name}' has {ref.ranks.shape[1]} genes but {len(genes)} {gene_id_type} ids",
                reference=name,
            )
        ref.genes[gene_id_type] = genes
    return ref


def references_for(species: Sequence[str]) -> List[str]:
    out: List[str] = []
    for s in species:
        for name in AVAILABLE_REFERENCES.get(str(s), []):
            if name not in out:
                out.append(name)
    return out


# ---------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------
def train_reference(ref: LabelReference, test_ids: Sequence[str], gene_id_type: str) -> TrainedReference:
    """Match reference genes to dataset rows (first match wins on both sides)."""
    lookup: Dict[str, int] = {}
    for i, x in enumerate(test_ids):
        lookup.setdefault(str(x), i)

    ref_idx, test_idx, used = [], [], set()
    for j, ids in enumerate(ref.genes[str(gene_id_type).upper()]):
        if ids is None:
            continue
        for x in ids:
            i = lookup.get(x)
            if i is not None and i not in used:
                ref_idx.append(j)
                test_idx.append(i)
                used.add(i)
                break

    ref_idx = np.asarray(ref_idx, dtype=np.int64)
    position = np.full(ref.ranks.shape[1], -1, dtype=np.int64)
    position[ref_idx] = np.arange(ref_idx.size)

    markers = {}
    for key, genes in ref.markers.items():
        genes = genes[(genes >= 0) & (genes < position.size)]
        pos = position[genes]
        markers[key] = pos[pos >= 0]

    LOGGER.info("Reference %s shares %d genes with the dataset", ref.name, ref_idx.size)
    return TrainedReference(
        name=ref.name,
        label_names=list(ref.label_names),
        labels=ref.labels.copy(),
        ranks=ref.ranks[:, ref_idx],
        test_indices=np.asarray(test_idx, dtype=np.int64),
        markers=markers,
    )


# ---------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------
def _spearman(profile: np.ndarray, ref: np.ndarray) -> np.ndarray:
    """Spearman correlation of one profile with every row of ``ref``."""
    if profile.size < 2:
        return np.zeros(ref.shape[0])
    x = rankdata(profile)
    y = rankdata(ref, axis=1)
    x = x - x.mean()
    y = y - y.mean(axis=1, keepdims=True)
    denom = np.sqrt((x ** 2).sum() * (y ** 2).sum(axis=1))
    with np.errstate(divide="ignore", invalid="ignore"):
        rho = (y @ x) / denom
    return np.nan_to_num(rho, nan=0.0)


def _markers_among(trained: TrainedReference, labels: Optional[set] = None) -> np.ndarray:
    chosen = [
        genes for (a, b), genes in trained.markers.items()
        if labels is None or (a in labels and b in labels)
    ]
    chosen = [g for g in chosen if g.size]
    if not chosen:
        return np.arange(trained.num_features())
    return np.unique(np.concatenate(chosen))


def _label_markers(trained: TrainedReference, label: int) -> np.ndarray:
    chosen = [genes for (a, _), genes in trained.markers.items() if a == label and genes.size]
    if not chosen:
        return np.zeros(0, dtype=np.int64)
    return np.unique(np.concatenate(chosen))


def _label_scores(profile: np.ndarray, trained: TrainedReference, genes: np.ndarray, labels: np.ndarray) -> np.ndarray:
    rho = _spearman(profile[genes], trained.ranks[:, genes])
    scores = np.full(len(labels), np.nan)
    for k, label in enumerate(labels):
        samples = trained.labels == label
        if samples.any():
            scores[k] = np.quantile(rho[samples], QUANTILE)
    return scores


def _near_top(scores: np.ndarray) -> np.ndarray:
    if not np.isfinite(scores).any():
        return np.zeros(1, dtype=np.int64)
    top = np.nanmax(scores)
    return np.flatnonzero(scores >= top - TUNE_THRESHOLD)


def classify_profile(profile: np.ndarray, trained: TrainedReference) -> Tuple[np.ndarray, int]:
    """
    Score every label for one profile in the shared-gene space, then narrow
    the near-best labels down using only the markers between them.
    """
    nlabels = len(trained.label_names)
    scores = _label_scores(profile, trained, _markers_among(trained), np.arange(nlabels))

    candidates = np.arange(nlabels)
    current = scores
    while True:
        keep = _near_top(current)
        if keep.size == 1 or keep.size == candidates.size:
            top = current[keep]
            pick = int(np.nanargmax(top)) if np.isfinite(top).any() else 0
            return scores, int(candidates[keep[pick]])
        candidates = candidates[keep]
        genes = _markers_among(trained, set(candidates.tolist()))
        current = _label_scores(profile, trained, genes, candidates)


def label_profiles(profiles, trained: TrainedReference) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    Label each column of a genes x groups matrix of average profiles.
    Returns the per-label scores (groups x labels) and the best label index of each group.
    """
    profiles = np.asarray(profiles, dtype=np.float64)
    sub = profiles[trained.test_indices, :]
    ngroups = sub.shape[1]
    scores = np.full((ngroups, len(trained.label_names)), np.nan)
    best = np.zeros(ngroups, dtype=np.int64)
    for g in range(ngroups):
        scores[g], best[g] = classify_profile(sub[:, g], trained)
    return pd.DataFrame(scores, columns=trained.label_names), best


def integrate_labels(profiles, trained: Sequence[TrainedReference], assigned: Sequence[np.ndarray]) -> pd.DataFrame:
    """
    Compare the labels assigned by several references. For each group, every
    reference's assigned label is rescored on the union of the assigned
    labels' markers; returns the scores (groups x references).
    """
    profiles = np.asarray(profiles, dtype=np.float64)
    ngroups = profiles.shape[1]
    scores = np.full((ngroups, len(trained)), np.nan)

    for g in range(ngroups):
        union = set()
        for ref, labels in zip(trained, assigned):
            union.update(ref.test_indices[_label_markers(ref, int(labels[g]))].tolist())
        union = np.array(sorted(union), dtype=np.int64)

        for r, (ref, labels) in enumerate(zip(trained, assigned)):
            pos = np.flatnonzero(np.isin(ref.test_indices, union))
            samples = ref.labels == labels[g]
            if pos.size < 2 or not samples.any():
                continue
            rho = _spearman(profiles[ref.test_indices[pos], g], ref.ranks[np.ix_(samples, pos)])
            scores[g, r] = np.quantile(rho, QUANTILE)

    return pd.DataFrame(scores, columns=[ref.name for ref in trained])


def group_means(matrix, group) -> Tuple[np.ndarray, List]:
    """Average genes x cells columns per group; groups are the sorted distinct non-missing values."""
    ncols = matrix.shape[1]
    group = list(group)
    if len(group) != ncols:
        raise LabellingError(
            "LengthMismatch",
            f"group assignments should have one entry per column ({ncols}), got {len(group)}",
            expected=ncols,
            observed=len(group),
        )

    codes, levels = convert_to_factor(group)
    out = np.zeros((matrix.shape[0], len(levels)), dtype=np.float64)
    for k in range(len(levels)):
        cols = np.flatnonzero(codes == k)
        sub = matrix[:, cols]
        out[:, k] = np.asarray(sub.mean(axis=1)).ravel()
    dropped = int((codes == INVALID_BLOCK).sum())
    if dropped:
        LOGGER.warning("Ignoring %d columns without a group", dropped)
    return out, levels


def as_dense(matrix) -> np.ndarray:
    if sp.issparse(matrix):
        return np.asarray(matrix.toarray(), dtype=np.float64)
    return np.asarray(matrix, dtype=np.float64)
