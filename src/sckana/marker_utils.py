from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from scipy.stats import rankdata

from .errors import MarkerError
from .matrices import drop_unused_levels

LOGGER = logging.getLogger(__name__)

EFFECTS = ("lfc", "delta_detected", "auc", "cohen")
SUMMARIES = ("min", "mean", "min_rank")


@dataclass
class MarkerResults:
    """
    Per-group marker statistics for one modality.

    ``means`` and ``detected`` are groups x features; ``effects[effect][summary]``
    is groups x features as well. ``auc`` is absent when it was not computed.
    """

    means: np.ndarray
    detected: np.ndarray
    effects: Dict[str, Dict[str, np.ndarray]] = field(default_factory=dict)

    def num_groups(self) -> int:
        return int(self.means.shape[0])

    def num_features(self) -> int:
        return int(self.means.shape[1])

    def has_auc(self) -> bool:
        return "auc" in self.effects

    def group(self, g: int) -> Dict[str, object]:
        """Copies of every statistic for group ``g``."""
        if not 0 <= g < self.num_groups():
            raise MarkerError("UnknownGroup", f"group {g} is out of range for {self.num_groups()} groups", group=g)
        out: Dict[str, object] = {"means": self.means[g].copy(), "detected": self.detected[g].copy()}
        for effect, summaries in self.effects.items():
            out[effect] = {s: v[g].copy() for s, v in summaries.items()}
        return out


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _dense_columns(mat, cols: np.ndarray) -> np.ndarray:
    sub = mat[:, cols]
    if sp.issparse(sub):
        return np.asarray(sub.toarray(), dtype=np.float64)
    return np.asarray(sub, dtype=np.float64)


def _group_stats(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Mean, variance and detected proportion per feature (features x cells input)."""
    n = values.shape[1]
    means = values.mean(axis=1) if n else np.zeros(values.shape[0])
    var = values.var(axis=1, ddof=1) if n > 1 else np.zeros(values.shape[0])
    detected = (values > 0).mean(axis=1) if n else np.zeros(values.shape[0])
    return means, var, detected


def _cohen(mean_l, var_l, mean_r, var_r, threshold: float) -> np.ndarray:
    delta = mean_l - mean_r - threshold
    sd = np.sqrt((var_l + var_r) / 2.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        d = delta / sd
    d[sd == 0] = np.sign(delta[sd == 0]) * np.inf
    d[(sd == 0) & (delta == 0)] = 0.0
    return d


def _auc(left: np.ndarray, right: np.ndarray, threshold: float) -> np.ndarray:
    """Probability that a left cell exceeds a right cell (+ threshold), ties counted half."""
    nl, nr = left.shape[1], right.shape[1]
    if nl == 0 or nr == 0:
        return np.full(left.shape[0], np.nan)
    combined = np.concatenate([left - threshold, right], axis=1)
    ranks = rankdata(combined, method="average", axis=1)
    u = ranks[:, :nl].sum(axis=1) - nl * (nl + 1) / 2.0
    return u / (nl * nr)


def _min_rank(pairwise: List[np.ndarray]) -> np.ndarray:
    best = None
    for eff in pairwise:
        if np.all(np.isnan(eff)):
            continue
        r = rankdata(-np.nan_to_num(eff, nan=-np.inf), method="ordinal").astype(np.float64)
        best = r if best is None else np.minimum(best, r)
    return best


def _summarize(pairwise: List[np.ndarray], nfeatures: int) -> Dict[str, np.ndarray]:
    if not pairwise:
        empty = np.full(nfeatures, np.nan)
        return {"min": empty, "mean": empty.copy(), "min_rank": empty.copy()}

    stacked = np.vstack(pairwise)
    usable = ~np.all(np.isnan(stacked), axis=1)
    if not usable.any():
        empty = np.full(nfeatures, np.nan)
        return {"min": empty, "mean": empty.copy(), "min_rank": empty.copy()}

    stacked = stacked[usable]
    return {
        "min": np.min(stacked, axis=0),
        "mean": np.mean(stacked, axis=0),
        "min_rank": _min_rank([p for p, u in zip(pairwise, usable) if u]),
    }


# ---------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------
def score_markers(
    mat,
    groups: Sequence[int],
    *,
    block: Optional[Sequence[int]] = None,
    lfc_threshold: float = 0.0,
    compute_auc: bool = True,
) -> MarkerResults:
    """
    Marker statistics for every group of a features x cells log-expression matrix.

    Each group is compared against every other group; within a block the
    effect sizes of a pair are computed from the cells of that block only
    and then averaged over blocks, weighted by the product of group sizes.
    Pairwise effects are summarised across partner groups as the minimum,
    the mean and the best (smallest) rank.
    """
    groups = np.asarray(groups, dtype=np.int64)
    nfeatures, ncells = mat.shape
    if groups.shape[0] != ncells:
        raise MarkerError(
            "LengthMismatch",
            f"{groups.shape[0]} group assignments for {ncells} cells",
            expected=ncells,
            observed=int(groups.shape[0]),
        )
    if ncells == 0:
        raise MarkerError("EmptyGroup", "no cells available for marker detection")

    ngroups = int(groups.max()) + 1
    if block is None:
        block = np.zeros(ncells, dtype=np.int64)
    block = np.asarray(block, dtype=np.int64)
    nblocks = int(block.max()) + 1 if block.size else 1

    # overall per-group means and detected proportions
    means = np.zeros((ngroups, nfeatures))
    detected = np.zeros((ngroups, nfeatures))
    per_block: Dict[Tuple[int, int], Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]] = {}
    for g in range(ngroups):
        cols = np.flatnonzero(groups == g)
        if cols.size == 0:
            raise MarkerError("EmptyGroup", f"group {g} contains no cells", group=g)
        values = _dense_columns(mat, cols)
        means[g], _, detected[g] = _group_stats(values)
        for b in range(nblocks):
            in_block = block[cols] == b
            if in_block.any():
                sub = values[:, in_block]
                m, v, d = _group_stats(sub)
                per_block[(g, b)] = (sub, m, v, d)

    effects = [e for e in EFFECTS if compute_auc or e != "auc"]
    pairwise: Dict[str, List[List[np.ndarray]]] = {e: [[] for _ in range(ngroups)] for e in effects}

    for g in range(ngroups):
        for h in range(ngroups):
            if g == h:
                continue
            totals = {e: np.zeros(nfeatures) for e in effects}
            weight = 0.0
            for b in range(nblocks):
                if (g, b) not in per_block or (h, b) not in per_block:
                    continue
                vl, ml, sl, dl = per_block[(g, b)]
                vr, mr, sr, dr = per_block[(h, b)]
                w = float(vl.shape[1] * vr.shape[1])
                totals["lfc"] += w * (ml - mr)
                totals["delta_detected"] += w * (dl - dr)
                totals["cohen"] += w * _cohen(ml, sl, mr, sr, lfc_threshold)
                if compute_auc:
                    totals["auc"] += w * _auc(vl, vr, lfc_threshold)
                weight += w

            for e in effects:
                pairwise[e][g].append(totals[e] / weight if weight > 0 else np.full(nfeatures, np.nan))

    summarized = {e: {s: np.zeros((ngroups, nfeatures)) for s in SUMMARIES} for e in effects}
    for e in effects:
        for g in range(ngroups):
            for s, v in _summarize(pairwise[e][g], nfeatures).items():
                summarized[e][s][g] = v

    LOGGER.debug("Scored markers for %d groups over %d features", ngroups, nfeatures)
    return MarkerResults(means=means, detected=detected, effects=summarized)


def score_versus(
    mat,
    keep: Sequence[int],
    groups: Sequence[int],
    *,
    block: Optional[Sequence[int]] = None,
    lfc_threshold: float = 0.0,
    compute_auc: bool = True,
) -> MarkerResults:
    """Two-group scoring over the ``keep`` columns; unused block levels are dropped first."""
    keep = np.asarray(keep, dtype=np.int64)
    sub_block = None
    if block is not None:
        codes = np.asarray(block)[keep]
        sub_block, _ = drop_unused_levels(codes, [str(i) for i in range(int(np.max(block)) + 1)])
    return score_markers(
        mat[:, keep],
        groups,
        block=sub_block,
        lfc_threshold=lfc_threshold,
        compute_auc=compute_auc,
    )


# ---------------------------------------------------------------------
# Versus cache
# ---------------------------------------------------------------------
def locate_versus(cache: Dict, left: int, right: int) -> Tuple[Dict, bool, bool]:
    """
    Entry for the unordered pair ``{left, right}`` in ``cache``.

    Returns (entry, needs_run, left_small); in the entry the smaller id is group 0.
    """
    left_small = left < right
    big, small = (right, left) if left_small else (left, right)
    inner = cache.setdefault(big, {})
    run = small not in inner
    if run:
        inner[small] = {}
    return inner[small], run, left_small


def versus_groups(left_ids: Sequence[int], right_ids: Sequence[int], left_small: bool) -> Tuple[np.ndarray, np.ndarray]:
    """Sorted cell indices and their 0/1 group codes (the smaller id is group 0)."""
    left_code, right_code = (0, 1) if left_small else (1, 0)
    idx = np.concatenate([np.asarray(left_ids, dtype=np.int64), np.asarray(right_ids, dtype=np.int64)])
    codes = np.concatenate([
        np.full(len(left_ids), left_code, dtype=np.int64),
        np.full(len(right_ids), right_code, dtype=np.int64),
    ])
    order = np.argsort(idx, kind="stable")
    return idx[order], codes[order]
