from __future__ import annotations

import gzip
import io
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
from scipy.stats import hypergeom

from .errors import EnrichmentError
from .marker_utils import EFFECTS, SUMMARIES, MarkerResults

LOGGER = logging.getLogger(__name__)

FEATURE_SET_BASE_URL = "https://github.com/LTLA/kana-feature-sets/releases/download"


@dataclass
class FeatureSetCollection:
    """A downloaded collection: feature ids per id type and sets of feature indices."""

    name: str
    features: pd.DataFrame
    set_names: List[str]
    descriptions: List[str]
    members: List[np.ndarray]


@dataclass
class MappedCollection:
    """
    A collection restricted to the features it shares with a dataset.
    ``target_indices`` are dataset rows; ``sets`` index into ``target_indices``.
    """

    name: str
    set_names: List[str]
    descriptions: List[str]
    sets: List[np.ndarray]
    target_indices: np.ndarray

    def sizes(self) -> np.ndarray:
        return np.array([s.size for s in self.sets], dtype=np.int32)


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------
_COLLECTIONS: Dict[str, FeatureSetCollection] = {}


def flush_feature_sets() -> None:
    """Drop every cached collection."""
    _COLLECTIONS.clear()


def parse_sets(payload: bytes):
    """Lines of ``name\\tdescription\\tfirst\\tdelta...``; members are delta-encoded feature indices."""
    names, descriptions, members = [], [], []
    with gzip.open(io.BytesIO(payload), "rt", encoding="utf-8") as fh:
        for line in fh:
            line = line.rstrip("\r\n")
            if not line:
                continue
            fields = line.split("\t")
            names.append(fields[0])
            descriptions.append(fields[1] if len(fields) > 1 else "")
            deltas = np.array([int(x) for x in fields[2:] if x != ""], dtype=np.int64)
            members.append(np.cumsum(deltas))
    return names, descriptions, members


def fetch_collection(name: str, download) -> FeatureSetCollection:
    """Collection ``name`` from the feature-set releases, cached process-wide."""
    if name not in _COLLECTIONS:
        url = f"{FEATURE_SET_BASE_URL}/{name}/{name}"
        features = pd.read_csv(io.BytesIO(download(f"{url}_features.csv.gz")), compression="gzip", dtype=str)
        names, descriptions, members = parse_sets(download(f"{url}_sets.txt.gz"))
        for i, m in enumerate(members):
            if m.size and (m.min() < 0 or m.max() >= len(features)):
                raise EnrichmentError(
                    "MalformedFeatureSets",
                    f"set '{names[i]}' of '{name}' refers to features beyond the {len(features)} listed",
                    collection=name,
                )
        _COLLECTIONS[name] = FeatureSetCollection(name, features, names, descriptions, members)
        LOGGER.info("Cached %d feature sets from %s", len(names), name)
    return _COLLECTIONS[name]


# ---------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------
def remap_collection(collection: FeatureSetCollection, data_ids: Sequence[str], reference_id_column: str) -> MappedCollection:
    if reference_id_column not in collection.features.columns:
        raise EnrichmentError(
            "UnknownColumn",
            f"no column '{reference_id_column}' in the annotations of '{collection.name}'. "
            f"Available: {list(collection.features.columns)}",
            column=reference_id_column,
        )

    lookup: Dict[str, int] = {}
    for j, x in enumerate(collection.features[reference_id_column].tolist()):
        if isinstance(x, str) and x and x not in lookup:
            lookup[x] = j

    ref_to_target: Dict[int, int] = {}
    target_indices = []
    for i, x in enumerate(data_ids):
        j = lookup.get(str(x))
        if j is not None and j not in ref_to_target:
            ref_to_target[j] = len(target_indices)
            target_indices.append(i)

    sets = [
        np.unique(np.array([ref_to_target[m] for m in members.tolist() if m in ref_to_target], dtype=np.int64))
        for members in collection.members
    ]
    LOGGER.info("Collection %s shares %d features with the dataset", collection.name, len(target_indices))
    return MappedCollection(
        name=collection.name,
        set_names=list(collection.set_names),
        descriptions=list(collection.descriptions),
        sets=sets,
        target_indices=np.asarray(target_indices, dtype=np.int64),
    )


def filter_collection(mapped: MappedCollection, minimum_size: int, maximum_size: int) -> MappedCollection:
    """Keep sets whose mapped size lies within ``[minimum_size, maximum_size]``."""
    keep = [i for i, s in enumerate(mapped.sets) if minimum_size <= s.size <= maximum_size]
    return MappedCollection(
        name=mapped.name,
        set_names=[mapped.set_names[i] for i in keep],
        descriptions=[mapped.descriptions[i] for i in keep],
        sets=[mapped.sets[i] for i in keep],
        target_indices=mapped.target_indices,
    )


# ---------------------------------------------------------------------
# Testing
# ---------------------------------------------------------------------
def top_threshold(stats: np.ndarray, top: int, largest: bool = True) -> float:
    """Value of the ``top``-th largest (or smallest) statistic, ignoring NaNs."""
    values = stats[np.isfinite(stats)]
    if values.size == 0:
        return np.inf if largest else -np.inf
    values = np.sort(values)
    if largest:
        values = values[::-1]
    return float(values[min(max(top, 1), values.size) - 1])


def choose_markers(stats: np.ndarray, top: int, effect_size: str, summary: str) -> np.ndarray:
    """
    Indices of the top markers. Ranks are better when smaller; other
    summaries are better when larger and never go below the null effect.
    """
    if summary == "min_rank":
        return np.flatnonzero(stats <= top_threshold(stats, top, largest=False))
    threshold = top_threshold(stats, top, largest=True)
    threshold = max(threshold, 0.5 if effect_size == "auc" else 0.0)
    return np.flatnonzero(stats >= threshold)


def hypergeometric_enrichment(markers: np.ndarray, sets: Sequence[np.ndarray], universe: int) -> pd.DataFrame:
    """Hypergeometric upper tail of the overlap between ``markers`` and each set."""
    nmarkers = int(markers.size)
    counts = np.array([np.intersect1d(markers, s, assume_unique=True).size for s in sets], dtype=np.int64)
    sizes = np.array([s.size for s in sets], dtype=np.int64)
    if universe > 0:
        pvalues = hypergeom.sf(counts - 1, universe, sizes, nmarkers)
    else:
        pvalues = np.ones(len(sets))
    return pd.DataFrame({"count": counts, "size": sizes, "pvalue": np.clip(pvalues, 0.0, 1.0)})


def enrich_markers(
    results: MarkerResults,
    group: int,
    collections: Dict[str, MappedCollection],
    effect_size: str = "cohen",
    summary: str = "mean",
    top_markers: int = 100,
) -> Dict[str, Dict[str, object]]:
    """
    Enrichment of each collection's sets among the top markers of ``group``.
    Returns ``{collection: {"table", "num_markers", "universe"}}``.
    """
    if effect_size not in EFFECTS:
        raise EnrichmentError("UnknownEffect", f"unknown effect size '{effect_size}'", effect_size=effect_size)
    if summary not in SUMMARIES:
        raise EnrichmentError("UnknownSummary", f"unknown summary '{summary}'", summary=summary)
    if effect_size not in results.effects:
        raise EnrichmentError("UnknownEffect", f"effect size '{effect_size}' was not computed", effect_size=effect_size)

    stats = results.group(group)[effect_size][summary]
    output = {}
    for name, mapped in collections.items():
        sub = stats[mapped.target_indices]
        markers = choose_markers(sub, top_markers, effect_size, summary)
        table = hypergeometric_enrichment(markers, mapped.sets, sub.size)
        table.insert(0, "name", mapped.set_names)
        table.insert(1, "description", mapped.descriptions)
        output[name] = {"table": table, "num_markers": int(markers.size), "universe": int(sub.size)}
    return output
