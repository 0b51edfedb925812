from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.stats import median_abs_deviation

from .errors import QcError
from .matrices import block_groups

LOGGER = logging.getLogger(__name__)

QC_STRATEGIES = ("automatic", "manual")


# ---------------------------------------------------------------------
# Per-cell metrics (features x cells, CSC)
# ---------------------------------------------------------------------
def _column_sums(mat: sp.csc_matrix) -> np.ndarray:
    return np.asarray(mat.sum(axis=0), dtype=np.float64).ravel()


def _column_detected(mat: sp.csc_matrix) -> np.ndarray:
    return np.asarray((mat > 0).sum(axis=0), dtype=np.int32).ravel()


def _subset_totals(mat: sp.csc_matrix, subset: np.ndarray) -> np.ndarray:
    idx = np.flatnonzero(subset)
    if idx.size == 0:
        return np.zeros(mat.shape[1], dtype=np.float64)
    return _column_sums(mat[idx, :])


def per_cell_rna_qc_metrics(mat: sp.csc_matrix, subset: np.ndarray) -> Dict[str, np.ndarray]:
    """Sums, detected features and the proportion of counts in ``subset`` (e.g. mitochondrial genes)."""
    sums = _column_sums(mat)
    totals = _subset_totals(mat, subset)
    proportions = np.divide(totals, sums, out=np.zeros_like(totals), where=sums > 0)
    return {"sums": sums, "detected": _column_detected(mat), "proportions": proportions}


def per_cell_adt_qc_metrics(mat: sp.csc_matrix, subset: np.ndarray) -> Dict[str, np.ndarray]:
    return {
        "sums": _column_sums(mat),
        "detected": _column_detected(mat),
        "igg_totals": _subset_totals(mat, subset),
    }


def per_cell_crispr_qc_metrics(mat: sp.csc_matrix) -> Dict[str, np.ndarray]:
    """Sums, detected guides, and the proportion/index of the most abundant guide per cell."""
    sums = _column_sums(mat)
    ncells = mat.shape[1]
    max_count = np.zeros(ncells, dtype=np.float64)
    max_index = np.zeros(ncells, dtype=np.int32)
    if mat.shape[0] > 0 and ncells > 0:
        dense_max = mat.max(axis=0)
        max_count = np.asarray(dense_max.toarray(), dtype=np.float64).ravel()
        max_index = np.asarray(mat.argmax(axis=0), dtype=np.int32).ravel()
    max_proportion = np.divide(max_count, sums, out=np.zeros_like(max_count), where=sums > 0)
    return {
        "sums": sums,
        "detected": _column_detected(mat),
        "max_proportion": max_proportion,
        "max_index": max_index,
    }


# ---------------------------------------------------------------------
# MAD thresholds
# ---------------------------------------------------------------------
def _mad_bound(values: np.ndarray, nmads: float, lower: bool, log: bool) -> float:
    """
    One threshold from the median +/- nmads * MAD. On the log scale only
    positive values take part; the threshold is returned on the raw scale.
    """
    values = np.asarray(values, dtype=np.float64)
    if log:
        values = values[values > 0]
        if values.size == 0:
            return 0.0
        values = np.log(values)
    elif values.size == 0:
        return 0.0 if lower else np.inf

    center = float(np.median(values))
    spread = float(median_abs_deviation(values, scale="normal"))
    bound = center - nmads * spread if lower else center + nmads * spread
    return float(np.exp(bound)) if log else bound


def _per_block(values: np.ndarray, groups: List[np.ndarray], fn) -> np.ndarray:
    return np.asarray([fn(values[g]) for g in groups], dtype=np.float64)


def suggest_rna_qc_filters(metrics: Dict[str, np.ndarray], nmads: float, block: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
    groups = block_groups(block, metrics["sums"].shape[0])
    return {
        "sums": _per_block(metrics["sums"], groups, lambda v: _mad_bound(v, nmads, lower=True, log=True)),
        "detected": _per_block(metrics["detected"], groups, lambda v: _mad_bound(v, nmads, lower=True, log=True)),
        "proportions": _per_block(metrics["proportions"], groups, lambda v: _mad_bound(v, nmads, lower=False, log=False)),
    }


def suggest_adt_qc_filters(
    metrics: Dict[str, np.ndarray],
    nmads: float,
    min_detected_drop: float,
    block: Optional[np.ndarray] = None,
) -> Dict[str, np.ndarray]:
    groups = block_groups(block, metrics["sums"].shape[0])

    def detected_bound(v):
        bound = _mad_bound(v, nmads, lower=True, log=True)
        if v.size:
            bound = min(bound, (1 - min_detected_drop) * float(np.median(v)))
        return bound

    return {
        "detected": _per_block(metrics["detected"], groups, detected_bound),
        "igg_totals": _per_block(metrics["igg_totals"], groups, lambda v: _mad_bound(v, nmads, lower=False, log=True)),
    }


def suggest_crispr_qc_filters(metrics: Dict[str, np.ndarray], nmads: float, block: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
    """Lower bound on the max guide count, estimated from cells at or above the block's median max proportion."""
    max_count = metrics["max_proportion"] * metrics["sums"]
    groups = block_groups(block, max_count.shape[0])

    thresholds = []
    for g in groups:
        props = metrics["max_proportion"][g]
        if props.size == 0:
            thresholds.append(0.0)
            continue
        usable = props >= np.median(props)
        thresholds.append(_mad_bound(max_count[g][usable], nmads, lower=True, log=True))
    return {"max_count": np.asarray(thresholds, dtype=np.float64)}


def manual_qc_filters(nblocks: int, **thresholds: float) -> Dict[str, np.ndarray]:
    return {k: np.full(nblocks, float(v), dtype=np.float64) for k, v in thresholds.items()}


# ---------------------------------------------------------------------
# Keep masks
# ---------------------------------------------------------------------
LOWER_BOUNDS = {"sums", "detected", "max_count"}
UPPER_BOUNDS = {"proportions", "igg_totals"}


def filter_cells(
    metrics: Dict[str, np.ndarray],
    thresholds: Dict[str, np.ndarray],
    block: Optional[np.ndarray] = None,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """u8 keep mask: 1 if the cell passes every threshold of its block."""
    derived = dict(metrics)
    if "max_count" in thresholds and "max_count" not in derived:
        derived["max_count"] = metrics["max_proportion"] * metrics["sums"]

    ncells = derived["sums"].shape[0]
    codes = np.zeros(ncells, dtype=np.int64) if block is None else np.asarray(block, dtype=np.int64)

    keep = np.ones(ncells, dtype=bool)
    for name, per_block in thresholds.items():
        values = np.asarray(derived[name], dtype=np.float64)
        limit = np.asarray(per_block, dtype=np.float64)[codes]
        if name in LOWER_BOUNDS:
            keep &= values >= limit
        elif name in UPPER_BOUNDS:
            keep &= values <= limit
        else:
            raise KeyError(f"no filtering direction for QC metric '{name}'")

    if out is None:
        out = np.empty(ncells, dtype=np.uint8)
    out[:] = keep
    return out


def check_strategy(strategy: str, modality: str) -> None:
    if strategy not in QC_STRATEGIES:
        raise QcError(
            "UnknownStrategy",
            f"unknown {modality} QC filtering strategy '{strategy}'. Available: {', '.join(QC_STRATEGIES)}",
            strategy=strategy,
            modality=modality,
        )


# ---------------------------------------------------------------------
# Feature identification
# ---------------------------------------------------------------------
_ENSEMBL_PATTERNS = [
    (re.compile(r"^ENSG\d{11}"), "9606"),
    (re.compile(r"^ENSMUSG\d{11}"), "10090"),
    (re.compile(r"^ENSRNOG\d{11}"), "10116"),
    (re.compile(r"^ENSDARG\d{11}"), "7955"),
]
_HUMAN_SYMBOL = re.compile(r"^[A-Z][A-Z0-9-]*(\.\d+)?$")
_MOUSE_SYMBOL = re.compile(r"^[A-Z][a-z0-9-]+(\.\d+)?$")


def guess_features(ids: Sequence[str]) -> Dict[str, object]:
    """
    Guess the identifier type and species of a vector of feature ids.

    Returns ``{"type": "ensembl"|"symbol", "species": <taxonomy id>, "confidence": float}``
    where confidence is the fraction of ids matching the guessed pattern.
    """
    ids = [str(x) for x in ids]
    n = len(ids)
    best = {"type": "symbol", "species": "9606", "confidence": 0.0}
    if n == 0:
        return best

    for pattern, species in _ENSEMBL_PATTERNS:
        hits = sum(1 for x in ids if pattern.match(x))
        if hits / n > best["confidence"]:
            best = {"type": "ensembl", "species": species, "confidence": hits / n}

    for pattern, species in ((_HUMAN_SYMBOL, "9606"), (_MOUSE_SYMBOL, "10090")):
        hits = sum(1 for x in ids if pattern.match(x))
        if hits / n > best["confidence"]:
            best = {"type": "symbol", "species": species, "confidence": hits / n}

    return best


def guess_feature_columns(table: pd.DataFrame) -> Dict[str, object]:
    """Guesses for the index (``row_names``) and every string column of a feature table."""
    columns = {}
    for name in table.columns:
        col = table[name]
        if pd.api.types.is_numeric_dtype(col) or pd.api.types.is_bool_dtype(col):
            continue
        columns[name] = guess_features(col.astype(str).tolist())
    return {"row_names": guess_features(list(table.index)), "columns": columns}


def configure_rna_features(use_reference_mito: bool, guesses: Dict[str, object]) -> Dict[str, object]:
    """Pick the id column, species and id type with the highest guess confidence."""
    best_key = None
    best = {"type": "symbol", "species": "9606", "confidence": 0.0}

    candidates = [(None, guesses["row_names"])] + list(guesses["columns"].items())
    for key, val in candidates:
        if val["confidence"] > best["confidence"] and (use_reference_mito or val["type"] == "symbol"):
            best = val
            best_key = key

    return {
        "gene_id_column": best_key,
        "species": [best["species"]],
        "gene_id_type": str(best["type"]).upper(),
    }


def feature_column(table: pd.DataFrame, column) -> List[str]:
    """Values of ``column`` (name or position); ``None`` means the table's index."""
    if column is None:
        return [str(x) for x in table.index]
    if isinstance(column, int) and not isinstance(column, bool):
        if column < 0 or column >= table.shape[1]:
            raise QcError("UnknownColumn", f"column index {column} is out of range", column=column)
        return table.iloc[:, column].astype(str).tolist()
    if column not in table.columns:
        raise QcError(
            "UnknownColumn",
            f"Feature annotation column '{column}' not found. Available: {list(table.columns)}",
            column=column,
        )
    return table[column].astype(str).tolist()


def prefix_mask(values: Iterable[str], prefix: Optional[str]) -> np.ndarray:
    values = list(values)
    if prefix is None:
        return np.zeros(len(values), dtype=np.uint8)
    lower = prefix.lower()
    return np.asarray([str(x).lower().startswith(lower) for x in values], dtype=np.uint8)


def best_prefix_column(table: pd.DataFrame, prefix: str):
    """Column (None = index) with the most case-insensitive prefix matches; the index wins ties."""
    best_key = None
    best = int(prefix_mask(table.index, prefix).sum())
    for key in table.columns:
        if pd.api.types.is_numeric_dtype(table[key]):
            continue
        hits = int(prefix_mask(table[key].astype(str), prefix).sum())
        if hits > best:
            best_key, best = key, hits
    return best_key


def reference_mask(values: Iterable[str], reference: Iterable[str]) -> np.ndarray:
    ref = set(reference)
    return np.asarray([x in ref for x in values], dtype=np.uint8)
