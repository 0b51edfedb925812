from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import InputsError

LOGGER = logging.getLogger(__name__)

# Block code for cells that must be dropped before analysis.
INVALID_BLOCK = -1


class MultiMatrix:
    """
    Modality name -> sparse feature-by-cell count matrix.

    All matrices share the same number of columns and the same column order.
    """

    def __init__(self, matrices: Optional[Dict[str, sp.spmatrix]] = None) -> None:
        self._matrices: Dict[str, sp.csc_matrix] = {}
        for name, mat in (matrices or {}).items():
            self.add(name, mat)

    def add(self, name: str, mat) -> None:
        mat = sp.csc_matrix(mat)
        if self._matrices:
            ncols = self.num_columns()
            if mat.shape[1] != ncols:
                raise InputsError(
                    "CellCountMismatch",
                    f"modality '{name}' has {mat.shape[1]} cells, expected {ncols}",
                    modality=name,
                    expected=ncols,
                    observed=mat.shape[1],
                )
        self._matrices[name] = mat

    def get(self, name: str) -> sp.csc_matrix:
        return self._matrices[name]

    def available(self) -> List[str]:
        return list(self._matrices)

    def __contains__(self, name: str) -> bool:
        return name in self._matrices

    def __iter__(self) -> Iterator[str]:
        return iter(self._matrices)

    def __len__(self) -> int:
        return len(self._matrices)

    def items(self):
        return self._matrices.items()

    def num_columns(self) -> int:
        for mat in self._matrices.values():
            return int(mat.shape[1])
        return 0

    def subset_columns(self, keep: Sequence[int]) -> "MultiMatrix":
        keep = np.asarray(keep, dtype=np.int64)
        return MultiMatrix({k: v[:, keep] for k, v in self._matrices.items()})

    def filter_columns(self, mask: np.ndarray) -> "MultiMatrix":
        return self.subset_columns(np.flatnonzero(mask))


# ---------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------
def convert_to_factor(values: Sequence) -> Tuple[np.ndarray, List[str]]:
    """
    Integer codes + sorted string levels for a categorical column.
    Missing entries (None/NaN) become INVALID_BLOCK.
    """
    series = pd.Series(list(values), dtype="object")
    missing = series.isna()
    present = series[~missing].astype(str)
    levels = sorted(set(present))

    lookup = {lev: i for i, lev in enumerate(levels)}
    codes = np.full(len(series), INVALID_BLOCK, dtype=np.int32)
    codes[np.flatnonzero(~missing.to_numpy())] = [lookup[x] for x in present]
    return codes, levels


def create_block(ncells: Sequence[int]) -> np.ndarray:
    """Block codes for concatenated datasets: dataset i repeated ncells[i] times."""
    return np.repeat(np.arange(len(ncells), dtype=np.int32), np.asarray(ncells, dtype=np.int64))


def subset_factor(codes: np.ndarray, levels: List[str], keep: Sequence[int]) -> Tuple[np.ndarray, List[str]]:
    """Subset a factor and drop levels that are no longer used (order preserved)."""
    sub = np.asarray(codes)[np.asarray(keep, dtype=np.int64)]
    return drop_unused_levels(sub, levels)


def drop_unused_levels(codes: np.ndarray, levels: List[str]) -> Tuple[np.ndarray, List[str]]:
    codes = np.asarray(codes, dtype=np.int32)
    used = np.unique(codes[codes != INVALID_BLOCK])
    remap = np.full(len(levels), INVALID_BLOCK, dtype=np.int32)
    remap[used] = np.arange(used.size, dtype=np.int32)

    out = np.full(codes.shape, INVALID_BLOCK, dtype=np.int32)
    ok = codes != INVALID_BLOCK
    out[ok] = remap[codes[ok]]
    return out, [levels[i] for i in used]


def block_groups(block: Optional[np.ndarray], n: int) -> List[np.ndarray]:
    """Index arrays for each block level; a single group when block is None."""
    if block is None:
        return [np.arange(n)]
    block = np.asarray(block)
    nlevels = int(block.max()) + 1 if block.size else 0
    return [np.flatnonzero(block == b) for b in range(nlevels)]
