from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .config import InputsParameters
from .engine import Step
from .errors import InputsError, SubsetError, check_indices
from .io_utils import DatasetHandle, LoadedDataset
from .matrices import INVALID_BLOCK, MultiMatrix, convert_to_factor, create_block, subset_factor
from .params import parameters_differ

LOGGER = logging.getLogger(__name__)

BATCH_COLUMN = "__batch__"


# -------------------------------------------------------------------------
# Binding multiple datasets
# -------------------------------------------------------------------------
def common_modalities(names: Sequence[str], loaded: Dict[str, LoadedDataset]) -> List[str]:
    available: Optional[List[str]] = None
    for n in names:
        present = loaded[n].matrix.available()
        if available is None:
            available = list(present)
        else:
            available = [m for m in available if m in present]
    if not available:
        raise InputsError(
            "NoCommonModality",
            f"No modality is shared by all datasets: {', '.join(names)}",
            datasets=list(names),
        )
    return available


def _bind_modality(names: Sequence[str], loaded: Dict[str, LoadedDataset], modality: str):
    """cbind one modality across datasets on the primary ids, first dataset's order."""
    per_dataset_ids = []
    for n in names:
        ids = loaded[n].primary_ids.get(modality)
        if ids is None:
            raise InputsError(
                "MissingPrimaryId",
                f"Dataset '{n}' has no primary identifiers for modality '{modality}'",
                dataset=n,
                modality=modality,
            )
        per_dataset_ids.append(list(ids))

    first = per_dataset_ids[0]
    shared = set(first)
    for ids in per_dataset_ids[1:]:
        shared &= set(ids)

    common: List[str] = []
    seen = set()
    for x in first:
        if x in shared and x not in seen:
            common.append(x)
            seen.add(x)

    pieces = []
    first_rows = None
    for n, ids in zip(names, per_dataset_ids):
        position = {}
        for i, x in enumerate(ids):
            position.setdefault(x, i)
        rows = np.asarray([position[x] for x in common], dtype=np.int64)
        if first_rows is None:
            first_rows = rows
        pieces.append(loaded[n].matrix.get(modality)[rows, :])

    bound = sp.hstack(pieces, format="csc")
    table = loaded[names[0]].features[modality].iloc[first_rows].copy()
    return bound, table, common


def bind_datasets(names: Sequence[str], loaded: Dict[str, LoadedDataset]):
    modalities = common_modalities(names, loaded)

    matrix = MultiMatrix()
    features: Dict[str, pd.DataFrame] = {}
    primary: Dict[str, List[str]] = {}
    for m in modalities:
        bound, table, ids = _bind_modality(names, loaded, m)
        matrix.add(m, bound)
        features[m] = table
        primary[m] = ids
        LOGGER.info("Bound modality %s across %d datasets: %d shared features", m, len(names), len(ids))

    ncells = [loaded[n].num_cells() for n in names]
    cells = pd.concat([loaded[n].cells for n in names], axis=0, ignore_index=True, sort=False)
    block = create_block(ncells)
    levels = list(names)
    cells[BATCH_COLUMN] = [levels[b] for b in block]
    return matrix, features, primary, cells, block, levels


# -------------------------------------------------------------------------
# Subsetting
# -------------------------------------------------------------------------
def _check_ranges(ranges) -> np.ndarray:
    arr = np.asarray(ranges, dtype=np.float64).reshape(-1, 2)
    bad = arr[:, 0] > arr[:, 1]
    if arr.shape[0] > 1:
        bad[1:] |= arr[1:, 0] <= arr[:-1, 1]
    if bad.any():
        raise SubsetError(
            "RangesUnsorted",
            "subset ranges should be disjoint and in ascending order",
            position=int(np.flatnonzero(bad)[0]),
        )
    return arr


def harvest_subset_indices(subset: Optional[Dict[str, Any]], ncells: int, cells: pd.DataFrame) -> Optional[np.ndarray]:
    """Resolve a subset descriptor to original-space indices (None = everything)."""
    if subset is None:
        return None

    if subset.get("indices") is not None:
        keep = np.asarray(subset["indices"], dtype=np.int64)
        check_indices(keep, ncells)
        return keep

    if "field" in subset:
        field = subset["field"]
        if field not in cells.columns:
            raise SubsetError(
                "FieldUnknown",
                f"Cell annotation column '{field}' not found. Available: {list(cells.columns)}",
                field=field,
            )
        column = cells[field]

        if subset.get("values") is not None:
            allowed = set(subset["values"])
            hits = column.map(lambda x: x in allowed).to_numpy(dtype=bool)
            return np.flatnonzero(hits)

        if subset.get("ranges") is not None:
            ranges = _check_ranges(subset["ranges"])
            values = pd.to_numeric(column, errors="coerce").to_numpy(dtype=np.float64)
            hits = np.zeros(values.shape[0], dtype=bool)
            for lo, hi in ranges:
                hits |= (values >= lo) & (values <= hi)
            return np.flatnonzero(hits)

    raise SubsetError(
        "InvalidDescriptor",
        "subset should contain 'indices', or 'field' with 'values' or 'ranges'",
        keys=sorted(subset),
    )


# -------------------------------------------------------------------------
# Step
# -------------------------------------------------------------------------
class InputsStep(Step):
    """
    Loads the datasets, binds their common modalities, builds the block vector
    and applies the cell subset. Everything downstream works in the subsetted
    cell space; ``undo_subset`` maps indices back to the loaded space.
    """

    step_name = "inputs"
    parameter_model = InputsParameters

    def __init__(self, context=None) -> None:
        super().__init__(context)
        self._abbreviated: Optional[Dict[str, Any]] = None
        self._datasets: Dict[str, DatasetHandle] = {}
        self._direct_subset: Optional[np.ndarray] = None
        self._stale_subset = False

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def compute(self, datasets: Dict[str, DatasetHandle], parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        abbreviated = {name: datasets[name].abbreviate() for name in sorted(datasets)}
        reload = (
            self._abbreviated is None
            or parameters_differ(abbreviated, self._abbreviated)
            or self._differs(parameters, ["sample_factor"])
        )
        resubset = reload or self._stale_subset or self._differs(parameters, ["subset"])
        if not resubset:
            self._log_outcome()
            return

        with self._transaction():
            if reload:
                self._load(datasets, parameters["sample_factor"])
            self._apply_subset(parameters["subset"])
            if reload:
                self._abbreviated = abbreviated
                self._datasets = dict(datasets)
            self._parameters = parameters
            self._stale_subset = False
            self.changed = True

        self._log_outcome()

    def _load(self, datasets: Dict[str, DatasetHandle], sample_factor: Optional[str]) -> None:
        if not datasets:
            raise InputsError("NoCommonModality", "No datasets were supplied", datasets=[])

        names = sorted(datasets)
        loaded = {n: datasets[n].load() for n in names}

        if len(names) == 1:
            current = loaded[names[0]]
            matrix, features, primary = current.matrix, dict(current.features), dict(current.primary_ids)
            cells = current.cells.reset_index(drop=True)
            block, levels = None, None
            if sample_factor is not None:
                if sample_factor not in cells.columns:
                    raise SubsetError(
                        "FieldUnknown",
                        f"Sample factor '{sample_factor}' not found. Available: {list(cells.columns)}",
                        field=sample_factor,
                    )
                column = cells[sample_factor]
                if column.shape[0] != matrix.num_columns():
                    raise InputsError(
                        "CellCountMismatch",
                        f"length of sample factor '{sample_factor}' should equal the number of cells",
                        expected=matrix.num_columns(),
                        observed=column.shape[0],
                    )
                block, levels = convert_to_factor(column.tolist())
        else:
            matrix, features, primary, cells, block, levels = bind_datasets(names, loaded)

        for m, table in features.items():
            features[m] = table.set_axis(pd.Index(primary[m], dtype=object), axis=0)

        self._cache["raw_matrix"] = matrix
        self._cache["features"] = features
        self._cache["primary_ids"] = primary
        self._cache["raw_cells"] = cells
        self._cache["raw_block_levels"] = levels
        if block is None:
            self.buffers.free("raw_block")
        else:
            self.buffers.store("raw_block", block, "i32")

        LOGGER.info(
            "Loaded %d dataset(s): %d cells, modalities %s",
            len(names), matrix.num_columns(), ", ".join(matrix.available()),
        )

    def _apply_subset(self, subset: Optional[Dict[str, Any]]) -> None:
        raw = self._cache["raw_matrix"]
        cells = self._cache["raw_cells"]
        ncells = raw.num_columns()
        raw_block = self._raw_block()

        if self._direct_subset is not None:
            check_indices(self._direct_subset, ncells)
            keep = self._direct_subset
        else:
            keep = harvest_subset_indices(subset, ncells, cells)

        if raw_block is not None:
            valid = raw_block != INVALID_BLOCK
            if keep is None:
                if not valid.all():
                    keep = np.flatnonzero(valid)
            else:
                keep = keep[valid[keep]]

        if keep is None or (keep.size == ncells and np.array_equal(keep, np.arange(ncells))):
            self.buffers.free("keep")
            self._cache["matrix"] = raw
            self._cache["cells"] = cells
            self._cache["block_levels"] = self._cache["raw_block_levels"]
            if raw_block is None:
                self.buffers.free("block")
            else:
                self.buffers.view_of("block", self.buffers["raw_block"])
            return

        self.buffers.store("keep", keep, "i32")
        self._cache["matrix"] = raw.subset_columns(keep)
        self._cache["cells"] = cells.iloc[keep].reset_index(drop=True)
        if raw_block is None:
            self.buffers.free("block")
            self._cache["block_levels"] = None
        else:
            codes, levels = subset_factor(raw_block, self._cache["raw_block_levels"], keep)
            self.buffers.store("block", codes, "i32")
            self._cache["block_levels"] = levels
        LOGGER.info("Subset retains %d of %d cells", keep.size, ncells)

    def _raw_block(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("raw_block")
        return None if buf is None else buf.array

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def fetch_count_matrix(self) -> MultiMatrix:
        return self._cache["matrix"]

    def fetch_feature_annotations(self) -> Dict[str, pd.DataFrame]:
        return self._cache["features"]

    def fetch_primary_ids(self) -> Dict[str, List[str]]:
        return self._cache["primary_ids"]

    def fetch_cell_annotations(self) -> pd.DataFrame:
        return self._cache["cells"]

    def fetch_block(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("block")
        return None if buf is None else buf.array

    def fetch_block_levels(self) -> Optional[List[str]]:
        return self._cache.get("block_levels")

    def fetch_datasets(self) -> Dict[str, DatasetHandle]:
        return dict(self._datasets)

    def num_cells(self) -> int:
        return self.fetch_count_matrix().num_columns()

    def num_original_cells(self) -> int:
        return self._cache["raw_matrix"].num_columns()

    def num_samples(self) -> int:
        levels = self.fetch_block_levels()
        return 1 if levels is None else len(levels)

    def fetch_keep(self) -> Optional[np.ndarray]:
        """Original-space index of every retained cell; None when nothing was dropped."""
        buf = self.buffers.get("keep")
        return None if buf is None else buf.array

    # ------------------------------------------------------------------
    # Subset operators
    # ------------------------------------------------------------------
    def undo_subset(self, indices):
        """Replace subset-space indices with original-space indices, in place."""
        n = self.num_cells()
        arr = np.asarray(indices, dtype=np.int64)
        outside = (arr < 0) | (arr >= n)
        if outside.any():
            bad = int(arr[outside][0])
            raise SubsetError("OutOfRange", f"index {bad} is out of range for {n} subsetted cells", index=bad, limit=n)

        keep = self.fetch_keep()
        mapped = arr if keep is None else keep[arr].astype(np.int64)
        indices[:] = mapped.tolist() if isinstance(indices, list) else mapped
        return indices

    def set_direct_subset(self, indices, copy: bool = True, on_original: bool = True) -> None:
        """
        Install an index-based subset that takes precedence over any subset
        descriptor. ``None`` removes it. With ``on_original=False`` the indices
        refer to the current (subsetted) cell space.
        """
        if indices is None:
            self._direct_subset = None
            self._stale_subset = True
            return

        arr = np.array(indices, dtype=np.int64, copy=True) if copy else np.asarray(indices, dtype=np.int64)
        if not on_original:
            if "matrix" not in self._cache:
                raise SubsetError(
                    "NotLoaded",
                    "indices on the subsetted cells need a computed inputs step",
                    num_indices=int(arr.size),
                )
            check_indices(arr, self.num_cells())
            arr = self.undo_subset(arr)
        if "raw_matrix" in self._cache:
            check_indices(arr, self.num_original_cells())

        self._direct_subset = arr
        self._stale_subset = True
        LOGGER.info("Direct subset of %d cells installed", arr.size)

    def fetch_direct_subset(self, copy: bool = True) -> Optional[np.ndarray]:
        if self._direct_subset is None:
            return None
        return self._direct_subset.copy() if copy else self._direct_subset

    def free(self) -> None:
        super().free()
        self._abbreviated = None
