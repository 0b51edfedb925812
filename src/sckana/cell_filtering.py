from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import CellFilteringParameters
from .engine import Step
from .errors import FilterError
from .inputs import InputsStep
from .matrices import MultiMatrix
from .quality_control import QualityControlStep

LOGGER = logging.getLogger(__name__)

USE_FLAGS = {"RNA": "use_rna", "ADT": "use_adt", "CRISPR": "use_crispr"}


class CellFilteringStep(Step):
    """
    Combines the keep masks of the chosen QC steps and materialises the
    filtered matrices and block. A single mask is installed as a view; with
    no usable mask every cell is kept.
    """

    step_name = "cell_filtering"
    parameter_model = CellFilteringParameters

    def __init__(self, inputs: InputsStep, qc_states: Dict[str, QualityControlStep], context=None) -> None:
        super().__init__(context)
        self.inputs = inputs
        self.qc_states = qc_states

    def _usable(self, parameters: Dict[str, Any]) -> List[QualityControlStep]:
        out = []
        for modality, state in self.qc_states.items():
            if state.valid() and parameters[USE_FLAGS[modality]]:
                out.append(state)
        return out

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = self.inputs.changed or self._differs(parameters, list(USE_FLAGS.values()))

        to_use = self._usable(parameters)
        if not self.changed:
            self.changed = any(u.changed for u in to_use)

        with self._transaction():
            if self.changed:
                ncells = self.inputs.num_cells()
                if len(to_use) > 1:
                    keep = self.buffers.allocate("keep", ncells, "u8")
                    combined = np.ones(ncells, dtype=bool)
                    for u in to_use:
                        combined &= u.fetch_keep().astype(bool)
                    keep.array[:] = combined
                elif len(to_use) == 1:
                    self.buffers.view_of("keep", to_use[0].fetch_keep_buffer())
                else:
                    self.buffers.free("keep")
                self._compute_matrix()
                self._compute_block()

                retained = self.num_retained()
                if retained == 0:
                    LOGGER.warning("No cells retained after filtering; downstream steps are skipped")
                else:
                    LOGGER.info("Filtering retains %d of %d cells", retained, ncells)
            self._parameters = parameters

        self._log_outcome()

    def _compute_matrix(self) -> None:
        source = self.inputs.fetch_count_matrix()
        keep = self.fetch_keep()
        if keep is None:
            self._cache["matrix"] = source
        else:
            self._cache["matrix"] = source.filter_columns(keep.astype(bool))

    def _compute_block(self) -> None:
        block = self.inputs.fetch_block()
        keep = self.fetch_keep()
        if block is None:
            self.buffers.free("block")
        elif keep is None:
            self.buffers.view_of("block", self.inputs.buffers["block"])
        else:
            self.buffers.store("block", block[keep.astype(bool)], "i32")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def fetch_filtered_matrix(self) -> MultiMatrix:
        return self._cache["matrix"]

    def fetch_filtered_block(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("block")
        return None if buf is None else buf.array

    def fetch_keep(self) -> Optional[np.ndarray]:
        """u8 keep mask over the inputs' cells; None when nothing is filtered."""
        buf = self.buffers.get("keep")
        return None if buf is None else buf.array

    def num_retained(self) -> int:
        return self.fetch_filtered_matrix().num_columns()

    def has_cells(self) -> bool:
        return self.num_retained() > 0

    def fetch_retained_indices(self) -> np.ndarray:
        keep = self.fetch_keep()
        if keep is None:
            return np.arange(self.inputs.num_cells())
        return np.flatnonzero(keep)

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------
    def apply_filter(self, x):
        """Subsequence of a per-cell vector (inputs' cell space) for the retained cells."""
        expected = self.inputs.num_cells()
        if len(x) != expected:
            raise FilterError(
                "LengthMismatch",
                "length of 'x' should be equal to the number of cells in the unfiltered dataset",
                expected=expected,
                observed=len(x),
            )

        keep = self.fetch_keep()
        if isinstance(x, pd.Series):
            return x.copy() if keep is None else x[keep.astype(bool)].reset_index(drop=True)
        if isinstance(x, np.ndarray):
            return x.copy() if keep is None else x[keep.astype(bool)]
        if keep is None:
            return list(x)
        return [y for y, k in zip(x, keep) if k]

    def undo_filter(self, indices):
        """Replace filtered-space indices with indices in the inputs' cell space, in place."""
        arr = np.asarray(indices, dtype=np.int64)
        limit = self.num_retained()
        outside = (arr < 0) | (arr >= limit)
        if outside.any():
            bad = int(arr[outside][0])
            raise FilterError(
                "OutOfRange",
                "entries of 'indices' should be less than the number of cells in the filtered dataset",
                index=bad,
                limit=limit,
            )

        if self.fetch_keep() is None:
            return indices
        mapped = self.fetch_retained_indices()[arr]
        indices[:] = mapped.tolist() if isinstance(indices, list) else mapped
        return indices
