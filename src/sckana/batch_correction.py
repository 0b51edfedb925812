from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np

from . import stats_utils
from .cell_filtering import CellFilteringStep
from .combine_embeddings import CombineEmbeddingsStep
from .config import BatchCorrectionParameters
from .engine import Step

LOGGER = logging.getLogger(__name__)

CORRECTION_METHODS = ("mnn", "none")


class BatchCorrectionStep(Step):
    """
    MNN correction of the combined embedding when the filtered cells carry a
    block; otherwise the corrected embedding is a view of the combined one.
    """

    step_name = "batch_correction"
    parameter_model = BatchCorrectionParameters

    def __init__(self, filtering: CellFilteringStep, combined: CombineEmbeddingsStep, context=None) -> None:
        super().__init__(context)
        self.filtering = filtering
        self.combined = combined

    def valid(self) -> bool:
        return self.combined.valid()

    def fetch_corrected(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("corrected")
        if buf is None:
            return None
        return buf.array.reshape(self.num_cells(), self.num_dimensions())

    def num_cells(self) -> int:
        return int(self._cache.get("num_cells", 0))

    def num_dimensions(self) -> int:
        return int(self._cache.get("num_dims", 0))

    def is_corrected(self) -> bool:
        return bool(self._cache.get("mnn", False))

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = self.filtering.changed or self.combined.changed or self._stale

        with self._transaction():
            if not self.valid():
                if self.changed:
                    self.buffers.free("corrected")
                    self._cache.clear()
            else:
                block = self.filtering.fetch_filtered_block()
                needs_correction = parameters["method"] == "mnn" and block is not None
                if needs_correction:
                    if self.changed or not self.is_corrected() or self._differs(parameters, ["method", "num_neighbors", "approximate"]):
                        corrected = stats_utils.mnn_correct(
                            self.combined.fetch_combined(),
                            block,
                            num_neighbors=parameters["num_neighbors"],
                            approximate=parameters["approximate"],
                        )
                        self.buffers.store("corrected", corrected.ravel(), "f64")
                        self._record_shape(mnn=True)
                        self.changed = True
                elif self.changed or self.is_corrected():
                    if parameters["method"] not in CORRECTION_METHODS:
                        LOGGER.warning("Unknown batch correction method '%s'; leaving the embedding uncorrected", parameters["method"])
                    self.buffers.view_of("corrected", self.combined.fetch_combined_buffer())
                    self._record_shape(mnn=False)
                    self.changed = True

            self._parameters = parameters

        self._log_outcome()

    def _record_shape(self, mnn: bool) -> None:
        self._cache["num_cells"] = self.combined.num_cells()
        self._cache["num_dims"] = self.combined.num_dimensions()
        self._cache["mnn"] = mnn
