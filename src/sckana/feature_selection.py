from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np

from . import stats_utils
from .cell_filtering import CellFilteringStep
from .config import FeatureSelectionParameters
from .engine import Step
from .normalization import NormalizationStep

LOGGER = logging.getLogger(__name__)

RESULT_NAMES = ("means", "variances", "fitted", "residuals")


class FeatureSelectionStep(Step):
    """Mean-variance trend over the log-normalised RNA matrix."""

    step_name = "feature_selection"
    parameter_model = FeatureSelectionParameters

    def __init__(self, filtering: CellFilteringStep, normalization: NormalizationStep, context=None) -> None:
        super().__init__(context)
        self.filtering = filtering
        self.normalization = normalization

    def valid(self) -> bool:
        return self.normalization.valid()

    def fetch_results(self) -> Optional[Dict[str, np.ndarray]]:
        if "residuals" not in self.buffers:
            return None
        return {name: self.buffers[name].array for name in RESULT_NAMES}

    def fetch_sorted_residuals(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("sorted_residuals")
        return None if buf is None else buf.array

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self.normalization.changed or self._differs(parameters, ["span"]):
                if self.valid():
                    stats = stats_utils.model_gene_var(
                        self.normalization.fetch_normalized_matrix(),
                        span=parameters["span"],
                        block=self.filtering.fetch_filtered_block(),
                    )
                    for name in RESULT_NAMES:
                        self.buffers.store(name, stats[name], "f64")
                    self.buffers.store("sorted_residuals", np.sort(stats["residuals"]), "f64")
                    self.changed = True
                else:
                    for name in RESULT_NAMES + ("sorted_residuals",):
                        self.buffers.free(name)
            self._parameters = parameters

        self._log_outcome()
