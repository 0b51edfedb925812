from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from . import stats_utils
from .cell_filtering import CellFilteringStep
from .config import AdtPcaParameters, CrisprPcaParameters, RnaPcaParameters
from .engine import Step
from .feature_selection import FeatureSelectionStep
from .normalization import NormalizationStep

LOGGER = logging.getLogger(__name__)


class PcaStep(Step):
    """
    PCA of one modality's log-normalised matrix. Cells are rows of the
    ``pcs`` result; the buffer stores them row-major.
    """

    modality = ""
    trigger_keys: List[str] = ["num_pcs", "block_method"]

    def __init__(self, filtering: CellFilteringStep, normalization: NormalizationStep, context=None) -> None:
        super().__init__(context)
        self.filtering = filtering
        self.normalization = normalization

    def valid(self) -> bool:
        return self.normalization.valid()

    def _upstream_changed(self) -> bool:
        return self.filtering.changed or self.normalization.changed

    def _features(self, parameters: Dict[str, Any]) -> Optional[np.ndarray]:
        return None

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def num_pcs(self) -> int:
        return int(self._cache.get("num_pcs", 0))

    def fetch_pcs(self) -> Optional[np.ndarray]:
        """cells x PCs view of the cached buffer."""
        buf = self.buffers.get("pcs")
        if buf is None:
            return None
        return buf.array.reshape(-1, self.num_pcs())

    def fetch_pcs_buffer(self):
        return self.buffers.get("pcs")

    def fetch_variance_explained(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("variance_explained")
        return None if buf is None else buf.array

    def fetch_total_variance(self) -> Optional[float]:
        return self._cache.get("total_variance")

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self._upstream_changed() or self._differs(parameters, self.trigger_keys):
                if self.valid():
                    block_method = parameters["block_method"]
                    block = self.filtering.fetch_filtered_block() if block_method != "none" else None
                    result = stats_utils.run_pca(
                        self.normalization.fetch_normalized_matrix(),
                        features=self._features(parameters),
                        num_pcs=parameters["num_pcs"],
                        block=block,
                        block_method=block_method,
                    )
                    pcs = result["pcs"]
                    self.buffers.store("pcs", pcs.ravel(), "f64")
                    self.buffers.store("variance_explained", result["variance_explained"], "f64")
                    self._cache["num_pcs"] = pcs.shape[1]
                    self._cache["total_variance"] = result["total_variance"]
                    self.changed = True
                else:
                    for name in ("pcs", "variance_explained", "hvgs"):
                        self.buffers.free(name)
                    self._cache.pop("num_pcs", None)
                    self._cache.pop("total_variance", None)
            self._parameters = parameters

        self._log_outcome()


class RnaPcaStep(PcaStep):
    """PCA over the top highly variable genes."""

    step_name = "rna_pca"
    parameter_model = RnaPcaParameters
    modality = "RNA"
    trigger_keys = ["num_hvgs", "num_pcs", "block_method"]

    def __init__(
        self,
        filtering: CellFilteringStep,
        normalization: NormalizationStep,
        feature_selection: FeatureSelectionStep,
        context=None,
    ) -> None:
        super().__init__(filtering, normalization, context)
        self.feature_selection = feature_selection

    def _upstream_changed(self) -> bool:
        return super()._upstream_changed() or self.feature_selection.changed

    def _features(self, parameters: Dict[str, Any]) -> np.ndarray:
        residuals = self.feature_selection.fetch_results()["residuals"]
        hvgs = self.buffers.store("hvgs", stats_utils.choose_hvgs(residuals, parameters["num_hvgs"]), "u8")
        LOGGER.info("Using %d highly variable genes", int(hvgs.array.sum()))
        return hvgs.array

    def fetch_hvgs(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("hvgs")
        return None if buf is None else buf.array


class AdtPcaStep(PcaStep):
    step_name = "adt_pca"
    parameter_model = AdtPcaParameters
    modality = "ADT"


class CrisprPcaStep(PcaStep):
    step_name = "crispr_pca"
    parameter_model = CrisprPcaParameters
    modality = "CRISPR"
