from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np
import scipy.sparse as sp

from . import stats_utils
from .cell_filtering import CellFilteringStep
from .config import AdtNormalizationParameters, CrisprNormalizationParameters, RnaNormalizationParameters
from .engine import Step
from .errors import NormalizationError
from .quality_control import QualityControlStep

LOGGER = logging.getLogger(__name__)


def subset_sums(qc: QualityControlStep, filtering: CellFilteringStep) -> np.ndarray:
    """QC sums restricted to the retained cells."""
    sums = qc.fetch_metrics()["sums"]
    keep = filtering.fetch_keep()
    out = sums.copy() if keep is None else sums[keep.astype(bool)]

    expected = filtering.num_retained()
    if out.shape[0] != expected:
        raise NormalizationError(
            "SizeFactorLengthMismatch",
            "normalization and filtering are not in sync",
            expected=expected,
            observed=out.shape[0],
        )
    return out


class NormalizationStep(Step):
    """Size factors from the QC sums of retained cells, then log-normalised counts."""

    modality = ""

    def __init__(self, qc: QualityControlStep, filtering: CellFilteringStep, context=None) -> None:
        super().__init__(context)
        self.qc = qc
        self.filtering = filtering

    def valid(self) -> bool:
        return self.filtering.has_cells() and self.modality in self.filtering.fetch_filtered_matrix()

    def fetch_size_factors(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("size_factors")
        return None if buf is None else buf.array

    def fetch_normalized_matrix(self) -> Optional[sp.csc_matrix]:
        return self._cache.get("matrix")

    def _factors_stale(self, parameters: Dict[str, Any]) -> bool:
        return False

    def _raw_size_factors(self, parameters: Dict[str, Any], mat, totals: np.ndarray, block) -> np.ndarray:
        return totals

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self.qc.changed or self.filtering.changed or self._stale or self._factors_stale(parameters):
                if self.valid():
                    mat = self.filtering.fetch_filtered_matrix().get(self.modality)
                    block = self.filtering.fetch_filtered_block()
                    totals = subset_sums(self.qc, self.filtering)
                    raw = self._raw_size_factors(parameters, mat, totals, block)

                    sf = self.buffers.allocate("size_factors", mat.shape[1], "f64")
                    stats_utils.center_size_factors(raw, block, out=sf.array)
                    self._cache["matrix"] = stats_utils.log_norm_counts(mat, sf.array)
                    self.changed = True
                else:
                    self.buffers.free("size_factors")
                    self._cache.pop("matrix", None)
            self._parameters = parameters

        self._log_outcome()


class RnaNormalizationStep(NormalizationStep):
    step_name = "rna_normalization"
    parameter_model = RnaNormalizationParameters
    modality = "RNA"


class CrisprNormalizationStep(NormalizationStep):
    step_name = "crispr_normalization"
    parameter_model = CrisprNormalizationParameters
    modality = "CRISPR"


class AdtNormalizationStep(NormalizationStep):
    """ADT normalisation with optional removal of composition bias."""

    step_name = "adt_normalization"
    parameter_model = AdtNormalizationParameters
    modality = "ADT"

    def _factors_stale(self, parameters: Dict[str, Any]) -> bool:
        if self._differs(parameters, ["remove_bias"]):
            return True
        return parameters["remove_bias"] and self._differs(parameters, ["num_pcs", "num_clusters"])

    def _raw_size_factors(self, parameters, mat, totals, block):
        if not parameters["remove_bias"]:
            return totals
        LOGGER.info(
            "Removing ADT composition bias with %d PCs and %d clusters",
            parameters["num_pcs"], parameters["num_clusters"],
        )
        return stats_utils.quick_adt_size_factors(
            mat,
            totals,
            block=block,
            num_pcs=parameters["num_pcs"],
            num_clusters=parameters["num_clusters"],
        )
