from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from . import qc_utils
from .buffers import Buffer
from .config import AdtQualityControlParameters, CrisprQualityControlParameters, RnaQualityControlParameters
from .engine import Step
from .inputs import InputsStep
from .io_utils import fetch_mito_list

LOGGER = logging.getLogger(__name__)

# Taxonomy ids with a reference mitochondrial gene list.
MITO_SPECIES = ["9606", "10090", "6239", "10116", "9541", "7227", "7955", "9598"]


class QualityControlStep(Step):
    """
    Per-modality QC: per-cell metrics, per-block thresholds and a u8 keep mask
    over the cells of the inputs step.

    Subclasses declare which parameters affect the metrics (``metric_keys``)
    and which only affect the thresholds (``filter_keys``).
    """

    modality = ""
    metric_names: List[str] = []
    metric_types: Dict[str, str] = {}
    filter_keys: List[str] = []

    def __init__(self, inputs: InputsStep, context=None) -> None:
        super().__init__(context)
        self.inputs = inputs

    def valid(self) -> bool:
        matrix = self.inputs.fetch_count_matrix()
        return self.modality in matrix and matrix.num_columns() > 0

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def fetch_metrics(self) -> Optional[Dict[str, np.ndarray]]:
        if "metric::sums" not in self.buffers:
            return None
        return {name: self.buffers[f"metric::{name}"].array for name in self.metric_names}

    def fetch_filters(self) -> Optional[Dict[str, np.ndarray]]:
        return self._cache.get("thresholds")

    def fetch_keep(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("keep")
        return None if buf is None else buf.array

    def fetch_keep_buffer(self) -> Optional[Buffer]:
        return self.buffers.get("keep")

    def fetch_subset(self) -> Optional[np.ndarray]:
        """u8 mask over features marking the subset used for the proportion/total metric."""
        buf = self.buffers.get("subset")
        return None if buf is None else buf.array

    def fetch_feature_configuration(self) -> Optional[Dict[str, Any]]:
        return self._cache.get("feature_configuration")

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def _metrics_stale(self, parameters: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def _compute_metrics(self, parameters: Dict[str, Any]) -> Dict[str, np.ndarray]:
        raise NotImplementedError

    def _compute_thresholds(self, parameters: Dict[str, Any], metrics, block, nblocks: int) -> Dict[str, np.ndarray]:
        raise NotImplementedError

    def _free_metrics(self) -> None:
        for name in self.metric_names:
            self.buffers.free(f"metric::{name}")
        self.buffers.free("subset")
        self._cache.pop("feature_configuration", None)

    def _free_filters(self) -> None:
        self.buffers.free("keep")
        self._cache.pop("thresholds", None)

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self.inputs.changed or self._metrics_stale(parameters):
                if self.valid():
                    metrics = self._compute_metrics(parameters)
                    for name in self.metric_names:
                        self.buffers.store(f"metric::{name}", metrics[name], self.metric_types.get(name, "f64"))
                    self.changed = True
                else:
                    self._free_metrics()

            if self.changed or self._differs(parameters, self.filter_keys):
                if self.valid():
                    qc_utils.check_strategy(parameters["filter_strategy"], self.modality)
                    block = self.inputs.fetch_block()
                    metrics = self.fetch_metrics()
                    thresholds = self._compute_thresholds(parameters, metrics, block, self.inputs.num_samples())
                    keep = self.buffers.allocate("keep", self.inputs.num_cells(), "u8")
                    qc_utils.filter_cells(metrics, thresholds, block=block, out=keep.array)
                    self._cache["thresholds"] = thresholds
                    self.changed = True
                    LOGGER.info(
                        "%s QC retains %d of %d cells", self.modality, int(keep.array.sum()), keep.array.shape[0]
                    )
                else:
                    self._free_filters()

            self._parameters = parameters

        self._log_outcome()


# -------------------------------------------------------------------------
# RNA
# -------------------------------------------------------------------------
class RnaQualityControlStep(QualityControlStep):
    step_name = "rna_quality_control"
    parameter_model = RnaQualityControlParameters
    modality = "RNA"
    metric_names = ["sums", "detected", "proportions"]
    metric_types = {"detected": "i32"}
    filter_keys = ["filter_strategy", "nmads", "sum_threshold", "detected_threshold", "mito_threshold"]

    def _metrics_stale(self, parameters: Dict[str, Any]) -> bool:
        if self._differs(parameters, ["guess_ids", "use_reference_mito"]):
            return True
        if not parameters["use_reference_mito"] and self._differs(parameters, ["mito_prefix"]):
            return True
        if parameters["guess_ids"]:
            return False
        if self._differs(parameters, ["gene_id_column"]):
            return True
        return parameters["use_reference_mito"] and self._differs(parameters, ["species", "gene_id_type"])

    def _compute_metrics(self, parameters: Dict[str, Any]) -> Dict[str, np.ndarray]:
        table = self.inputs.fetch_feature_annotations()[self.modality]
        configuration = {
            "gene_id_column": parameters["gene_id_column"],
            "species": list(parameters["species"]),
            "gene_id_type": parameters["gene_id_type"],
        }
        if parameters["guess_ids"]:
            guesses = qc_utils.guess_feature_columns(table)
            configuration = qc_utils.configure_rna_features(parameters["use_reference_mito"], guesses)
            LOGGER.info(
                "Guessed RNA identifiers: column=%s species=%s type=%s",
                configuration["gene_id_column"], configuration["species"], configuration["gene_id_type"],
            )

        ids = qc_utils.feature_column(table, configuration["gene_id_column"])
        if parameters["use_reference_mito"]:
            reference = set()
            for species in configuration["species"]:
                if str(species) not in MITO_SPECIES:
                    LOGGER.warning("No reference mitochondrial list for species %s", species)
                    continue
                reference.update(fetch_mito_list(species, configuration["gene_id_type"], self.context.download))
            subset = qc_utils.reference_mask(ids, reference)
        else:
            subset = qc_utils.prefix_mask(ids, parameters["mito_prefix"])

        LOGGER.info("Identified %d mitochondrial genes", int(subset.sum()))
        self.buffers.store("subset", subset, "u8")
        self._cache["feature_configuration"] = configuration

        mat = self.inputs.fetch_count_matrix().get(self.modality)
        return qc_utils.per_cell_rna_qc_metrics(mat, subset)

    def _compute_thresholds(self, parameters, metrics, block, nblocks):
        if parameters["filter_strategy"] == "automatic":
            return qc_utils.suggest_rna_qc_filters(metrics, parameters["nmads"], block)
        return qc_utils.manual_qc_filters(
            nblocks,
            sums=parameters["sum_threshold"],
            detected=parameters["detected_threshold"],
            proportions=parameters["mito_threshold"],
        )


# -------------------------------------------------------------------------
# ADT
# -------------------------------------------------------------------------
class AdtQualityControlStep(QualityControlStep):
    step_name = "adt_quality_control"
    parameter_model = AdtQualityControlParameters
    modality = "ADT"
    metric_names = ["sums", "detected", "igg_totals"]
    metric_types = {"detected": "i32"}
    filter_keys = ["filter_strategy", "nmads", "min_detected_drop", "detected_threshold", "igg_threshold"]

    def _metrics_stale(self, parameters: Dict[str, Any]) -> bool:
        if self._differs(parameters, ["automatic", "igg_prefix"]):
            return True
        return not parameters["automatic"] and self._differs(parameters, ["tag_id_column"])

    def _compute_metrics(self, parameters: Dict[str, Any]) -> Dict[str, np.ndarray]:
        table = self.inputs.fetch_feature_annotations()[self.modality]
        prefix = parameters["igg_prefix"]

        column = parameters["tag_id_column"]
        if prefix is not None and parameters["automatic"]:
            column = qc_utils.best_prefix_column(table, prefix)
        subset = qc_utils.prefix_mask(qc_utils.feature_column(table, column), prefix)

        LOGGER.info("Identified %d IgG controls", int(subset.sum()))
        self.buffers.store("subset", subset, "u8")
        self._cache["feature_configuration"] = {"tag_id_column": column}

        mat = self.inputs.fetch_count_matrix().get(self.modality)
        return qc_utils.per_cell_adt_qc_metrics(mat, subset)

    def _compute_thresholds(self, parameters, metrics, block, nblocks):
        if parameters["filter_strategy"] == "automatic":
            return qc_utils.suggest_adt_qc_filters(metrics, parameters["nmads"], parameters["min_detected_drop"], block)
        return qc_utils.manual_qc_filters(
            nblocks,
            detected=parameters["detected_threshold"],
            igg_totals=parameters["igg_threshold"],
        )


# -------------------------------------------------------------------------
# CRISPR
# -------------------------------------------------------------------------
class CrisprQualityControlStep(QualityControlStep):
    step_name = "crispr_quality_control"
    parameter_model = CrisprQualityControlParameters
    modality = "CRISPR"
    metric_names = ["sums", "detected", "max_proportion", "max_index"]
    metric_types = {"detected": "i32", "max_index": "i32"}
    filter_keys = ["filter_strategy", "nmads", "max_threshold"]

    def _metrics_stale(self, parameters: Dict[str, Any]) -> bool:
        return self._stale or not self._parameters

    def _compute_metrics(self, parameters: Dict[str, Any]) -> Dict[str, np.ndarray]:
        mat = self.inputs.fetch_count_matrix().get(self.modality)
        return qc_utils.per_cell_crispr_qc_metrics(mat)

    def _compute_thresholds(self, parameters, metrics, block, nblocks):
        if parameters["filter_strategy"] == "automatic":
            return qc_utils.suggest_crispr_qc_filters(metrics, parameters["nmads"], block)
        return qc_utils.manual_qc_filters(nblocks, max_count=parameters["max_threshold"])
