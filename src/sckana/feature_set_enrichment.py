from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import pandas as pd

from . import enrichment_utils
from .config import FeatureSetEnrichmentParameters
from .engine import Step
from .errors import EnrichmentError
from .inputs import InputsStep
from .marker_detection import MarkerDetectionStep
from .marker_utils import MarkerResults

LOGGER = logging.getLogger(__name__)


class FeatureSetEnrichmentStep(Step):
    """
    Tests whether the top RNA markers of a cluster are over-represented in
    curated feature sets. Collections are downloaded once, mapped onto the
    loaded RNA features and filtered by size; per-cluster results are
    computed on request and cached until the next change.
    """

    step_name = "feature_set_enrichment"
    parameter_model = FeatureSetEnrichmentParameters
    mapping_keys = ["feature_sets", "dataset_id_column", "reference_id_column"]
    size_keys = ["minimum_set_size", "maximum_set_size"]

    def __init__(self, inputs: InputsStep, markers: MarkerDetectionStep, context=None) -> None:
        super().__init__(context)
        self.inputs = inputs
        self.markers = markers
        self._cache = {"mapped": {}, "filtered": {}, "adhoc": {}}

    def valid(self) -> bool:
        return "RNA" in self.inputs.fetch_feature_annotations()

    def free(self) -> None:
        super().free()
        self._cache = {"mapped": {}, "filtered": {}, "adhoc": {}}

    def fetch_collections(self) -> Dict[str, enrichment_utils.MappedCollection]:
        return dict(self._cache["filtered"])

    def fetch_set_details(self) -> Dict[str, pd.DataFrame]:
        """Name, description and mapped size of every retained set, per collection."""
        return {
            name: pd.DataFrame({"name": c.set_names, "description": c.descriptions, "size": c.sizes()})
            for name, c in self._cache["filtered"].items()
        }

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def _data_ids(self, column):
        table = self.inputs.fetch_feature_annotations()["RNA"]
        if column is None:
            return [str(x) for x in table.index]
        if column not in table.columns:
            raise EnrichmentError(
                "UnknownColumn",
                f"Feature annotation column '{column}' not found. Available: {list(table.columns)}",
                column=column,
            )
        return table[column].astype(str).tolist()

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if not self.valid():
                if self._cache["mapped"]:
                    self._cache = {"mapped": {}, "filtered": {}, "adhoc": {}}
                    self.changed = True
            else:
                mapped = self._cache["mapped"]
                if self.inputs.changed or self._differs(parameters, self.mapping_keys):
                    ids = self._data_ids(parameters["dataset_id_column"])
                    mapped = {}
                    for name in parameters["feature_sets"]:
                        collection = enrichment_utils.fetch_collection(name, self.context.download)
                        mapped[name] = enrichment_utils.remap_collection(
                            collection, ids, parameters["reference_id_column"]
                        )
                    self.changed = True

                filtered = self._cache["filtered"]
                if self.changed or self._differs(parameters, self.size_keys):
                    filtered = {
                        name: enrichment_utils.filter_collection(
                            m, parameters["minimum_set_size"], parameters["maximum_set_size"]
                        )
                        for name, m in mapped.items()
                    }
                    LOGGER.info(
                        "Prepared %d feature sets across %d collections",
                        sum(len(c.sets) for c in filtered.values()), len(filtered),
                    )
                    self.changed = True

                if self.markers.changed or self._differs(parameters, ["top_markers"]):
                    self.changed = True
                self._cache = {
                    "mapped": mapped,
                    "filtered": filtered,
                    "adhoc": {} if self.changed else self._cache["adhoc"],
                }

            self._parameters = parameters

        self._log_outcome()

    # ------------------------------------------------------------------
    # Per-group results
    # ------------------------------------------------------------------
    def compute_enrichment(self, group: int, effect_size: str = "cohen", summary: str = "mean") -> Dict[str, Dict[str, Any]]:
        """
        Enrichment for the RNA markers of cluster ``group``; see
        ``enrichment_utils.enrich_markers`` for the layout.
        """
        key = (int(group), effect_size, summary)
        if key not in self._cache["adhoc"]:
            results = self.markers.fetch_results().get("RNA")
            if results is None:
                raise EnrichmentError("NoMarkers", "no RNA marker results are available")
            self._cache["adhoc"][key] = self.enrich_markers(results, group, effect_size, summary)
        return self._cache["adhoc"][key]

    def enrich_markers(
        self,
        results: MarkerResults,
        group: int,
        effect_size: str = "cohen",
        summary: str = "mean",
    ) -> Dict[str, Dict[str, Any]]:
        """Enrichment for arbitrary RNA marker results, e.g. a custom selection."""
        return enrichment_utils.enrich_markers(
            results,
            group,
            self._cache["filtered"],
            effect_size=effect_size,
            summary=summary,
            top_markers=self._parameters.get("top_markers", 100),
        )
