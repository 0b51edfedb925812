from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from . import marker_utils
from .cell_filtering import CellFilteringStep
from .clustering import ChooseClusteringStep
from .config import MarkerDetectionParameters
from .engine import Step
from .errors import MarkerError
from .normalization import NormalizationStep

LOGGER = logging.getLogger(__name__)


def valid_modalities(norm_states: Dict[str, NormalizationStep]) -> List[str]:
    return [m for m, state in norm_states.items() if state.valid()]


class MarkerDetectionStep(Step):
    """
    Per-cluster marker statistics for every valid modality, scored against
    the clusters of the selected method. Pairwise ``compute_versus`` results
    are cached until the next recompute.
    """

    step_name = "marker_detection"
    parameter_model = MarkerDetectionParameters

    def __init__(
        self,
        filtering: CellFilteringStep,
        norm_states: Dict[str, NormalizationStep],
        choice: ChooseClusteringStep,
        context=None,
    ) -> None:
        super().__init__(context)
        self.filtering = filtering
        self.norm_states = norm_states
        self.choice = choice
        self._cache = {"raw": {}, "versus": {}}

    def valid(self) -> bool:
        return self.choice.valid() and self.choice.fetch_clusters() is not None

    def fetch_results(self) -> Dict[str, marker_utils.MarkerResults]:
        return dict(self._cache["raw"])

    def num_groups(self) -> int:
        for res in self._cache["raw"].values():
            return res.num_groups()
        return 0

    def free(self) -> None:
        super().free()
        self._cache = {"raw": {}, "versus": {}}

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False
        param_changed = self._differs(parameters, ["lfc_threshold", "compute_auc"])

        with self._transaction():
            raw = dict(self._cache["raw"])
            if not self.valid():
                if raw:
                    raw = {}
                    self.changed = True
            else:
                clusters = self.choice.fetch_clusters()
                block = self.filtering.fetch_filtered_block()
                for modality, state in self.norm_states.items():
                    if not state.valid():
                        if raw.pop(modality, None) is not None:
                            self.changed = True
                        continue
                    if state.changed or self.choice.changed or param_changed or modality not in raw:
                        raw[modality] = marker_utils.score_markers(
                            state.fetch_normalized_matrix(),
                            clusters,
                            block=block,
                            lfc_threshold=parameters["lfc_threshold"],
                            compute_auc=parameters["compute_auc"],
                        )
                        LOGGER.info("Scored %s markers for %d clusters", modality, raw[modality].num_groups())
                        self.changed = True

            self._cache = {"raw": raw, "versus": {} if self.changed else self._cache["versus"]}
            self._parameters = parameters

        self._log_outcome()

    # ------------------------------------------------------------------
    # Versus mode
    # ------------------------------------------------------------------
    def compute_versus(self, left: int, right: int) -> Dict[str, Any]:
        """
        Markers between two clusters, with effect sizes oriented as
        ``left - right``. Returns ``{"results", "left", "right"}`` where
        ``left``/``right`` are the group indices inside each result.
        """
        clusters = self.choice.fetch_clusters()
        if clusters is None:
            raise MarkerError("EmptyGroup", "no clusters are available for versus mode")

        entry, run, left_small = marker_utils.locate_versus(self._cache["versus"], left, right)
        if run:
            left_ids = np.flatnonzero(clusters == left)
            right_ids = np.flatnonzero(clusters == right)
            if left_ids.size == 0 or right_ids.size == 0:
                del self._cache["versus"][max(left, right)][min(left, right)]
                raise MarkerError(
                    "EmptyGroup",
                    "both clusters need at least one cell in versus mode",
                    left=left,
                    right=right,
                )
            keep, groups = marker_utils.versus_groups(left_ids, right_ids, left_small)
            block = self.filtering.fetch_filtered_block()
            for modality in valid_modalities(self.norm_states):
                entry[modality] = marker_utils.score_versus(
                    self.norm_states[modality].fetch_normalized_matrix(),
                    keep,
                    groups,
                    block=block,
                    lfc_threshold=self._parameters.get("lfc_threshold", 0),
                    compute_auc=self._parameters.get("compute_auc", True),
                )

        return {"results": entry, "left": 0 if left_small else 1, "right": 1 if left_small else 0}
