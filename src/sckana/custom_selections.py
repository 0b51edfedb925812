from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from . import marker_utils
from .cell_filtering import CellFilteringStep
from .config import CustomSelectionsParameters
from .engine import Step
from .errors import MarkerError, check_indices
from .marker_detection import valid_modalities
from .normalization import NormalizationStep

LOGGER = logging.getLogger(__name__)


class CustomSelectionsStep(Step):
    """
    User-defined cell selections in the filtered cell space, each scored as
    group 1 against all other cells.

    Selections are discarded whenever filtering changes; they are rescored
    when normalisation or the marker parameters change.
    """

    step_name = "custom_selections"
    parameter_model = CustomSelectionsParameters

    def __init__(
        self,
        filtering: CellFilteringStep,
        norm_states: Dict[str, NormalizationStep],
        context=None,
        enrichment=None,
    ) -> None:
        super().__init__(context)
        self.filtering = filtering
        self.norm_states = norm_states
        self.enrichment = enrichment
        self._selections: Dict[str, np.ndarray] = {}
        self._cache = {"results": {}, "versus": {}}

    def valid(self) -> bool:
        return len(valid_modalities(self.norm_states)) > 0

    # ------------------------------------------------------------------
    # Selections
    # ------------------------------------------------------------------
    def _score(self, selection: np.ndarray, parameters: Dict[str, Any]) -> Dict[str, marker_utils.MarkerResults]:
        ncells = self.filtering.num_retained()
        groups = np.zeros(ncells, dtype=np.int32)
        groups[selection] = 1
        if selection.size == 0 or selection.size == ncells:
            raise MarkerError(
                "EmptyGroup",
                "a selection needs at least one cell inside and one outside it",
                size=int(selection.size),
                ncells=ncells,
            )

        block = self.filtering.fetch_filtered_block()
        return {
            m: marker_utils.score_markers(
                self.norm_states[m].fetch_normalized_matrix(),
                groups,
                block=block,
                lfc_threshold=parameters["lfc_threshold"],
                compute_auc=parameters["compute_auc"],
            )
            for m in valid_modalities(self.norm_states)
        }

    def _require(self, id: str) -> None:
        if id not in self._selections:
            raise MarkerError("UnknownSelection", f"no custom selection named '{id}'", selection=id)

    def add_selection(self, id: str, indices: Sequence[int], copy: bool = True) -> None:
        """Score a selection of filtered-space cell indices, replacing any selection with the same id."""
        indices = np.array(indices, dtype=np.int32) if copy else np.asarray(indices, dtype=np.int32)
        check_indices(indices, self.filtering.num_retained())

        parameters = self._parameters or self.defaults()
        self._cache["results"][id] = self._score(indices, parameters)
        self._selections[id] = indices
        self._drop_versus(id)
        LOGGER.info("Added custom selection '%s' with %d cells", id, indices.size)

    def remove_selection(self, id: str) -> None:
        self._require(id)
        del self._selections[id]
        del self._cache["results"][id]
        self._drop_versus(id)

    def _drop_versus(self, id: str) -> None:
        versus = self._cache["versus"]
        versus.pop(id, None)
        for inner in versus.values():
            inner.pop(id, None)

    def fetch_results(self, id: str) -> Dict[str, marker_utils.MarkerResults]:
        self._require(id)
        return dict(self._cache["results"][id])

    def fetch_selection_indices(self, id: str, copy: bool = True) -> np.ndarray:
        self._require(id)
        sel = self._selections[id]
        return sel.copy() if copy else sel

    def fetch_selections(self, copy: bool = True) -> Dict[str, np.ndarray]:
        return {k: (v.copy() if copy else v) for k, v in self._selections.items()}

    def selection_ids(self) -> List[str]:
        return list(self._selections)

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self.filtering.changed or self._stale:
                if self._selections:
                    LOGGER.info("Filtering changed; dropping %d custom selection(s)", len(self._selections))
                self._selections = {}
                self._cache = {"results": {}, "versus": {}}
                self.changed = True

            norm_changed = any(s.changed for s in self.norm_states.values())
            if norm_changed or self._differs(parameters, ["lfc_threshold", "compute_auc"]):
                self._cache = {
                    "results": {k: self._score(v, parameters) for k, v in self._selections.items()},
                    "versus": {},
                }
                self.changed = True

            self._parameters = parameters

        self._log_outcome()

    def free(self) -> None:
        super().free()
        self._selections = {}
        self._cache = {"results": {}, "versus": {}}

    # ------------------------------------------------------------------
    # Versus mode
    # ------------------------------------------------------------------
    def compute_versus(self, left: str, right: str) -> Dict[str, Any]:
        """Markers between two selections; cells in both count towards ``left``."""
        self._require(left)
        self._require(right)

        entry, run, left_small = marker_utils.locate_versus(self._cache["versus"], left, right)
        if run:
            left_ids = self._selections[left]
            right_ids = np.setdiff1d(self._selections[right], left_ids)
            if left_ids.size == 0 or right_ids.size == 0:
                del self._cache["versus"][max(left, right)][min(left, right)]
                raise MarkerError("EmptyGroup", "both selections need distinct cells in versus mode", left=left, right=right)

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

    # ------------------------------------------------------------------
    # Feature set enrichment
    # ------------------------------------------------------------------
    def compute_enrichment(self, id: str, effect_size: str = "cohen") -> Optional[Dict[str, Any]]:
        """Feature set enrichment among the RNA markers of a selection; None without RNA results."""
        results = self.fetch_results(id).get("RNA")
        if results is None or self.enrichment is None:
            return None
        # the selection is group 1; with two groups every summary is the same
        return self.enrichment.enrich_markers(results, 1, effect_size, "mean")
