from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from . import stats_utils
from .config import CombineEmbeddingsParameters
from .engine import Step
from .errors import CombineError
from .pca import PcaStep

LOGGER = logging.getLogger(__name__)


class CombineEmbeddingsStep(Step):
    """
    Merges the PCs of every valid modality into one embedding. With a single
    contributor the result is a view of that modality's PCs; parameter
    changes are then ignored because they have no effect.
    """

    step_name = "combine_embeddings"
    parameter_model = CombineEmbeddingsParameters

    def __init__(self, pca_states: Dict[str, PcaStep], context=None) -> None:
        super().__init__(context)
        self.pca_states = pca_states

    def _valid_modalities(self) -> List[str]:
        return [m for m, state in self.pca_states.items() if state.valid()]

    def valid(self) -> bool:
        return len(self._valid_modalities()) > 0

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def fetch_combined(self) -> Optional[np.ndarray]:
        """cells x dims view of the combined embedding."""
        buf = self.buffers.get("combined")
        if buf is None:
            return None
        return buf.array.reshape(self.num_cells(), self.num_dimensions())

    def fetch_combined_buffer(self):
        return self.buffers.get("combined")

    def num_cells(self) -> int:
        return int(self._cache.get("num_cells", 0))

    def num_dimensions(self) -> int:
        return int(self._cache.get("total_dims", 0))

    def fetch_contributors(self) -> List[str]:
        return list(self._cache.get("contributors", []))

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def _view_of(self, modality: str) -> None:
        state = self.pca_states[modality]
        self.buffers.view_of("combined", state.fetch_pcs_buffer())
        pcs = state.fetch_pcs()
        self._cache["num_cells"] = pcs.shape[0]
        self._cache["total_dims"] = pcs.shape[1]
        self._cache["contributors"] = [modality]

    def _select(self, to_use: List[str], weights: Optional[Dict[str, float]]):
        if weights is None:
            return to_use, None

        chosen, weight_arr = [], []
        for m in to_use:
            if m not in weights:
                raise CombineError("MissingWeight", f"no weight specified for '{m}'", modality=m)
            if weights[m] > 0:
                chosen.append(m)
                weight_arr.append(float(weights[m]))
        if not chosen:
            raise CombineError("NoPositiveWeight", "at least one modality needs a positive weight", weights=dict(weights))
        return chosen, weight_arr

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = self._stale or any(state.changed for state in self.pca_states.values())
        to_use = self._valid_modalities()

        with self._transaction():
            if not to_use:
                if self.changed:
                    self.buffers.free("combined")
                    for key in ("num_cells", "total_dims", "contributors"):
                        self._cache.pop(key, None)
            elif len(to_use) > 1:
                if self.changed or self._differs(parameters, ["approximate", "weights"]):
                    chosen, weight_arr = self._select(to_use, parameters["weights"])
                    if len(chosen) == 1:
                        self._view_of(chosen[0])
                    else:
                        embeddings = [self.pca_states[m].fetch_pcs() for m in chosen]
                        combined = stats_utils.scale_by_neighbors(
                            embeddings, weights=weight_arr, approximate=parameters["approximate"]
                        )
                        self.buffers.store("combined", combined.ravel(), "f64")
                        self._cache["num_cells"] = combined.shape[0]
                        self._cache["total_dims"] = combined.shape[1]
                        self._cache["contributors"] = chosen
                        LOGGER.info("Combined embeddings of %s into %d dimensions", ", ".join(chosen), combined.shape[1])
                    self.changed = True
            elif self.changed:
                self._view_of(to_use[0])

            self._parameters = parameters

        self._log_outcome()
