from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .batch_correction import BatchCorrectionStep
from .config import NeighborIndexParameters
from .engine import Step
from .neighbor_utils import NeighborSearchIndex, build_neighbor_index

LOGGER = logging.getLogger(__name__)


class NeighborIndexStep(Step):
    step_name = "neighbor_index"
    parameter_model = NeighborIndexParameters

    def __init__(self, correct: BatchCorrectionStep, context=None) -> None:
        super().__init__(context)
        self.correct = correct

    def valid(self) -> bool:
        return self.correct.valid()

    def fetch_index(self) -> Optional[NeighborSearchIndex]:
        return self._cache.get("index")

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self.correct.changed or self._differs(parameters, ["approximate"]):
                if self.valid():
                    self._cache["index"] = build_neighbor_index(self.correct.fetch_corrected(), parameters["approximate"])
                    LOGGER.info(
                        "Built %s neighbour index over %d cells",
                        "approximate" if parameters["approximate"] else "exact",
                        self.correct.num_cells(),
                    )
                else:
                    self._cache.pop("index", None)
                self.changed = True
            self._parameters = parameters

        self._log_outcome()
