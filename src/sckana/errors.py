from __future__ import annotations

from typing import Any, Dict, Optional

import numpy as np


class AnalysisError(Exception):
    """
    Base class for every failure raised by the analysis engine.

    Each error carries a ``kind`` of the form ``"<Family>.<Kind>"`` (for example
    ``"ESubset.OutOfRange"``), the offending identifiers, and the name of the
    step that raised it (filled in by the orchestrator).
    """

    family = "EAnalysis"

    def __init__(self, kind: str, message: str, **identifiers: Any) -> None:
        super().__init__(message)
        self.kind = f"{self.family}.{kind}"
        self.identifiers: Dict[str, Any] = identifiers
        self.step: Optional[str] = None

    def diagnostic(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "step": self.step,
            "message": str(self),
            "identifiers": dict(self.identifiers),
        }


class InputsError(AnalysisError, ValueError):
    family = "EInputs"


class SubsetError(AnalysisError, IndexError):
    family = "ESubset"


class QcError(AnalysisError, ValueError):
    family = "EQc"


class FilterError(AnalysisError, IndexError):
    family = "EFilter"


class NormalizationError(AnalysisError, ValueError):
    family = "ENorm"


class PcaError(AnalysisError, ValueError):
    family = "EPca"


class CombineError(AnalysisError, ValueError):
    family = "ECombine"


class ClusterError(AnalysisError, ValueError):
    family = "ECluster"


class MarkerError(AnalysisError, ValueError):
    family = "EMarkers"


class LabellingError(AnalysisError, ValueError):
    family = "ELabels"


class EnrichmentError(AnalysisError, ValueError):
    family = "EEnrichment"


class ParameterError(AnalysisError, TypeError):
    family = "EParam"


class KernelError(AnalysisError, RuntimeError):
    family = "EKernel"


class ReaderError(AnalysisError, OSError):
    family = "EReader"


def check_indices(indices, limit: int, error_cls=SubsetError) -> None:
    """Raise unless ``indices`` is strictly ascending and inside ``[0, limit)``."""
    arr = np.asarray(indices, dtype=np.int64)
    outside = (arr < 0) | (arr >= limit)
    if outside.any():
        i = int(arr[outside][0])
        raise error_cls("OutOfRange", f"index {i} is out of range for {limit} cells", index=i, limit=limit)

    if arr.size > 1:
        steps = np.diff(arr)
        if (steps <= 0).any():
            pos = int(np.flatnonzero(steps <= 0)[0])
            raise error_cls(
                "Unsorted",
                f"indices should be strictly increasing (saw {arr[pos]} then {arr[pos + 1]})",
                index=int(arr[pos + 1]),
            )
