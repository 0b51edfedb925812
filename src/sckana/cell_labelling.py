from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from . import labelling_utils, qc_utils
from .config import CellLabellingParameters
from .engine import Step
from .errors import LabellingError
from .inputs import InputsStep
from .marker_detection import MarkerDetectionStep

LOGGER = logging.getLogger(__name__)


class CellLabellingStep(Step):
    """
    Assigns a reference label to each cluster by correlating the cluster's
    mean RNA profile with pre-ranked reference profiles. With several
    references, each cluster also gets the reference whose label fits best.
    """

    step_name = "cell_labelling"
    parameter_model = CellLabellingParameters
    reference_keys = ["references", "guess_ids", "species", "gene_id_column", "gene_id_type"]

    def __init__(self, inputs: InputsStep, markers: MarkerDetectionStep, context=None) -> None:
        super().__init__(context)
        self.inputs = inputs
        self.markers = markers
        self._cache = {"trained": {}, "results": None}

    def valid(self) -> bool:
        return "RNA" in self.inputs.fetch_feature_annotations()

    def fetch_results(self) -> Optional[Dict[str, Any]]:
        """``{"per_reference": {name: [label per cluster]}, "integrated": [name per cluster] or None}``."""
        return self._cache["results"]

    def fetch_num_shared_features(self) -> Dict[str, int]:
        return {name: ref.num_features() for name, ref in self._cache["trained"].items()}

    def free(self) -> None:
        super().free()
        self._cache = {"trained": {}, "results": None}

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def _configure(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        table = self.inputs.fetch_feature_annotations()["RNA"]
        if parameters["guess_ids"]:
            configuration = qc_utils.configure_rna_features(True, qc_utils.guess_feature_columns(table))
        else:
            configuration = {
                "gene_id_column": parameters["gene_id_column"],
                "species": list(parameters["species"]),
                "gene_id_type": parameters["gene_id_type"],
            }
        configuration["ids"] = qc_utils.feature_column(table, configuration["gene_id_column"])
        return configuration

    def _train(self, parameters: Dict[str, Any]) -> Dict[str, labelling_utils.TrainedReference]:
        configuration = self._configure(parameters)
        names = parameters["references"]
        if names is None:
            names = labelling_utils.references_for(configuration["species"])
            if not names:
                LOGGER.warning("No labelling references for species %s", configuration["species"])

        trained = {}
        for name in names:
            ref = labelling_utils.fetch_reference(name, configuration["gene_id_type"], self.context.download)
            trained[name] = labelling_utils.train_reference(ref, configuration["ids"], configuration["gene_id_type"])
        return trained

    def _label(self, profiles: np.ndarray) -> Dict[str, Any]:
        trained = self._cache["trained"]
        per_reference, assigned = {}, []
        for name, ref in trained.items():
            _, best = labelling_utils.label_profiles(profiles, ref)
            per_reference[name] = [ref.label_names[b] for b in best]
            assigned.append(best)

        integrated = None
        if len(trained) > 1:
            scores = labelling_utils.integrate_labels(profiles, list(trained.values()), assigned)
            names = list(trained)
            integrated = [
                names[int(np.nanargmax(row))] if np.isfinite(row).any() else names[0]
                for row in scores.to_numpy()
            ]
        return {"per_reference": per_reference, "integrated": integrated}

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if not self.valid():
                if self._cache["trained"] or self._cache["results"] is not None:
                    self._cache = {"trained": {}, "results": None}
                    self.changed = True
            else:
                retrain = self.inputs.changed or self._differs(parameters, self.reference_keys)
                if retrain:
                    self._cache = {"trained": self._train(parameters), "results": None}
                    self.changed = True

                marker_results = self.markers.fetch_results().get("RNA")
                if marker_results is None or not self._cache["trained"]:
                    if self._cache["results"] is not None:
                        self._cache["results"] = None
                        self.changed = True
                elif retrain or self.markers.changed or self._cache["results"] is None:
                    self._cache["results"] = self._label(marker_results.means.T)
                    LOGGER.info(
                        "Labelled %d clusters against %d references",
                        marker_results.num_groups(), len(self._cache["trained"]),
                    )
                    self.changed = True

            self._parameters = parameters

        self._log_outcome()

    # ------------------------------------------------------------------
    # Ad hoc labelling
    # ------------------------------------------------------------------
    def compute_labels(self, x, group: Optional[List] = None) -> Dict[str, Any]:
        """
        Label the columns of a genes x columns matrix whose rows follow the
        loaded RNA features. With ``group``, columns are first averaged per
        group and ``"groups"`` lists the group of each result.
        """
        if not self._cache["trained"]:
            raise LabellingError("NotTrained", "no labelling references are loaded")

        nfeatures = len(self.inputs.fetch_feature_annotations()["RNA"])
        if x.shape[0] != nfeatures:
            raise LabellingError(
                "LengthMismatch",
                f"expected one row per RNA feature ({nfeatures}), got {x.shape[0]}",
                expected=nfeatures,
                observed=int(x.shape[0]),
            )

        levels = None
        if group is not None:
            profiles, levels = labelling_utils.group_means(x, group)
        else:
            profiles = labelling_utils.as_dense(x)

        out = self._label(profiles)
        if levels is not None:
            out["groups"] = levels
        return out
