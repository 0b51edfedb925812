from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import Any, Callable, Dict, Iterator, Optional

from .batch_correction import BatchCorrectionStep
from .cell_filtering import CellFilteringStep
from .cell_labelling import CellLabellingStep
from .clustering import ChooseClusteringStep, KmeansClusterStep, SnnGraphClusterStep
from .combine_embeddings import CombineEmbeddingsStep
from .config import STEP_PARAMETERS, analysis_defaults, resolve_analysis_parameters
from .context import (
    EngineContext,
    set_create_link,
    set_download,
    set_resolve_link,
    set_visualization_animate,
)
from .custom_selections import CustomSelectionsStep
from .engine import Step
from .errors import AnalysisError
from .export import save_genewise_results, save_single_cell_experiment
from .feature_selection import FeatureSelectionStep
from .feature_set_enrichment import FeatureSetEnrichmentStep
from .inputs import InputsStep
from .enrichment_utils import flush_feature_sets
from .io_utils import DatasetHandle, flush_mito_lists
from .labelling_utils import flush_references
from .marker_detection import MarkerDetectionStep
from .neighbor_index import NeighborIndexStep
from .normalization import AdtNormalizationStep, CrisprNormalizationStep, RnaNormalizationStep
from .pca import AdtPcaStep, CrisprPcaStep, RnaPcaStep
from .quality_control import AdtQualityControlStep, CrisprQualityControlStep, RnaQualityControlStep
from .visualization import TsneStep, UmapStep

LOGGER = logging.getLogger(__name__)

__all__ = [
    "AnalysisState",
    "analysis_defaults",
    "create_analysis",
    "flush_feature_sets",
    "flush_mito_lists",
    "flush_references",
    "free_analysis",
    "retrieve_parameters",
    "run_analysis",
    "save_genewise_results",
    "save_single_cell_experiment",
    "set_create_link",
    "set_download",
    "set_resolve_link",
    "set_visualization_animate",
]

StartFun = Callable[[str], None]
FinishFun = Callable[..., None]

# Steps computed synchronously before the embeddings and clustering.
BASIC_STEPS = (
    "rna_quality_control",
    "adt_quality_control",
    "crispr_quality_control",
    "cell_filtering",
    "rna_normalization",
    "adt_normalization",
    "crispr_normalization",
    "feature_selection",
    "rna_pca",
    "adt_pca",
    "crispr_pca",
    "combine_embeddings",
    "batch_correction",
    "neighbor_index",
)

# Every step in the order ``run_analysis`` computes them.
RUN_ORDER = ("inputs",) + BASIC_STEPS + (
    "tsne",
    "umap",
    "kmeans_cluster",
    "snn_graph_cluster",
    "choose_clustering",
    "marker_detection",
    "cell_labelling",
    "custom_selections",
    "feature_set_enrichment",
)


class AnalysisState:
    """All steps of one analysis, wired together; steps are reachable by name."""

    def __init__(self, context: Optional[EngineContext] = None, reloaded: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        reloaded = reloaded or {}
        self.context = context

        self.inputs = InputsStep(context)

        self.rna_quality_control = RnaQualityControlStep(self.inputs, context)
        self.adt_quality_control = AdtQualityControlStep(self.inputs, context)
        self.crispr_quality_control = CrisprQualityControlStep(self.inputs, context)
        qc_states = {
            "RNA": self.rna_quality_control,
            "ADT": self.adt_quality_control,
            "CRISPR": self.crispr_quality_control,
        }
        self.cell_filtering = CellFilteringStep(self.inputs, qc_states, context)

        self.rna_normalization = RnaNormalizationStep(self.rna_quality_control, self.cell_filtering, context)
        self.adt_normalization = AdtNormalizationStep(self.adt_quality_control, self.cell_filtering, context)
        self.crispr_normalization = CrisprNormalizationStep(self.crispr_quality_control, self.cell_filtering, context)
        norm_states = {
            "RNA": self.rna_normalization,
            "ADT": self.adt_normalization,
            "CRISPR": self.crispr_normalization,
        }

        self.feature_selection = FeatureSelectionStep(self.cell_filtering, self.rna_normalization, context)

        self.rna_pca = RnaPcaStep(self.cell_filtering, self.rna_normalization, self.feature_selection, context)
        self.adt_pca = AdtPcaStep(self.cell_filtering, self.adt_normalization, context)
        self.crispr_pca = CrisprPcaStep(self.cell_filtering, self.crispr_normalization, context)
        pca_states = {"RNA": self.rna_pca, "ADT": self.adt_pca, "CRISPR": self.crispr_pca}

        self.combine_embeddings = CombineEmbeddingsStep(pca_states, context)
        self.batch_correction = BatchCorrectionStep(self.cell_filtering, self.combine_embeddings, context)
        self.neighbor_index = NeighborIndexStep(self.batch_correction, context)

        self.tsne = TsneStep(self.neighbor_index, context, reloaded=reloaded.get("tsne"))
        self.umap = UmapStep(self.neighbor_index, context, reloaded=reloaded.get("umap"))

        self.kmeans_cluster = KmeansClusterStep(self.batch_correction, context)
        self.snn_graph_cluster = SnnGraphClusterStep(self.neighbor_index, context)
        self.choose_clustering = ChooseClusteringStep(self.snn_graph_cluster, self.kmeans_cluster, context)

        self.marker_detection = MarkerDetectionStep(self.cell_filtering, norm_states, self.choose_clustering, context)
        self.cell_labelling = CellLabellingStep(self.inputs, self.marker_detection, context)
        self.feature_set_enrichment = FeatureSetEnrichmentStep(self.inputs, self.marker_detection, context)
        self.custom_selections = CustomSelectionsStep(
            self.cell_filtering, norm_states, context, enrichment=self.feature_set_enrichment
        )

        for fut in (self.tsne.ready, self.umap.ready):
            fut.result()

    def __getitem__(self, name: str) -> Step:
        if name not in STEP_PARAMETERS:
            raise KeyError(f"unknown step '{name}'")
        return getattr(self, name)

    def __iter__(self) -> Iterator[str]:
        return iter(STEP_PARAMETERS)

    def items(self):
        return ((name, getattr(self, name)) for name in STEP_PARAMETERS)


def create_analysis(context: Optional[EngineContext] = None, reloaded: Optional[Dict[str, Dict[str, Any]]] = None) -> AnalysisState:
    """
    Create the steps of a new analysis. ``reloaded`` may hold previously
    computed ``{"tsne": {"x", "y"}, "umap": {"x", "y"}}`` coordinates.
    """
    return AnalysisState(context, reloaded=reloaded)


def free_analysis(state: AnalysisState) -> None:
    for name, step in state.items():
        step.free()
    LOGGER.debug("Freed all analysis steps")


def retrieve_parameters(state: AnalysisState) -> Dict[str, Dict[str, Any]]:
    return {name: step.fetch_parameters() for name, step in state.items()}


# ---------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------
def _mark_stale_from(state: AnalysisState, name: str) -> None:
    """The failed step and everything after it recompute on the next run."""
    for later in RUN_ORDER[RUN_ORDER.index(name):]:
        state[later].mark_stale()


def _run_step(state: AnalysisState, name: str, fun: Callable[[], Any], start_fun, finish_fun, defer: bool = False):
    if start_fun is not None:
        start_fun(name)

    try:
        out = fun()
    except AnalysisError as e:
        e.step = name
        LOGGER.error("Step '%s' failed [%s]: %s", name, e.kind, e)
        _mark_stale_from(state, name)
        raise
    except Exception:
        LOGGER.exception("Step '%s' failed", name)
        _mark_stale_from(state, name)
        raise

    if finish_fun is not None and not defer:
        step = state[name]
        if step.changed:
            finish_fun(name, step)
        else:
            finish_fun(name)
    return out


def run_analysis(
    state: AnalysisState,
    datasets: Dict[str, DatasetHandle],
    parameters: Optional[Dict[str, Any]] = None,
    *,
    start_fun: Optional[StartFun] = None,
    finish_fun: Optional[FinishFun] = None,
) -> Dict[str, Future]:
    """
    Run (or re-run) every step in dependency order. Steps whose parameters
    and upstreams are unchanged keep their cached results.

    ``start_fun(step)`` is called before each step; ``finish_fun(step, state)``
    after a step that changed and ``finish_fun(step)`` otherwise. Returns the
    pending t-SNE and UMAP futures; their ``finish_fun`` is called when they
    resolve.
    """
    params = resolve_analysis_parameters(parameters)

    _run_step(state, "inputs", lambda: state.inputs.compute(datasets, params["inputs"]), start_fun, finish_fun)

    for name in BASIC_STEPS:
        step = state[name]
        _run_step(state, name, lambda: step.compute(params[name]), start_fun, finish_fun)

    pending: Dict[str, Future] = {}
    for name in ("tsne", "umap"):
        step = state[name]
        fut = _run_step(state, name, lambda: step.compute(params[name]), start_fun, finish_fun, defer=True)
        # resolves only after finish_fun has been called
        reported: Future = Future()

        def _done(f, name=name, step=step, changed=step.changed, reported=reported):
            error = f.exception()
            if error is not None:
                LOGGER.error("Embedding '%s' failed: %s", name, error)
                reported.set_exception(error)
                return
            try:
                if finish_fun is not None:
                    if changed:
                        finish_fun(name, step)
                    else:
                        finish_fun(name)
            except Exception as e:
                reported.set_exception(e)
            else:
                reported.set_result(f.result())

        fut.add_done_callback(_done)
        pending[name] = reported

    method = params["choose_clustering"]["method"]
    _run_step(
        state,
        "kmeans_cluster",
        lambda: state.kmeans_cluster.compute(method == "kmeans", params["kmeans_cluster"]),
        start_fun,
        finish_fun,
    )
    _run_step(
        state,
        "snn_graph_cluster",
        lambda: state.snn_graph_cluster.compute(method == "snn_graph", params["snn_graph_cluster"]),
        start_fun,
        finish_fun,
    )

    for name in ("choose_clustering", "marker_detection", "cell_labelling", "custom_selections", "feature_set_enrichment"):
        step = state[name]
        _run_step(state, name, lambda: step.compute(params[name]), start_fun, finish_fun)

    LOGGER.info("Analysis run finished")
    return pending
