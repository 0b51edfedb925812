from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StepParameters(BaseModel):
    """Common base: unknown keys are rejected, values stay plain data."""

    model_config = ConfigDict(extra="forbid")


# ---- Inputs ----
class InputsParameters(StepParameters):
    sample_factor: Optional[str] = Field(
        None,
        description="Cell annotation column used as the blocking factor when a single dataset is supplied.",
    )
    subset: Optional[Dict[str, Any]] = Field(
        None,
        description="Either {'field', 'values'}, {'field', 'ranges'} or {'indices'}.",
    )


# ---- Quality control ----
class RnaQualityControlParameters(StepParameters):
    use_reference_mito: bool = True
    species: List[str] = Field(default_factory=list)
    gene_id_column: Optional[Any] = None
    gene_id_type: str = "ENSEMBL"
    guess_ids: bool = True
    mito_prefix: str = "mt-"
    filter_strategy: str = "automatic"
    nmads: float = 3
    sum_threshold: float = 100
    detected_threshold: float = 100
    mito_threshold: float = 0.2


class AdtQualityControlParameters(StepParameters):
    automatic: bool = True
    tag_id_column: Optional[Any] = None
    igg_prefix: str = "IgG"
    filter_strategy: str = "automatic"
    nmads: float = 3
    min_detected_drop: float = 0.1
    detected_threshold: float = 10
    igg_threshold: float = 1.0


class CrisprQualityControlParameters(StepParameters):
    filter_strategy: str = "automatic"
    nmads: float = 3
    max_threshold: float = 200


# ---- Filtering ----
class CellFilteringParameters(StepParameters):
    use_rna: bool = True
    use_adt: bool = True
    use_crispr: bool = True


# ---- Normalization ----
class RnaNormalizationParameters(StepParameters):
    pass


class AdtNormalizationParameters(StepParameters):
    remove_bias: bool = True
    num_pcs: int = 25
    num_clusters: int = 20


class CrisprNormalizationParameters(StepParameters):
    pass


# ---- Dimensionality reduction ----
class FeatureSelectionParameters(StepParameters):
    span: float = 0.3

    @field_validator("span")
    @classmethod
    def check_span(cls, v):
        if not (0 < v <= 1):
            raise ValueError("span must be in (0, 1]")
        return v


class RnaPcaParameters(StepParameters):
    num_hvgs: int = 2000
    num_pcs: int = 20
    block_method: str = "none"


class AdtPcaParameters(StepParameters):
    num_pcs: int = 20
    block_method: str = "none"


class CrisprPcaParameters(StepParameters):
    num_pcs: int = 20
    block_method: str = "none"


class CombineEmbeddingsParameters(StepParameters):
    weights: Optional[Dict[str, float]] = None
    approximate: bool = True


class BatchCorrectionParameters(StepParameters):
    method: str = "mnn"
    num_neighbors: int = 15
    approximate: bool = True


class NeighborIndexParameters(StepParameters):
    approximate: bool = True


# ---- Visualisation ----
class TsneParameters(StepParameters):
    perplexity: float = 30
    iterations: int = 500
    animate: bool = False


class UmapParameters(StepParameters):
    num_neighbors: int = 15
    num_epochs: int = 500
    min_dist: float = 0.1
    animate: bool = False


# ---- Clustering ----
class KmeansClusterParameters(StepParameters):
    k: int = 10


class SnnGraphClusterParameters(StepParameters):
    k: int = 10
    scheme: str = "rank"
    resolution: float = 0.5


class ChooseClusteringParameters(StepParameters):
    method: str = "snn_graph"


# ---- Markers ----
class MarkerDetectionParameters(StepParameters):
    lfc_threshold: float = 0
    compute_auc: bool = True


class CustomSelectionsParameters(StepParameters):
    lfc_threshold: float = 0
    compute_auc: bool = True


# ---- Annotation ----
class CellLabellingParameters(StepParameters):
    references: Optional[List[str]] = Field(
        default_factory=list,
        description="Reference names to label clusters with; None uses every reference of the chosen species.",
    )
    guess_ids: bool = True
    species: List[str] = Field(default_factory=list)
    gene_id_column: Optional[Any] = None
    gene_id_type: str = "ENSEMBL"


class FeatureSetEnrichmentParameters(StepParameters):
    feature_sets: List[str] = Field(default_factory=list)
    dataset_id_column: Optional[Any] = None
    reference_id_column: str = "ENSEMBL"
    minimum_set_size: int = 5
    maximum_set_size: int = 1000
    top_markers: int = 100

    @model_validator(mode="after")
    def check_sizes(self):
        if self.minimum_set_size > self.maximum_set_size:
            raise ValueError("minimum_set_size should not exceed maximum_set_size")
        return self


STEP_PARAMETERS = {
    "inputs": InputsParameters,
    "rna_quality_control": RnaQualityControlParameters,
    "adt_quality_control": AdtQualityControlParameters,
    "crispr_quality_control": CrisprQualityControlParameters,
    "cell_filtering": CellFilteringParameters,
    "rna_normalization": RnaNormalizationParameters,
    "adt_normalization": AdtNormalizationParameters,
    "crispr_normalization": CrisprNormalizationParameters,
    "feature_selection": FeatureSelectionParameters,
    "rna_pca": RnaPcaParameters,
    "adt_pca": AdtPcaParameters,
    "crispr_pca": CrisprPcaParameters,
    "combine_embeddings": CombineEmbeddingsParameters,
    "batch_correction": BatchCorrectionParameters,
    "neighbor_index": NeighborIndexParameters,
    "tsne": TsneParameters,
    "umap": UmapParameters,
    "kmeans_cluster": KmeansClusterParameters,
    "snn_graph_cluster": SnnGraphClusterParameters,
    "choose_clustering": ChooseClusteringParameters,
    "marker_detection": MarkerDetectionParameters,
    "cell_labelling": CellLabellingParameters,
    "custom_selections": CustomSelectionsParameters,
    "feature_set_enrichment": FeatureSetEnrichmentParameters,
}


def analysis_defaults() -> Dict[str, Dict[str, Any]]:
    """Default parameters for every step, keyed by step name."""
    return {name: model().model_dump() for name, model in STEP_PARAMETERS.items()}


def resolve_analysis_parameters(parameters: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Fill in defaults for missing steps/keys and validate every record."""
    parameters = parameters or {}
    unknown = sorted(set(parameters) - set(STEP_PARAMETERS))
    if unknown:
        raise ValueError(
            f"Unknown step(s) in parameters: {', '.join(unknown)}. "
            f"Available: {', '.join(STEP_PARAMETERS)}"
        )
    return {
        name: model.model_validate(parameters.get(name) or {}).model_dump()
        for name, model in STEP_PARAMETERS.items()
    }


# ---------------------------------------------------------------------
# Command line configuration
# ---------------------------------------------------------------------
class PipelineConfig(BaseModel):

    # ---- Input ----
    datasets: Dict[str, Path]
    parameters_json: Optional[Path] = None

    # ---- Output ----
    output_dir: Path
    output_name: str = "analysis"
    report_one_index: bool = False
    write_genewise: bool = True

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def genewise_dir(self) -> Path:
        return self.output_dir / f"{self.output_name}_genewise"

    @model_validator(mode="after")
    def check_inputs(self):
        if not self.datasets:
            raise ValueError("At least one dataset is required (use --dataset NAME=PATH)")
        if "/" in self.output_name:
            raise ValueError("output_name must not contain '/'")
        return self
