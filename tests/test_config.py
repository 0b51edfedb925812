import pytest
from pathlib import Path

from sckana.config import (
    STEP_PARAMETERS,
    PipelineConfig,
    analysis_defaults,
    resolve_analysis_parameters,
)


# -------------------------------------------------------------------------
# Step parameters
# -------------------------------------------------------------------------
def test_defaults_cover_every_step():
    defaults = analysis_defaults()
    assert list(defaults) == list(STEP_PARAMETERS)
    assert len(defaults) == 24
    assert defaults["tsne"] == {"perplexity": 30, "iterations": 500, "animate": False}
    assert defaults["choose_clustering"]["method"] == "snn_graph"
    assert defaults["rna_quality_control"]["mito_prefix"] == "mt-"


def test_resolve_fills_missing_steps_and_keys():
    params = resolve_analysis_parameters({"tsne": {"perplexity": 10}})
    assert params["tsne"]["perplexity"] == 10
    assert params["tsne"]["iterations"] == 500
    assert params["umap"] == analysis_defaults()["umap"]


def test_resolve_rejects_unknown_steps():
    with pytest.raises(ValueError) as err:
        resolve_analysis_parameters({"tnse": {}})
    assert "tnse" in str(err.value)


def test_resolve_rejects_unknown_keys():
    with pytest.raises(ValueError):
        resolve_analysis_parameters({"kmeans_cluster": {"k": 3, "clusters": 4}})


def test_span_must_be_in_unit_interval():
    with pytest.raises(ValueError):
        resolve_analysis_parameters({"feature_selection": {"span": 0}})
    assert resolve_analysis_parameters({"feature_selection": {"span": 1}})["feature_selection"]["span"] == 1


# -------------------------------------------------------------------------
# PipelineConfig
# -------------------------------------------------------------------------
def test_pipeline_requires_a_dataset(tmp_path):
    with pytest.raises(ValueError):
        PipelineConfig(datasets={}, output_dir=tmp_path)


def test_pipeline_output_name_without_slash(tmp_path):
    with pytest.raises(ValueError):
        PipelineConfig(datasets={"A": "a.h5ad"}, output_dir=tmp_path, output_name="a/b")


def test_pipeline_paths(tmp_path):
    cfg = PipelineConfig(datasets={"A": "a.h5ad"}, output_dir=tmp_path, output_name="pbmc")
    assert cfg.datasets["A"] == Path("a.h5ad")
    assert cfg.genewise_dir == tmp_path / "pbmc_genewise"
    assert cfg.write_genewise
