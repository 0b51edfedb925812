import json
from unittest.mock import patch

import anndata as ad
import pytest
from typer.testing import CliRunner

from conftest import make_clustered_counts, gene_table, small_parameters
from sckana.cli import _parse_datasets, app
from sckana.config import PipelineConfig
from sckana.pipeline import run_pipeline

runner = CliRunner()


# ---------------------------------------------------------
# Top-level CLI
# ---------------------------------------------------------
def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "sckana CLI" in result.output


# ---------------------------------------------------------
# defaults
# ---------------------------------------------------------
def test_defaults_prints_every_step():
    result = runner.invoke(app, ["defaults"])
    assert result.exit_code == 0
    params = json.loads(result.output)
    assert len(params) == 24
    assert params["kmeans_cluster"] == {"k": 10}


def test_defaults_for_selected_steps(tmp_path):
    out = tmp_path / "params" / "tsne.json"
    result = runner.invoke(app, ["defaults", "-s", "tsne", "-s", "umap", "-o", str(out)])
    assert result.exit_code == 0
    assert list(json.loads(out.read_text())) == ["tsne", "umap"]


def test_defaults_unknown_step():
    result = runner.invoke(app, ["defaults", "--step", "pca"])
    assert result.exit_code != 0
    assert "Unknown step" in result.output


# ---------------------------------------------------------
# run
# ---------------------------------------------------------
def test_run_help():
    result = runner.invoke(app, ["run", "--help"])
    assert result.exit_code == 0
    assert "--dataset" in result.output


@patch("sckana.cli.init_logging")
@patch("sckana.cli.run_pipeline")
def test_run_dispatch(mock_run, mock_logging, tmp_path):
    result = runner.invoke(
        app,
        [
            "run",
            "-d", "A=a.h5ad",
            "-d", "b.h5",
            "--out", str(tmp_path),
            "--name", "pbmc",
            "--one-index",
        ],
    )
    assert result.exit_code == 0
    mock_run.assert_called_once()
    cfg = mock_run.call_args[0][0]
    assert set(cfg.datasets) == {"A", "b"}
    assert cfg.output_name == "pbmc"
    assert cfg.report_one_index
    assert cfg.logfile == tmp_path / "pbmc.log"
    mock_logging.assert_called_once()


@patch("sckana.cli.init_logging")
@patch("sckana.cli.run_pipeline")
def test_run_rejects_bad_log_level(mock_run, mock_logging, tmp_path):
    result = runner.invoke(app, ["run", "-d", "a.h5ad", "--out", str(tmp_path), "--log-level", "LOUD"])
    assert result.exit_code != 0
    mock_run.assert_not_called()


def test_parse_datasets():
    assert _parse_datasets(["x=data/one.h5ad", "data/two.h5"])["two"].name == "two.h5"
    with pytest.raises(Exception):
        _parse_datasets(["=one.h5ad"])
    with pytest.raises(Exception):
        _parse_datasets(["a=one.h5ad", "a=two.h5ad"])


# ---------------------------------------------------------
# Pipeline
# ---------------------------------------------------------
def test_run_pipeline_writes_bundle(tmp_path, fake_embeddings):
    counts = make_clustered_counts()
    adata = ad.AnnData(X=counts.T.tocsr().astype("float32"), var=gene_table(counts.shape[0]))
    adata.write_h5ad(tmp_path / "pbmc.h5ad")
    params = tmp_path / "params.json"
    params.write_text(json.dumps(small_parameters()))

    cfg = PipelineConfig(
        datasets={"pbmc": tmp_path / "pbmc.h5ad"},
        parameters_json=params,
        output_dir=tmp_path / "out",
    )
    out = run_pipeline(cfg)

    assert (tmp_path / "out" / "analysis.json").exists()
    assert (tmp_path / "out" / "analysis" / "experiment.json").exists()
    assert (tmp_path / "out" / "analysis_genewise" / "marker_detection" / "RNA" / "1.csv").exists()
    used = json.loads((tmp_path / "out" / "analysis_parameters.json").read_text())
    assert used["rna_pca"]["num_pcs"] == 5
    assert out["genewise"]
    assert len(fake_embeddings) == 2


def test_run_pipeline_rejects_non_object_parameters(tmp_path):
    params = tmp_path / "params.json"
    params.write_text("[1, 2]")
    cfg = PipelineConfig(datasets={"a": tmp_path / "a.h5ad"}, parameters_json=params, output_dir=tmp_path)
    with pytest.raises(ValueError):
        run_pipeline(cfg)
