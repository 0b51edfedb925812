from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pandas as pd

from . import dump_utils
from .dump_utils import FileRecord, local_resource
from .marker_utils import SUMMARIES

LOGGER = logging.getLogger(__name__)

QC_STEPS = {"RNA": "rna_quality_control", "ADT": "adt_quality_control", "CRISPR": "crispr_quality_control"}
NORM_STEPS = {"RNA": "rna_normalization", "ADT": "adt_normalization", "CRISPR": "crispr_normalization"}
PCA_STEPS = {"RNA": "rna_pca", "ADT": "adt_pca", "CRISPR": "crispr_pca"}


def _experiment_metadata(path: str, dimensions) -> Dict[str, Any]:
    return {
        "$schema": "single_cell_experiment/v1.json",
        "path": path,
        "summarized_experiment": {
            "dimensions": [int(d) for d in dimensions],
            "row_data": local_resource(None),
            "column_data": local_resource(None),
            "assays": [],
            "other_data": local_resource(None),
        },
        "single_cell_experiment": {"alternative_experiments": [], "reduced_dimensions": []},
    }


def _ordered_modalities(state) -> List[str]:
    available = set(state.cell_filtering.fetch_filtered_matrix().available())
    modalities = [m for m in state.inputs.fetch_feature_annotations() if m in available]
    if "RNA" in modalities:
        modalities.remove("RNA")
        modalities.insert(0, "RNA")
    return modalities


def _step(state, table: Dict[str, str], modality: str):
    name = table.get(modality)
    return None if name is None else state[name]


# ---------------------------------------------------------------------
# Column data
# ---------------------------------------------------------------------
def _column_data(state, modalities: List[str], main: str, other: Dict[str, Dict[str, Any]]) -> Dict[str, pd.DataFrame]:
    filtering = state.cell_filtering
    retained = filtering.fetch_retained_indices()
    nrows = int(retained.shape[0])

    coldata = {m: pd.DataFrame(index=pd.RangeIndex(nrows)) for m in modalities}
    coldata[main] = state.inputs.fetch_cell_annotations().iloc[retained].reset_index(drop=True)

    for m in modalities:
        qc = _step(state, QC_STEPS, m)
        if qc is not None and qc.valid() and qc.fetch_metrics() is not None:
            for metric, values in qc.fetch_metrics().items():
                coldata[m][f"kana::quality_control::{metric}"] = filtering.apply_filter(values)
            other[m]["kana::quality_control"] = {
                "filters": {k: np.asarray(v) for k, v in (qc.fetch_filters() or {}).items()}
            }

        norm = _step(state, NORM_STEPS, m)
        if norm is not None and norm.valid():
            coldata[m]["kana::size_factors"] = norm.fetch_size_factors().copy()

    if filtering.fetch_keep() is not None:
        coldata[main]["kana::quality_control::retained_indices"] = retained.astype(np.int32)

    clusters = state.choose_clustering.fetch_clusters()
    if clusters is not None:
        # 1-based cluster names
        coldata[main]["kana::clusters"] = clusters.astype(np.int32) + 1

    block = filtering.fetch_filtered_block()
    if block is not None:
        levels = state.inputs.fetch_block_levels()
        coldata[main]["kana::block"] = [levels[b] for b in block]

    for sel, indices in state.custom_selections.fetch_selections(copy=False).items():
        flags = np.zeros(nrows, dtype=bool)
        flags[indices] = True
        coldata[main][f"kana::custom_selections::{sel}"] = flags

    return coldata


# ---------------------------------------------------------------------
# Single-cell experiment
# ---------------------------------------------------------------------
def save_single_cell_experiment(state, name: str, directory, *, report_one_index: bool = False) -> List[FileRecord]:
    """
    Write the analysis results as a SingleCellExperiment bundle under
    ``directory/name`` (previous contents are removed). Alternative
    modalities live in ``altexp-<modality>/``. Returns one record per file.
    """
    directory = Path(directory)
    base = directory / name
    if base.exists():
        shutil.rmtree(base)

    modalities = _ordered_modalities(state)
    if not modalities:
        raise ValueError("no modality has retained cells to save")
    main = modalities[0]
    filtered = state.cell_filtering.fetch_filtered_matrix()

    files: List[FileRecord] = []
    prefixes: Dict[str, str] = {}
    top: Dict[str, Dict[str, Any]] = {}
    other: Dict[str, Dict[str, Any]] = {}
    for m in modalities:
        prefix = name if m == main else f"{name}/altexp-{m}"
        prefixes[m] = prefix
        top[m] = _experiment_metadata(f"{prefix}/experiment.json", filtered.get(m).shape)
        other[m] = {}
        if m == main:
            top[m]["single_cell_experiment"]["main_experiment_name"] = m
        else:
            top[main]["single_cell_experiment"]["alternative_experiments"].append(
                {"name": m, **local_resource(top[m]["path"])}
            )

    for m, df in _column_data(state, modalities, main, other).items():
        rec = dump_utils.write_hdf5_data_frame(df, f"{prefixes[m]}/coldata", directory)
        rec["metadata"]["is_child"] = True
        top[m]["summarized_experiment"]["column_data"]["resource"]["path"] = rec["metadata"]["path"]
        files.append(rec)

    features = state.inputs.fetch_feature_annotations()
    for m in modalities:
        rec = dump_utils.write_hdf5_data_frame(features[m], f"{prefixes[m]}/rowdata", directory)
        rec["metadata"]["is_child"] = True
        top[m]["summarized_experiment"]["row_data"]["resource"]["path"] = rec["metadata"]["path"]
        files.append(rec)

    for m in modalities:
        counts = filtered.get(m)
        rec = dump_utils.write_sparse_matrix(counts, f"{prefixes[m]}/assay-counts", directory)
        rec["metadata"]["is_child"] = True
        count_path = rec["metadata"]["path"]
        top[m]["summarized_experiment"]["assays"].append({"name": "counts", **local_resource(count_path)})
        files.append(rec)

        norm = _step(state, NORM_STEPS, m)
        if norm is not None and norm.valid():
            rec = dump_utils.write_delayed_logcounts(
                norm.fetch_size_factors(), counts.shape, count_path, f"{prefixes[m]}/assay-logcounts", directory
            )
            rec["metadata"]["is_child"] = True
            top[m]["summarized_experiment"]["assays"].append({"name": "logcounts", **local_resource(rec["metadata"]["path"])})
            files.append(rec)

    for m in modalities:
        pca = _step(state, PCA_STEPS, m)
        if pca is None or not pca.valid() or pca.fetch_pcs() is None:
            continue
        pcs = pca.fetch_pcs()
        rec = dump_utils.write_dense_array([pcs[:, j] for j in range(pcs.shape[1])], f"{prefixes[m]}/reddim-pca", directory)
        rec["metadata"]["is_child"] = True
        files.append(rec)
        top[m]["single_cell_experiment"]["reduced_dimensions"].append({"name": "PCA", **local_resource(rec["metadata"]["path"])})
        other[m]["pca"] = {"variance_explained": pca.fetch_variance_explained() / pca.fetch_total_variance()}

    for kind in ("tsne", "umap"):
        res = state[kind].fetch_results()
        if res is None:
            continue
        rec = dump_utils.write_dense_array([res["x"], res["y"]], f"{prefixes[main]}/reddim-{kind}", directory)
        rec["metadata"]["is_child"] = True
        files.append(rec)
        top[main]["single_cell_experiment"]["reduced_dimensions"].append(
            {"name": kind.upper(), **local_resource(rec["metadata"]["path"])}
        )

    inputs_meta: Dict[str, Any] = {"num_samples": state.inputs.num_samples()}
    levels = state.inputs.fetch_block_levels()
    if levels:
        inputs_meta["block_levels"] = list(levels)
    other[main]["kana::inputs"] = inputs_meta

    labels = state.cell_labelling.fetch_results()
    if labels is not None:
        other[main]["cell_labelling"] = {k: v for k, v in labels.items() if v is not None}

    customs = state.custom_selections.fetch_selections(copy=True)
    if report_one_index:
        customs = {k: v + 1 for k, v in customs.items()}
    other[main]["custom_selections"] = customs

    for m in modalities:
        rec = dump_utils.write_simple_list(other[m], f"{prefixes[m]}/other", directory)
        rec["metadata"]["is_child"] = True
        top[m]["summarized_experiment"]["other_data"]["resource"]["path"] = rec["metadata"]["path"]
        files.append(rec)

    for m in modalities:
        if m != main:
            files.append({"metadata": top[m]})
    files.append({"metadata": top[main]})
    files.append(dump_utils.redirection(name, top[main]["path"]))

    dump_utils.attach_md5sums(files)
    dump_utils.write_metadata(files, directory)
    LOGGER.info("Saved SingleCellExperiment '%s' (%d files) under %s", name, len(files), directory)
    return files


# ---------------------------------------------------------------------
# Per-gene tables
# ---------------------------------------------------------------------
def _marker_table(stats: Dict[str, Any], index, summaries=SUMMARIES) -> pd.DataFrame:
    table = {"means": stats["means"], "detected": stats["detected"]}
    for effect in ("lfc", "delta_detected", "auc", "cohen"):
        if effect not in stats:
            continue
        for s in summaries:
            key = effect if len(summaries) == 1 else f"{effect}-{s}"
            table[key] = stats[effect][s]
    return pd.DataFrame(table, index=index)


def _write_csv(df: pd.DataFrame, out_path: Path) -> Path:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=True)
    return out_path


def save_genewise_results(state, path: str, directory) -> List[Path]:
    """
    CSV tables of per-gene results under ``directory/path``: markers per
    cluster (named from 1), markers per custom selection and the feature
    selection statistics. Rows follow the saved row data.
    """
    base = Path(directory) / (path or "")
    features = state.inputs.fetch_feature_annotations()
    written: List[Path] = []

    for m, res in state.marker_detection.fetch_results().items():
        for g in range(res.num_groups()):
            df = _marker_table(res.group(g), features[m].index)
            written.append(_write_csv(df, base / "marker_detection" / m / f"{g + 1}.csv"))

    customs = state.custom_selections
    for sel in customs.selection_ids():
        for m, res in customs.fetch_results(sel).items():
            df = _marker_table(res.group(1), features[m].index, summaries=("mean",))
            written.append(_write_csv(df, base / "custom_selections" / m / f"{sel}.csv"))

    fsel = state.feature_selection
    if fsel.valid() and fsel.fetch_results() is not None:
        df = pd.DataFrame(fsel.fetch_results(), index=features["RNA"].index)
        written.append(_write_csv(df, base / "feature_selection" / "RNA.csv"))

    LOGGER.info("Wrote %d genewise table(s) under %s", len(written), base)
    return written
