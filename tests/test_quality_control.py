import gzip

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from sckana import qc_utils
from sckana.cell_filtering import CellFilteringStep
from sckana.context import EngineContext
from sckana.errors import FilterError, QcError
from sckana.inputs import InputsStep
from sckana.io_utils import InMemoryDataset, flush_mito_lists
from sckana.quality_control import (
    AdtQualityControlStep,
    CrisprQualityControlStep,
    RnaQualityControlStep,
)


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def four_cell_counts():
    """6 genes x 4 cells with sums [100, 120, 130, 5] and detected [4, 5, 6, 2]."""
    counts = np.zeros((6, 4))
    counts[0:4, 0] = 25
    counts[0:5, 1] = 24
    counts[0:4, 2] = 20
    counts[4:6, 2] = 25
    counts[0, 3] = 2
    counts[1, 3] = 3
    return sp.csc_matrix(counts)


def four_cell_inputs(extra=None):
    ids = [f"g{i}" for i in range(6)]
    matrices = {"RNA": four_cell_counts()}
    features = {"RNA": pd.DataFrame(index=ids)}
    for modality, (mat, table) in (extra or {}).items():
        matrices[modality] = mat
        features[modality] = table
    step = InputsStep()
    step.compute({"A": InMemoryDataset(matrices, features=features)})
    return step


# -------------------------------------------------------------------------
# RNA QC and filtering
# -------------------------------------------------------------------------
def test_automatic_filter_drops_low_sum_cell():
    inputs = four_cell_inputs()
    qc = RnaQualityControlStep(inputs)
    qc.compute({"use_reference_mito": False, "nmads": 3})

    metrics = qc.fetch_metrics()
    assert metrics["sums"].tolist() == [100, 120, 130, 5]
    assert metrics["detected"].tolist() == [4, 5, 6, 2]
    assert 5 < qc.fetch_filters()["sums"][0] < 100
    assert qc.fetch_keep().tolist() == [1, 1, 1, 0]

    filtering = CellFilteringStep(inputs, {"RNA": qc})
    filtering.compute()
    assert filtering.fetch_keep().tolist() == [1, 1, 1, 0]
    assert filtering.apply_filter(["w", "x", "y", "z"]) == ["w", "x", "y"]
    assert filtering.undo_filter([0, 2]) == [0, 2]
    assert filtering.num_retained() == 3


def test_filter_operator_errors():
    inputs = four_cell_inputs()
    qc = RnaQualityControlStep(inputs)
    qc.compute({"use_reference_mito": False})
    filtering = CellFilteringStep(inputs, {"RNA": qc})
    filtering.compute()

    with pytest.raises(FilterError) as err:
        filtering.apply_filter([1, 2, 3])
    assert err.value.kind == "EFilter.LengthMismatch"

    with pytest.raises(FilterError) as err:
        filtering.undo_filter([3])
    assert err.value.kind == "EFilter.OutOfRange"


def test_threshold_change_keeps_metrics():
    inputs = four_cell_inputs()
    qc = RnaQualityControlStep(inputs)
    qc.compute({"use_reference_mito": False})
    sums = qc.buffers["metric::sums"]

    inputs.compute(inputs.fetch_datasets())
    qc.compute({"use_reference_mito": False, "filter_strategy": "manual", "sum_threshold": 110, "detected_threshold": 1})
    assert qc.changed
    assert qc.buffers["metric::sums"] is sums
    assert qc.fetch_keep().tolist() == [0, 1, 1, 0]

    inputs.compute(inputs.fetch_datasets())
    qc.compute({"use_reference_mito": False, "filter_strategy": "manual", "sum_threshold": 110, "detected_threshold": 1})
    assert not qc.changed


def test_unknown_strategy():
    qc = RnaQualityControlStep(four_cell_inputs())
    with pytest.raises(QcError) as err:
        qc.compute({"use_reference_mito": False, "filter_strategy": "strict"})
    assert err.value.kind == "EQc.UnknownStrategy"
    assert qc.fetch_keep() is None


def test_reference_mito_list_is_downloaded_once():
    flush_mito_lists()
    payload = gzip.compress(b"g0\ng1\n")
    urls = []

    def download(url):
        urls.append(url)
        return payload

    context = EngineContext(download=download)
    inputs = four_cell_inputs()
    params = {"guess_ids": False, "species": ["9606"], "gene_id_type": "SYMBOL"}

    qc = RnaQualityControlStep(inputs, context)
    qc.compute(params)
    assert qc.fetch_subset().tolist() == [1, 1, 0, 0, 0, 0]
    # cell 0: 50 of 100 counts in g0/g1
    assert qc.fetch_metrics()["proportions"][0] == pytest.approx(0.5)

    RnaQualityControlStep(inputs, context).compute(params)
    assert len(urls) == 1
    assert urls[0].endswith("9606-mito-symbol.txt.gz")
    flush_mito_lists()


def test_mito_lists_beyond_human_and_mouse(caplog):
    flush_mito_lists()
    urls = []

    def download(url):
        urls.append(url)
        return gzip.compress(b"g5\n")

    qc = RnaQualityControlStep(four_cell_inputs(), EngineContext(download=download))
    with caplog.at_level("WARNING", logger="sckana.quality_control"):
        qc.compute({"guess_ids": False, "species": ["6239", "12345"], "gene_id_type": "SYMBOL"})

    assert [u.rsplit("/", 1)[1] for u in urls] == ["6239-mito-symbol.txt.gz"]
    assert qc.fetch_subset().tolist() == [0, 0, 0, 0, 0, 1]
    assert "No reference mitochondrial list for species 12345" in caplog.text
    flush_mito_lists()


# -------------------------------------------------------------------------
# ADT / CRISPR
# -------------------------------------------------------------------------
def test_adt_igg_column_is_found_automatically():
    adt = sp.csc_matrix(np.array([[10, 12, 9, 11], [1, 0, 2, 50], [30, 28, 35, 31]]))
    table = pd.DataFrame({"target": ["CD3", "IgG1", "CD4"]}, index=["t1", "t2", "t3"])
    inputs = four_cell_inputs({"ADT": (adt, table)})

    qc = AdtQualityControlStep(inputs)
    qc.compute({"filter_strategy": "manual", "igg_threshold": 10, "detected_threshold": 2})
    assert qc.fetch_feature_configuration() == {"tag_id_column": "target"}
    assert qc.fetch_subset().tolist() == [0, 1, 0]
    assert qc.fetch_metrics()["igg_totals"].tolist() == [1, 0, 2, 50]
    assert qc.fetch_keep().tolist() == [1, 1, 1, 0]


def test_crispr_metrics():
    guides = sp.csc_matrix(np.array([[10, 0, 3, 0], [2, 8, 3, 0]]))
    table = pd.DataFrame(index=["guide1", "guide2"])
    inputs = four_cell_inputs({"CRISPR": (guides, table)})

    qc = CrisprQualityControlStep(inputs)
    qc.compute({"filter_strategy": "manual", "max_threshold": 5})
    metrics = qc.fetch_metrics()
    assert metrics["max_index"].tolist() == [0, 1, 0, 0]
    assert metrics["max_proportion"][0] == pytest.approx(10 / 12)
    assert qc.fetch_keep().tolist() == [1, 1, 0, 0]


def test_missing_modality_is_invalid():
    inputs = four_cell_inputs()
    qc = AdtQualityControlStep(inputs)
    qc.compute()
    assert not qc.valid()
    assert qc.fetch_metrics() is None


def test_filtering_combines_modalities():
    adt = sp.csc_matrix(np.array([[10, 12, 9, 11], [1, 0, 2, 50]]))
    table = pd.DataFrame(index=["CD3", "IgG1"])
    inputs = four_cell_inputs({"ADT": (adt, table)})

    rna = RnaQualityControlStep(inputs)
    rna.compute({"use_reference_mito": False})
    adt_qc = AdtQualityControlStep(inputs)
    adt_qc.compute({"filter_strategy": "manual", "igg_threshold": 1.5, "detected_threshold": 1})
    assert adt_qc.fetch_keep().tolist() == [1, 1, 0, 0]

    filtering = CellFilteringStep(inputs, {"RNA": rna, "ADT": adt_qc})
    filtering.compute()
    assert filtering.fetch_keep().tolist() == [1, 1, 0, 0]

    filtering.compute({"use_adt": False})
    assert filtering.changed
    assert filtering.fetch_keep().tolist() == [1, 1, 1, 0]


# -------------------------------------------------------------------------
# qc_utils
# -------------------------------------------------------------------------
def test_mad_bounds_per_block():
    metrics = {
        "sums": np.array([100.0, 120, 130, 5, 1000, 1100, 1200, 1300]),
        "detected": np.array([10, 12, 14, 3, 50, 55, 60, 65]),
        "proportions": np.zeros(8),
    }
    block = np.array([0, 0, 0, 0, 1, 1, 1, 1])
    filters = qc_utils.suggest_rna_qc_filters(metrics, 3, block)
    assert filters["sums"].shape == (2,)
    assert filters["sums"][1] > filters["sums"][0]

    keep = qc_utils.filter_cells(metrics, filters, block)
    assert keep.tolist() == [1, 1, 1, 0, 1, 1, 1, 1]


def test_guess_features():
    guess = qc_utils.guess_features(["ENSG00000000003", "ENSG00000000005", "Cd4"])
    assert guess["type"] == "ensembl"
    assert guess["species"] == "9606"
    assert guess["confidence"] == pytest.approx(2 / 3)

    assert qc_utils.guess_features(["Cd4", "Actb", "Gapdh"])["species"] == "10090"


def test_prefix_mask_is_case_insensitive():
    assert qc_utils.prefix_mask(["MT-CO1", "mt-Nd1", "ACTB"], "mt-").tolist() == [1, 1, 0]
    assert qc_utils.prefix_mask(["MT-CO1"], None).tolist() == [0]
