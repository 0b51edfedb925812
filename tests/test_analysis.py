import numpy as np
import pytest

from conftest import make_rna_adt_dataset, make_rna_dataset, small_parameters
from sckana import stats_utils
from sckana.analysis import (
    create_analysis,
    free_analysis,
    retrieve_parameters,
    run_analysis,
)
from sckana.config import STEP_PARAMETERS
from sckana.errors import ClusterError, CombineError, QcError


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def run(state, datasets, params, events=None):
    start = events.append if events is not None else None

    def finish(name, step=None):
        if events is not None:
            events.append((name, step is not None))

    pending = run_analysis(state, datasets, params, start_fun=start, finish_fun=finish)
    for fut in pending.values():
        fut.result()
    return pending


def buffer_counts(state):
    return {
        name: (step.buffers.allocation_count, step.buffers.release_count)
        for name, step in state.items()
    }


@pytest.fixture
def analysed(fake_embeddings):
    state = create_analysis()
    datasets = {"A": make_rna_dataset()}
    run(state, datasets, small_parameters())
    yield state, datasets
    free_analysis(state)


# -------------------------------------------------------------------------
# Full runs
# -------------------------------------------------------------------------
def test_first_run_computes_everything(fake_embeddings):
    state = create_analysis()
    events = []
    run(state, {"A": make_rna_dataset()}, small_parameters(), events)

    started = [e for e in events if isinstance(e, str)]
    assert started == list(STEP_PARAMETERS)

    finished = dict(e for e in events if isinstance(e, tuple))
    assert set(finished) == set(STEP_PARAMETERS)
    for name in ("inputs", "rna_quality_control", "cell_filtering", "rna_pca", "snn_graph_cluster", "marker_detection"):
        assert finished[name], name

    assert state.choose_clustering.num_clusters() >= 2
    assert state.marker_detection.num_groups() == state.choose_clustering.num_clusters()
    assert not state.adt_pca.valid()
    assert state.combine_embeddings.fetch_contributors() == ["RNA"]
    assert state.tsne.fetch_results()["x"].shape == (state.cell_filtering.num_retained(),)
    free_analysis(state)


def test_rerun_with_same_parameters_is_a_no_op(analysed):
    state, datasets = analysed
    counts = buffer_counts(state)
    pcs = state.rna_pca.fetch_pcs_buffer()
    lognorm = state.rna_normalization.fetch_normalized_matrix()
    markers = state.marker_detection.fetch_results()["RNA"]

    events = []
    pending = run(state, datasets, small_parameters(), events)

    for name, step in state.items():
        assert not step.changed, name
    assert all(fut.result() is None for fut in pending.values())
    assert buffer_counts(state) == counts
    assert state.rna_pca.fetch_pcs_buffer() is pcs
    assert state.rna_normalization.fetch_normalized_matrix() is lognorm
    assert state.marker_detection.fetch_results()["RNA"] is markers
    assert all(changed is False for changed in dict(e for e in events if isinstance(e, tuple)).values())


def test_switching_clustering_method(analysed):
    state, datasets = analysed
    snn = state.snn_graph_cluster.fetch_clusters()

    run(state, datasets, small_parameters(choose_clustering={"method": "kmeans"}))
    changed = {name for name, step in state.items() if step.changed}
    # k-means has never run before, so it computes on its first selection
    assert changed == {"kmeans_cluster", "choose_clustering", "marker_detection"}
    assert state.snn_graph_cluster.fetch_clusters() is snn
    kmeans = state.kmeans_cluster.fetch_clusters()
    assert state.choose_clustering.num_clusters() == 3
    assert state.marker_detection.num_groups() == 3

    run(state, datasets, small_parameters())
    changed = {name for name, step in state.items() if step.changed}
    assert changed == {"choose_clustering", "marker_detection"}
    assert state.snn_graph_cluster.fetch_clusters() is snn
    assert state.kmeans_cluster.fetch_clusters() is kmeans
    assert np.array_equal(state.choose_clustering.fetch_clusters(), snn)


def test_parameter_change_only_recomputes_downstream(analysed):
    state, datasets = analysed
    qc = state.rna_quality_control.fetch_metrics()["sums"]

    run(state, datasets, small_parameters(rna_pca={"num_hvgs": 20, "num_pcs": 5}))
    assert not state.rna_quality_control.changed
    assert not state.rna_normalization.changed
    assert not state.feature_selection.changed
    assert state.rna_pca.changed
    assert state.neighbor_index.changed
    assert state.tsne.changed
    assert state.rna_quality_control.fetch_metrics()["sums"] is qc
    assert int(state.rna_pca.fetch_hvgs().sum()) >= 20


def test_errors_are_tagged_with_the_step(analysed):
    state, datasets = analysed
    with pytest.raises(ClusterError) as err:
        run(state, datasets, small_parameters(choose_clustering={"method": "louvain"}))
    assert err.value.kind == "ECluster.UnknownMethod"
    assert err.value.step == "choose_clustering"
    assert err.value.diagnostic()["identifiers"] == {"method": "louvain"}


def test_unknown_step_is_rejected(analysed):
    state, datasets = analysed
    with pytest.raises(ValueError):
        run_analysis(state, datasets, {"pca": {}})


def test_retrieve_parameters(analysed):
    state, _ = analysed
    params = retrieve_parameters(state)
    assert list(params) == list(STEP_PARAMETERS)
    assert params["rna_pca"]["num_pcs"] == 5
    assert params["tsne"]["perplexity"] == 5
    assert params["umap"]["min_dist"] == 0.1


def test_state_lookup(analysed):
    state, _ = analysed
    assert state["umap"] is state.umap
    with pytest.raises(KeyError):
        state["pca"]


# -------------------------------------------------------------------------
# Partial reuse
# -------------------------------------------------------------------------
def test_resolution_change_reuses_snn_graph(analysed):
    state, datasets = analysed
    snn = state.snn_graph_cluster
    neighbors, graph = snn.fetch_neighbors(), snn.fetch_graph()

    run(state, datasets, small_parameters(snn_graph_cluster={"k": 5, "resolution": 1.5}))
    assert snn.changed
    assert snn.fetch_neighbors() is neighbors
    assert snn.fetch_graph() is graph

    run(state, datasets, small_parameters(snn_graph_cluster={"k": 5, "scheme": "jaccard"}))
    assert snn.fetch_neighbors() is neighbors
    assert snn.fetch_graph() is not graph


def test_feature_selection_results(analysed):
    state, _ = analysed
    fsel = state.feature_selection
    residuals = fsel.fetch_results()["residuals"]
    assert residuals.shape == (40,)
    assert np.array_equal(fsel.fetch_sorted_residuals(), np.sort(residuals))
    assert state.inputs.fetch_primary_ids()["RNA"][:2] == ["mt-a", "mt-b"]


# -------------------------------------------------------------------------
# Retrying after a failure
# -------------------------------------------------------------------------
def test_retry_after_failure_recomputes_for_new_inputs(fake_embeddings):
    state = create_analysis()
    run(state, {"A": make_rna_dataset(n_per_group=10)}, small_parameters())
    second = {"B": make_rna_dataset(seed=1)}

    with pytest.raises(QcError) as err:
        run(state, second, small_parameters(rna_quality_control={"filter_strategy": "bogus"}))
    assert err.value.step == "rna_quality_control"
    # the previous results stay readable until the next run
    assert state.rna_quality_control.fetch_keep().shape == (30,)

    run(state, second, small_parameters())
    n = state.cell_filtering.num_retained()
    assert state.inputs.num_cells() == 60
    assert state.rna_quality_control.fetch_metrics()["sums"].shape == (60,)
    assert state.rna_quality_control.fetch_keep().shape == (60,)
    assert state.rna_normalization.fetch_size_factors().shape == (n,)
    assert state.rna_pca.fetch_pcs().shape[0] == n
    assert state.neighbor_index.fetch_index().num_observations() == n
    assert state.choose_clustering.fetch_clusters().shape == (n,)
    assert state.tsne.fetch_results()["x"].shape == (n,)
    free_analysis(state)


def test_failed_step_recomputes_on_identical_retry(analysed):
    state, datasets = analysed
    with pytest.raises(ClusterError):
        run(state, datasets, small_parameters(choose_clustering={"method": "louvain"}))

    events = []
    run(state, datasets, small_parameters(), events)
    finished = dict(e for e in events if isinstance(e, tuple))
    # steps before the failure are untouched; the failed one and later steps run again
    for name in ("rna_pca", "neighbor_index", "snn_graph_cluster"):
        assert not finished[name], name
    for name in ("choose_clustering", "marker_detection", "custom_selections"):
        assert finished[name], name

    events = []
    run(state, datasets, small_parameters(), events)
    assert not any(changed for _, changed in (e for e in events if isinstance(e, tuple)))


# -------------------------------------------------------------------------
# Multiple datasets and modalities
# -------------------------------------------------------------------------
def rna_adt_parameters(**overrides):
    params = small_parameters(
        adt_normalization={"num_pcs": 3, "num_clusters": 3},
        adt_pca={"num_pcs": 3},
        combine_embeddings={"approximate": False},
        batch_correction={"num_neighbors": 5, "approximate": False},
    )
    for step, values in overrides.items():
        params.setdefault(step, {}).update(values)
    return params


@pytest.fixture
def two_datasets():
    return {"A": make_rna_adt_dataset(), "B": make_rna_adt_dataset(seed=1)}


def test_two_datasets_rna_adt_pipeline(fake_embeddings, two_datasets):
    state = create_analysis()
    run(state, two_datasets, rna_adt_parameters())

    assert state.inputs.num_cells() == 120
    assert state.inputs.fetch_block_levels() == ["A", "B"]
    assert state.adt_quality_control.fetch_subset().tolist()[:3] == [1, 1, 0]

    n = state.cell_filtering.num_retained()
    block = state.cell_filtering.fetch_filtered_block()
    assert block.shape == (n,)
    for norm in (state.rna_normalization, state.adt_normalization):
        sf = norm.fetch_size_factors()
        for b in (0, 1):
            assert sf[block == b].mean() == pytest.approx(1.0)

    combined = state.combine_embeddings
    assert combined.fetch_contributors() == ["RNA", "ADT"]
    assert combined.num_dimensions() == state.rna_pca.num_pcs() + state.adt_pca.num_pcs()
    assert combined.fetch_combined().shape == (n, combined.num_dimensions())

    assert state.batch_correction.is_corrected()
    corrected = state.batch_correction.fetch_corrected()
    assert corrected.shape == combined.fetch_combined().shape
    assert not np.allclose(corrected, combined.fetch_combined())

    assert set(state.marker_detection.fetch_results()) == {"RNA", "ADT"}
    assert state.choose_clustering.fetch_clusters().shape == (n,)

    run(state, two_datasets, rna_adt_parameters(batch_correction={"method": "none"}))
    assert state.batch_correction.changed
    assert not state.batch_correction.is_corrected()
    assert np.array_equal(state.batch_correction.fetch_corrected(), combined.fetch_combined())
    free_analysis(state)


def test_combine_weights(fake_embeddings, two_datasets):
    state = create_analysis()
    run(state, two_datasets, rna_adt_parameters(combine_embeddings={"weights": {"RNA": 1, "ADT": 0}}))
    assert state.combine_embeddings.fetch_contributors() == ["RNA"]
    assert state.combine_embeddings.num_dimensions() == state.rna_pca.num_pcs()

    with pytest.raises(CombineError) as err:
        run(state, two_datasets, rna_adt_parameters(combine_embeddings={"weights": {"RNA": 1}}))
    assert err.value.kind == "ECombine.MissingWeight"
    assert err.value.step == "combine_embeddings"
    assert err.value.diagnostic()["identifiers"] == {"modality": "ADT"}

    with pytest.raises(CombineError) as err:
        run(state, two_datasets, rna_adt_parameters(combine_embeddings={"weights": {"RNA": 0, "ADT": 0}}))
    assert err.value.kind == "ECombine.NoPositiveWeight"

    run(state, two_datasets, rna_adt_parameters(combine_embeddings={"weights": {"RNA": 1, "ADT": 2}}))
    assert state.combine_embeddings.fetch_contributors() == ["RNA", "ADT"]
    free_analysis(state)


def test_embeddings_need_the_same_cells():
    with pytest.raises(CombineError) as err:
        stats_utils.scale_by_neighbors([np.zeros((5, 2)), np.zeros((4, 2))])
    assert err.value.kind == "ECombine.ShapeMismatch"
    assert err.value.diagnostic()["identifiers"] == {"position": 1, "expected": 5, "observed": 4}


# -------------------------------------------------------------------------
# Empty analyses
# -------------------------------------------------------------------------
def test_zero_retained_cells_invalidates_downstream(analysed):
    state, datasets = analysed
    run(
        state,
        datasets,
        small_parameters(rna_quality_control={"filter_strategy": "manual", "sum_threshold": 1e9}),
    )
    assert state.cell_filtering.num_retained() == 0

    for name in (
        "rna_normalization",
        "feature_selection",
        "rna_pca",
        "combine_embeddings",
        "batch_correction",
        "neighbor_index",
        "tsne",
        "umap",
        "kmeans_cluster",
        "snn_graph_cluster",
        "choose_clustering",
        "marker_detection",
    ):
        assert not state[name].valid(), name
    assert state.rna_pca.fetch_pcs() is None
    assert state.marker_detection.fetch_results() == {}
    assert state.tsne.fetch_results() is None

    # relaxing the thresholds brings the analysis back
    run(state, datasets, small_parameters())
    assert state.cell_filtering.num_retained() > 0
    assert state.choose_clustering.num_clusters() >= 2
