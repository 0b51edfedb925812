import numpy as np
import pytest

from conftest import make_rna_dataset, small_parameters
from sckana.analysis import create_analysis, free_analysis, run_analysis
from sckana.errors import MarkerError, SubsetError
from sckana.marker_utils import locate_versus, score_markers, versus_groups


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def toy_matrix():
    # gene 0 is up in group 0, gene 1 is flat
    return np.array([[5.0, 4.0, 0.0, 1.0], [1.0, 1.0, 1.0, 1.0]])


def run(state, datasets, params):
    for fut in run_analysis(state, datasets, params).values():
        fut.result()


@pytest.fixture
def analysed(fake_embeddings):
    state = create_analysis()
    datasets = {"A": make_rna_dataset()}
    run(state, datasets, small_parameters())
    yield state, datasets
    free_analysis(state)


# -------------------------------------------------------------------------
# score_markers
# -------------------------------------------------------------------------
def test_score_markers_two_groups():
    res = score_markers(toy_matrix(), [0, 0, 1, 1])
    assert res.num_groups() == 2
    assert res.num_features() == 2
    assert res.means[0].tolist() == [4.5, 1.0]
    assert res.detected[1].tolist() == [0.5, 1.0]

    lfc = res.effects["lfc"]
    assert lfc["mean"][0].tolist() == pytest.approx([4.0, 0.0])
    assert lfc["min"][1].tolist() == pytest.approx([-4.0, 0.0])
    assert lfc["min_rank"][0][0] == 1

    assert res.effects["auc"]["mean"][0].tolist() == pytest.approx([1.0, 0.5])
    assert res.effects["delta_detected"]["mean"][0][0] == pytest.approx(0.5)
    assert res.effects["cohen"]["mean"][0][0] == pytest.approx(4 / np.sqrt(0.5))
    assert res.effects["cohen"]["mean"][0][1] == 0


def test_score_markers_without_auc():
    res = score_markers(toy_matrix(), [0, 0, 1, 1], compute_auc=False)
    assert not res.has_auc()
    assert set(res.group(0)) == {"means", "detected", "lfc", "delta_detected", "cohen"}


def test_blocks_are_compared_within_themselves():
    # the block effect (+10 in block 1) would dominate a pooled comparison
    mat = np.array([[2.0, 0.0, 12.0, 10.0, 2.0, 12.0]])
    res = score_markers(mat, [0, 1, 0, 1, 0, 1], block=[0, 0, 1, 1, 0, 1])
    # block 0: group 0 {2, 2} vs group 1 {0}; block 1: {12} vs {10, 12}
    expected = (2 * 1 * 2.0 + 1 * 2 * 1.0) / (2 + 2)
    assert res.effects["lfc"]["mean"][0][0] == pytest.approx(expected)


def test_score_markers_errors():
    with pytest.raises(MarkerError) as err:
        score_markers(toy_matrix(), [0, 0, 1])
    assert err.value.kind == "EMarkers.LengthMismatch"

    with pytest.raises(MarkerError) as err:
        score_markers(toy_matrix(), [0, 0, 2, 2])
    assert err.value.kind == "EMarkers.EmptyGroup"

    res = score_markers(toy_matrix(), [0, 0, 1, 1])
    with pytest.raises(MarkerError) as err:
        res.group(5)
    assert err.value.kind == "EMarkers.UnknownGroup"


def test_group_returns_copies():
    res = score_markers(toy_matrix(), [0, 0, 1, 1])
    stats = res.group(0)
    stats["means"][0] = -1
    assert res.means[0][0] == 4.5


def test_versus_cache_is_unordered():
    cache = {}
    entry, needs_run, left_small = locate_versus(cache, 3, 1)
    assert needs_run and not left_small
    again, needs_run, left_small = locate_versus(cache, 1, 3)
    assert again is entry
    assert not needs_run and left_small

    idx, codes = versus_groups([4, 0], [2], left_small=False)
    assert idx.tolist() == [0, 2, 4]
    assert codes.tolist() == [1, 0, 1]


# -------------------------------------------------------------------------
# Marker detection step
# -------------------------------------------------------------------------
def test_cluster_markers_pick_up_marker_genes(analysed):
    state, _ = analysed
    res = state.marker_detection.fetch_results()["RNA"]
    assert res.num_groups() == state.choose_clustering.num_clusters()
    for g in range(res.num_groups()):
        best = int(np.argmax(res.effects["lfc"]["mean"][g]))
        # marker genes occupy rows 2-16
        assert 2 <= best < 17


def test_versus_results_are_cached(analysed):
    state, _ = analysed
    first = state.marker_detection.compute_versus(0, 1)
    assert (first["left"], first["right"]) == (0, 1)
    assert first["results"]["RNA"].num_groups() == 2

    second = state.marker_detection.compute_versus(1, 0)
    assert second["results"] is first["results"]
    assert (second["left"], second["right"]) == (1, 0)


def test_versus_cache_cleared_on_recompute(analysed):
    state, datasets = analysed
    first = state.marker_detection.compute_versus(0, 1)
    run(state, datasets, small_parameters(marker_detection={"compute_auc": False}))
    assert state.marker_detection.changed
    again = state.marker_detection.compute_versus(0, 1)
    assert again["results"] is not first["results"]
    assert not again["results"]["RNA"].has_auc()


# -------------------------------------------------------------------------
# Custom selections
# -------------------------------------------------------------------------
def test_add_and_fetch_selection(analysed):
    state, _ = analysed
    custom = state.custom_selections
    custom.add_selection("first", list(range(10)))

    assert custom.selection_ids() == ["first"]
    assert custom.fetch_selection_indices("first").tolist() == list(range(10))
    res = custom.fetch_results("first")["RNA"]
    assert res.num_groups() == 2
    # the first ten cells carry the group-0 markers
    assert int(np.argmax(res.effects["lfc"]["mean"][1])) in range(2, 7)

    custom.remove_selection("first")
    with pytest.raises(MarkerError) as err:
        custom.fetch_results("first")
    assert err.value.kind == "EMarkers.UnknownSelection"


def test_selection_validation(analysed):
    state, _ = analysed
    custom = state.custom_selections
    n = state.cell_filtering.num_retained()

    with pytest.raises(SubsetError) as err:
        custom.add_selection("bad", [3, 1])
    assert err.value.kind == "ESubset.Unsorted"

    with pytest.raises(SubsetError) as err:
        custom.add_selection("bad", [n])
    assert err.value.kind == "ESubset.OutOfRange"

    with pytest.raises(MarkerError) as err:
        custom.add_selection("all", list(range(n)))
    assert err.value.kind == "EMarkers.EmptyGroup"
    assert custom.selection_ids() == []


def test_selections_rescored_on_parameter_change(analysed):
    state, datasets = analysed
    custom = state.custom_selections
    custom.add_selection("first", list(range(10)))
    before = custom.fetch_results("first")["RNA"]

    run(state, datasets, small_parameters(custom_selections={"lfc_threshold": 1}))
    assert custom.changed
    assert custom.fetch_results("first")["RNA"] is not before


def test_selections_dropped_when_filtering_changes(analysed):
    state, datasets = analysed
    state.custom_selections.add_selection("first", [0, 1, 2])

    run(state, datasets, small_parameters(cell_filtering={"use_rna": False}))
    assert state.cell_filtering.changed
    assert state.custom_selections.selection_ids() == []


def test_selection_versus(analysed):
    state, _ = analysed
    custom = state.custom_selections
    custom.add_selection("a", list(range(0, 10)))
    custom.add_selection("b", list(range(5, 30)))

    out = custom.compute_versus("b", "a")
    assert (out["left"], out["right"]) == (1, 0)
    assert out["results"]["RNA"].num_groups() == 2
    assert custom.compute_versus("a", "b")["results"] is out["results"]

    with pytest.raises(MarkerError):
        custom.compute_versus("a", "missing")
