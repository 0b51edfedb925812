import numpy as np
import pytest

from sckana import viz_utils
from sckana.context import EngineContext
from sckana.neighbor_utils import build_neighbor_index
from sckana.visualization import TsneStep, UmapStep


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
class FakeIndexStep:
    """Stands in for the neighbour index step."""

    def __init__(self, ncells=40, seed=0):
        self.changed = True
        self.rebuild(ncells, seed)

    def rebuild(self, ncells=40, seed=0):
        rng = np.random.default_rng(seed)
        x = np.vstack([rng.normal(loc=c * 6.0, size=(ncells // 2, 4)) for c in range(2)])
        self.index = build_neighbor_index(x, approximate=False)
        self.changed = True

    def valid(self):
        return True

    def fetch_index(self):
        return self.index


def recording_context():
    frames = []

    def animate(kind, x, y, iteration):
        frames.append((kind, len(x), iteration))

    return EngineContext(animate=animate), frames


@pytest.fixture
def tsne_step(fake_embeddings):
    index = FakeIndexStep()
    context, frames = recording_context()
    step = TsneStep(index, context)
    step.ready.result()
    yield step, index, fake_embeddings, frames
    step.free()


# -------------------------------------------------------------------------
# Worker protocol
# -------------------------------------------------------------------------
def test_first_compute_runs(tsne_step):
    step, index, calls, _ = tsne_step
    fut = step.compute({"perplexity": 5, "iterations": 300})
    assert fut.result() == {"status": "SUCCESS"}
    assert step.changed

    res = step.fetch_results()
    assert res["x"].shape == (40,)
    assert res["iterations"] == 300
    assert len(calls) == 1
    assert calls[0]["args"] == (5, 300)
    assert calls[0]["neighbors"]["indices"].shape == (40, viz_utils.perplexity_to_neighbors(5, 40))


def test_unchanged_compute_resolves_to_none(tsne_step):
    step, index, calls, _ = tsne_step
    step.compute({"perplexity": 5, "iterations": 300}).result()

    index.changed = False
    fut = step.compute({"perplexity": 5, "iterations": 300})
    assert fut.done()
    assert fut.result() is None
    assert not step.changed
    assert len(calls) == 1


def test_run_parameter_change_reuses_neighbors(tsne_step):
    step, index, calls, _ = tsne_step
    step.compute({"perplexity": 5, "iterations": 300}).result()

    index.changed = False
    step.compute({"perplexity": 5, "iterations": 400}).result()
    assert step.changed
    assert len(calls) == 2
    assert calls[1]["neighbors"] is calls[0]["neighbors"]

    step.compute({"perplexity": 8, "iterations": 400}).result()
    assert calls[2]["neighbors"] is not calls[1]["neighbors"]


def test_new_index_resends_neighbors(tsne_step):
    step, index, calls, _ = tsne_step
    step.compute({"perplexity": 5, "iterations": 300}).result()

    index.rebuild(seed=1)
    step.compute({"perplexity": 5, "iterations": 300}).result()
    assert step.changed
    assert calls[1]["neighbors"] is not calls[0]["neighbors"]


def test_animation_streams_frames(tsne_step):
    step, index, calls, frames = tsne_step
    step.compute({"perplexity": 5, "iterations": 300}).result()
    assert frames == []

    step.animate().result()
    assert calls[-1]["animate"]
    assert frames == [("tsne", 40, 100)]


def test_killed_worker_rejects_messages(tsne_step):
    step, *_ = tsne_step
    step.free()
    with pytest.raises(RuntimeError):
        step.animate()
    # freeing twice is harmless
    step.free()


# -------------------------------------------------------------------------
# Reloaded coordinates
# -------------------------------------------------------------------------
def test_reloaded_coordinates_are_served(fake_embeddings):
    index = FakeIndexStep()
    index.changed = False
    step = UmapStep(index, reloaded={"x": [1.0, 2.0], "y": [3.0, 4.0]})
    step.ready.result()

    res = step.fetch_results()
    assert res["x"].tolist() == [1.0, 2.0]
    assert res["y"].tolist() == [3.0, 4.0]
    assert fake_embeddings == []

    # animating a reloaded embedding recomputes it from the index
    step.animate().result()
    assert fake_embeddings[0]["kind"] == "umap"
    assert fake_embeddings[0]["animate"]
    assert step.fetch_results()["x"].shape == (40,)
    step.free()


# -------------------------------------------------------------------------
# Real embeddings
# -------------------------------------------------------------------------
def test_real_tsne_separates_two_groups():
    index = FakeIndexStep(ncells=40)
    step = TsneStep(index)
    step.compute({"perplexity": 5, "iterations": 250}).result()
    res = step.fetch_results()
    step.free()

    x = res["x"]
    assert np.isfinite(x).all()
    assert x.shape == (40,)
    coords = np.column_stack([res["x"], res["y"]])
    gap = np.linalg.norm(coords[:20].mean(axis=0) - coords[20:].mean(axis=0))
    assert gap > 0


def test_real_umap_runs():
    index = FakeIndexStep(ncells=80)
    step = UmapStep(index)
    step.compute({"num_neighbors": 10, "num_epochs": 50}).result()
    res = step.fetch_results()
    step.free()
    assert res["x"].shape == (80,)
    assert np.isfinite(res["y"]).all()


def test_checkpoints():
    assert viz_utils.checkpoints(500, 100, 250) == [250, 300, 400, 500]
    assert viz_utils.checkpoints(50, 100) == [50]
