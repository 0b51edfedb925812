import numpy as np
import pytest

from sckana.buffers import Buffer, BufferCache
from sckana.engine import Step
from sckana.errors import ParameterError
from sckana.params import parameters_differ, take_ownership


# -------------------------------------------------------------------------
# parameters_differ
# -------------------------------------------------------------------------
def test_identical_records_do_not_differ():
    a = {"x": 1, "y": [1.5, "a", None], "z": {"w": True}}
    b = {"x": 1, "y": [1.5, "a", None], "z": {"w": True}}
    assert not parameters_differ(a, b)


def test_infinities_equal_themselves():
    assert not parameters_differ({"t": float("inf")}, {"t": float("inf")})
    assert parameters_differ({"t": float("inf")}, {"t": float("-inf")})


def test_mismatched_kinds_and_keys_differ():
    assert parameters_differ({"x": 1}, {"x": "1"})
    assert parameters_differ({"x": 1}, {"y": 1})
    assert parameters_differ([1, 2], [1, 2, 3])
    assert parameters_differ(None, 0)


def test_int_and_float_compare_by_value():
    assert not parameters_differ({"k": 10}, {"k": 10.0})
    assert parameters_differ({"k": 10}, {"k": 10.5})


def test_arrays_are_rejected():
    with pytest.raises(ParameterError) as err:
        parameters_differ({"x": np.arange(3)}, {"x": [0, 1, 2]})
    assert err.value.kind == "EParam.IllegalValue"


def test_take_ownership_is_a_deep_copy():
    original = {"species": ["9606"]}
    owned = take_ownership(original)
    original["species"].append("10090")
    assert owned == {"species": ["9606"]}


# -------------------------------------------------------------------------
# Buffers
# -------------------------------------------------------------------------
def test_allocate_reuses_matching_buffer():
    cache = BufferCache()
    first = cache.allocate("keep", 5, "u8")
    again = cache.allocate("keep", 5, "u8")
    assert again is first
    assert cache.allocation_count == 1

    other = cache.allocate("keep", 6, "u8")
    assert other is not first
    assert first.released
    assert cache.release_count == 1


def test_view_of_released_buffer_raises():
    owner = Buffer.wrap(np.arange(4, dtype=np.int32))
    view = owner.view()
    assert list(view.array) == [0, 1, 2, 3]
    owner.release()
    with pytest.raises(RuntimeError):
        _ = view.array


def test_unknown_element_type():
    with pytest.raises(TypeError):
        Buffer.empty(3, "i64")


def test_transaction_rolls_back_new_and_reused_buffers():
    cache = BufferCache()
    kept = cache.store("sums", np.array([1.0, 2.0, 3.0]))

    with pytest.raises(ValueError):
        with cache.transaction():
            reused = cache.allocate("sums", 3, "f64")
            reused.array[:] = 0
            cache.store("fresh", np.array([1, 2], dtype=np.int32))
            cache.free("sums")
            raise ValueError("boom")

    assert cache.names() == ["sums"]
    assert cache["sums"] is kept
    assert not kept.released
    assert list(kept.array) == [1.0, 2.0, 3.0]


def test_transaction_commit_releases_dropped_buffers():
    cache = BufferCache()
    old = cache.store("x", np.zeros(2))
    with cache.transaction():
        cache.free("x")
        assert not old.released
    assert old.released


# -------------------------------------------------------------------------
# Step transactions
# -------------------------------------------------------------------------
class _FailingStep(Step):
    step_name = "failing"

    def compute(self, parameters, fail=False):
        with self._transaction():
            self.buffers.store("values", np.ones(3))
            self._cache["result"] = "new"
            self._parameters = parameters
            if fail:
                raise RuntimeError("kernel failure")


def test_failed_compute_restores_previous_state():
    step = _FailingStep()
    step.compute({"a": 1})
    before = step.buffers["values"]
    step._cache["result"] = "old"

    with pytest.raises(RuntimeError):
        step.compute({"a": 2}, fail=True)

    assert step.fetch_parameters() == {"a": 1}
    assert step._cache["result"] == "old"
    assert step.buffers["values"] is before
    assert not before.released
