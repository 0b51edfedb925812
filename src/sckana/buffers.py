from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Union

import numpy as np

LOGGER = logging.getLogger(__name__)

# Element types a step may keep in its cache.
ELEMENT_TYPES: Dict[str, type] = {
    "u8": np.uint8,
    "i32": np.int32,
    "f64": np.float64,
}


def _element_type_of(array: np.ndarray) -> str:
    for name, dtype in ELEMENT_TYPES.items():
        if array.dtype == dtype:
            return name
    raise TypeError(f"unsupported buffer dtype {array.dtype!r}; expected one of {sorted(ELEMENT_TYPES)}")


class Buffer:
    """
    Tagged numeric buffer: ``{element_type, length, owned | view}``.

    An owning buffer holds its own numpy array. A view borrows the array of
    another buffer and never releases it; reading a view whose owner has been
    released is an error.
    """

    __slots__ = ("element_type", "_array", "_owner")

    def __init__(self, array: np.ndarray, element_type: str, owner: Optional["Buffer"] = None) -> None:
        self.element_type = element_type
        self._array = array if owner is None else None
        self._owner = owner

    @classmethod
    def empty(cls, length: int, element_type: str) -> "Buffer":
        if element_type not in ELEMENT_TYPES:
            raise TypeError(f"unknown element type '{element_type}'; expected one of {sorted(ELEMENT_TYPES)}")
        return cls(np.zeros(int(length), dtype=ELEMENT_TYPES[element_type]), element_type)

    @classmethod
    def wrap(cls, array) -> "Buffer":
        array = np.ascontiguousarray(array)
        return cls(array, _element_type_of(array))

    @property
    def owned(self) -> bool:
        return self._owner is None

    @property
    def released(self) -> bool:
        if self._owner is not None:
            return self._owner.released
        return self._array is None

    @property
    def array(self) -> np.ndarray:
        if self._owner is not None:
            if self._owner.released:
                raise RuntimeError("buffer view refers to a released buffer")
            return self._owner.array
        if self._array is None:
            raise RuntimeError("buffer has already been released")
        return self._array

    def __len__(self) -> int:
        return int(self.array.shape[0])

    def view(self) -> "Buffer":
        root = self if self._owner is None else self._owner
        return Buffer(None, self.element_type, owner=root)

    def release(self) -> None:
        # Views do not own anything.
        if self._owner is None:
            self._array = None

    def __repr__(self) -> str:
        state = "owned" if self.owned else "view"
        if self.released:
            return f"Buffer({self.element_type}, released, {state})"
        return f"Buffer({self.element_type}, length={len(self)}, {state})"


class _Transaction:
    def __init__(self, entries: Dict[str, Buffer]) -> None:
        self.snapshot = dict(entries)
        self.created: List[Buffer] = []
        self.deferred: List[Buffer] = []
        self.saved: Dict[int, tuple] = {}

    def is_new(self, buf: Buffer) -> bool:
        return any(buf is b for b in self.created)


class BufferCache:
    """
    Named numeric buffers owned by a single step.

    ``allocate`` reuses an existing owned buffer of the same length and element
    type; anything else is released and replaced. Inside ``transaction()`` every
    change can be rolled back: new buffers are released, reused buffers get their
    previous contents back, and releases of pre-existing buffers only happen on
    commit.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Buffer] = {}
        self._txn: Optional[_Transaction] = None
        self.allocation_count = 0
        self.release_count = 0

    # ------------------------------------------------------------------
    # Mapping access
    # ------------------------------------------------------------------
    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __getitem__(self, name: str) -> Buffer:
        return self._entries[name]

    def get(self, name: str, default=None):
        return self._entries.get(name, default)

    def names(self) -> List[str]:
        return list(self._entries)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def allocate(self, name: str, length: int, element_type: str = "f64") -> Buffer:
        current = self._entries.get(name)
        if current is not None:
            if current.owned and not current.released and current.element_type == element_type and len(current) == length:
                self._remember_contents(current)
                return current
            self._release(current)
            del self._entries[name]

        buf = Buffer.empty(length, element_type)
        self.allocation_count += 1
        if self._txn is not None:
            self._txn.created.append(buf)
        self._entries[name] = buf
        return buf

    def store(self, name: str, values, element_type: Optional[str] = None) -> Buffer:
        """Allocate ``name`` to fit ``values`` and copy them in."""
        values = np.asarray(values)
        if element_type is None:
            element_type = _element_type_of(values)
        buf = self.allocate(name, values.shape[0], element_type)
        buf.array[:] = values
        return buf

    def view_of(self, name: str, other: Union[Buffer, np.ndarray]) -> Buffer:
        if not isinstance(other, Buffer):
            other = Buffer.wrap(other)
        current = self._entries.get(name)
        if current is not None:
            self._release(current)
        view = other.view()
        self._entries[name] = view
        return view

    def free(self, name: str) -> None:
        current = self._entries.pop(name, None)
        if current is not None:
            self._release(current)

    def free_all(self) -> None:
        for name in list(self._entries):
            self.free(name)

    def _release(self, buf: Buffer) -> None:
        if not buf.owned:
            return
        if self._txn is not None and not self._txn.is_new(buf):
            self._txn.deferred.append(buf)
            return
        buf.release()
        self.release_count += 1

    def _remember_contents(self, buf: Buffer) -> None:
        txn = self._txn
        if txn is None or txn.is_new(buf) or id(buf) in txn.saved:
            return
        txn.saved[id(buf)] = (buf, buf.array.copy())

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator["BufferCache"]:
        if self._txn is not None:
            yield self
            return

        txn = _Transaction(self._entries)
        self._txn = txn
        try:
            yield self
        except BaseException:
            self._txn = None
            self._rollback(txn)
            raise
        else:
            self._txn = None
            for buf in txn.deferred:
                if not any(buf is b for b in self._entries.values()):
                    buf.release()
                    self.release_count += 1

    def _rollback(self, txn: _Transaction) -> None:
        for buf in txn.created:
            if not buf.released:
                buf.release()
                self.release_count += 1
        for buf, contents in txn.saved.values():
            buf.array[:] = contents
        self._entries = txn.snapshot
        LOGGER.debug("Rolled back %d new buffer(s)", len(txn.created))
