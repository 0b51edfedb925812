from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Optional, Type

from pydantic import BaseModel

from .buffers import BufferCache
from .context import EngineContext, default_context
from .params import parameters_differ, take_ownership

LOGGER = logging.getLogger(__name__)


class Step:
    """
    One node of the analysis DAG.

    A step keeps references to its upstream steps, its last parameters, a
    cache of results and a ``changed`` flag that ``compute`` resets on entry
    and sets when its outputs may differ from the previous call.
    """

    step_name = "step"
    parameter_model: Optional[Type[BaseModel]] = None

    def __init__(self, context: Optional[EngineContext] = None) -> None:
        self.changed = False
        self.context = context if context is not None else default_context()
        self.buffers = BufferCache()
        self._parameters: Dict[str, Any] = {}
        self._cache: Dict[str, Any] = {}
        self._stale = False

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------
    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        if cls.parameter_model is None:
            return {}
        return cls.parameter_model().model_dump()

    @classmethod
    def resolve_parameters(cls, parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if cls.parameter_model is None:
            return {}
        merged = cls.defaults()
        merged.update(parameters or {})
        resolved = cls.parameter_model.model_validate(merged).model_dump()
        return take_ownership(resolved)

    def fetch_parameters(self) -> Dict[str, Any]:
        return copy.deepcopy(self._parameters)

    def _differs(self, parameters: Dict[str, Any], keys: Iterable[str]) -> bool:
        """True if any of ``keys`` differs from the last recorded parameters, or the step is stale."""
        if self._stale:
            return True
        for k in keys:
            if k not in self._parameters:
                return True
            if parameters_differ(parameters.get(k), self._parameters.get(k)):
                return True
        return False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def valid(self) -> bool:
        return True

    def free(self) -> None:
        self.buffers.free_all()
        self._cache.clear()

    def mark_stale(self) -> None:
        """
        Force the next ``compute`` to recompute regardless of parameters and
        upstream flags. Cached results stay readable until then.
        """
        self._stale = True

    @contextmanager
    def _transaction(self):
        """
        Run one ``compute`` call. On failure, buffers allocated by the call are
        released, the previous parameters and cache are put back and the step
        is marked stale. A successful call clears the stale mark.
        """
        parameters = copy.deepcopy(self._parameters)
        cache = dict(self._cache)
        try:
            with self.buffers.transaction():
                yield
        except BaseException:
            self._parameters = parameters
            self._cache = cache
            self._stale = True
            LOGGER.debug("Restored previous state of '%s' after a failed compute", self.step_name)
            raise
        self._stale = False

    def _log_outcome(self) -> None:
        if self.changed:
            LOGGER.info("Step '%s' recomputed", self.step_name)
        else:
            LOGGER.debug("Step '%s' unchanged; reusing cached results", self.step_name)
