from __future__ import annotations

import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import numpy as np

from . import viz_utils
from .config import TsneParameters, UmapParameters
from .engine import Step
from .neighbor_index import NeighborIndexStep

LOGGER = logging.getLogger(__name__)

SUCCESS = {"status": "SUCCESS"}


def _resolved(value: Any = None) -> Future:
    fut: Future = Future()
    fut.set_result(value)
    return fut


class EmbeddingWorker:
    """
    Single-thread executor holding the state of one embedding.

    Messages (``INIT``, ``RUN``, ``RERUN``, ``FETCH``, ``KILL``) are handled
    strictly in submission order; every ``send`` returns a future of the reply.
    Neighbours only cross into the worker when a ``RUN`` carries them.
    """

    def __init__(self, kind: str, init_keys: List[str], run_keys: List[str], runner, context) -> None:
        self.kind = kind
        self.init_keys = init_keys
        self.run_keys = run_keys
        self._runner = runner
        self._context = context
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sckana-{kind}")
        self._killed = False

        self._neighbors: Optional[Dict[str, np.ndarray]] = None
        self._init_parameters: Optional[Dict[str, Any]] = None
        self._run_parameters: Optional[Dict[str, Any]] = None
        self._final: Optional[Dict[str, np.ndarray]] = None

    def send(self, message: str, **payload) -> Future:
        if self._killed:
            raise RuntimeError(f"the {self.kind} worker has already been killed")
        return self._executor.submit(self._dispatch, message, payload)

    def kill(self) -> None:
        if self._killed:
            return
        self.send("KILL")
        self._killed = True
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _dispatch(self, message: str, payload: Dict[str, Any]):
        if message == "INIT":
            return SUCCESS
        if message == "RUN":
            return self._run(payload)
        if message == "RERUN":
            if self._run_parameters is None:
                raise RuntimeError(f"no {self.kind} run to repeat")
            self._iterate(animate=True)
            return SUCCESS
        if message == "FETCH":
            if self._final is None:
                raise RuntimeError(f"no {self.kind} coordinates have been computed")
            return {
                "x": self._final["x"].copy(),
                "y": self._final["y"].copy(),
                "iterations": self._final["iterations"],
            }
        if message == "KILL":
            self._neighbors = None
            self._final = None
            return SUCCESS
        raise ValueError(f"unknown message '{message}' for the {self.kind} worker")

    def _run(self, payload: Dict[str, Any]):
        params = payload["params"]
        init_changed = False

        if payload.get("neighbors") is not None:
            self._neighbors = payload["neighbors"]
            init_changed = True
        if self._neighbors is None:
            raise RuntimeError(f"the {self.kind} worker has not received any neighbours")

        init_parameters = {k: params[k] for k in self.init_keys}
        if init_changed or init_parameters != self._init_parameters:
            self._init_parameters = init_parameters
            init_changed = True

        run_parameters = {k: params[k] for k in self.run_keys}
        if init_changed or run_parameters != self._run_parameters or self._final is None:
            self._run_parameters = run_parameters
            self._iterate(animate=bool(payload.get("animate", False)))
        return SUCCESS

    def _iterate(self, animate: bool) -> None:
        params = {**self._init_parameters, **self._run_parameters}

        def on_frame(x, y, iteration):
            self._context.animate(self.kind, x, y, iteration)

        x, y = self._runner(
            self._neighbors,
            params,
            animate=animate,
            interval=self._context.animation_interval,
            on_frame=on_frame if animate else None,
        )
        self._final = {"x": x, "y": y, "iterations": params[self.run_keys[0]]}
        LOGGER.info("Finished %s embedding of %d cells", self.kind, x.shape[0])


class VisualizationStep(Step):
    """
    Asynchronous 2-D embedding of the neighbour index.

    ``compute`` returns a future that resolves once the worker has finished.
    A step created with ``reloaded={"x", "y", ...}`` serves those coordinates
    until the first recompute or animation, which re-sends the neighbours.
    """

    kind = ""
    init_keys: List[str] = []
    run_keys: List[str] = []
    # parameters that decide which neighbours are sent
    neighbor_keys: List[str] = []

    def __init__(self, index: NeighborIndexStep, context=None, reloaded: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(context)
        self.index = index
        self._reloaded = reloaded
        self._pending: Optional[Future] = None
        self._worker = EmbeddingWorker(self.kind, self.init_keys, self.run_keys, self._embed, self.context)
        self.ready = self._worker.send("INIT")

    def valid(self) -> bool:
        return self.index.valid()

    def _embed(self, neighbors, params, **kwargs):
        raise NotImplementedError

    def _num_neighbors(self, parameters: Dict[str, Any]) -> int:
        raise NotImplementedError

    def _neighbors(self, parameters: Dict[str, Any]) -> Dict[str, np.ndarray]:
        search = self.index.fetch_index()
        indices, distances = search.find_nearest_neighbors(self._num_neighbors(parameters))
        return {"indices": indices, "distances": distances, "x": search.x}

    def _core(self, parameters: Dict[str, Any], animate: bool, reneighbor: bool) -> Future:
        payload: Dict[str, Any] = {"params": dict(parameters), "animate": animate}
        if reneighbor:
            payload["neighbors"] = self._neighbors(parameters)
        self._pending = self._worker.send("RUN", **payload)
        return self._pending

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------
    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> Future:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        if not self.valid():
            if self.index.changed:
                self._pending = None
                self.changed = True
            self._parameters = parameters
            self._log_outcome()
            return _resolved(None)

        same_neighbors = not self.index.changed and not self._differs(parameters, self.neighbor_keys)
        if same_neighbors and not self._differs(parameters, self.init_keys + self.run_keys):
            self._log_outcome()
            return _resolved(None)

        if self._reloaded is not None:
            same_neighbors = False
            self._reloaded = None

        fut = self._core(parameters, animate=parameters["animate"], reneighbor=not same_neighbors)
        self._parameters = parameters
        self._stale = False
        self.changed = True
        self._log_outcome()
        return fut

    def animate(self) -> Future:
        """Repeat the last run while streaming frames to the animator."""
        if self._reloaded is not None:
            self._reloaded = None
            self._parameters = self._parameters or self.resolve_parameters(None)
            return self._core(self._parameters, animate=True, reneighbor=True)
        return self._worker.send("RERUN")

    def fetch_results(self) -> Optional[Dict[str, Any]]:
        """Final coordinates, waiting for any pending run; None if nothing has been computed."""
        if self._reloaded is not None:
            return {
                "x": np.asarray(self._reloaded["x"], dtype=np.float64).copy(),
                "y": np.asarray(self._reloaded["y"], dtype=np.float64).copy(),
                "iterations": self._parameters.get(self.run_keys[0]),
            }
        if self._pending is None:
            return None
        self._pending.result()
        return self._worker.send("FETCH").result()

    def free(self) -> None:
        self._worker.kill()
        self._pending = None
        super().free()


class TsneStep(VisualizationStep):
    step_name = "tsne"
    parameter_model = TsneParameters
    kind = "tsne"
    init_keys = ["perplexity"]
    run_keys = ["iterations"]
    neighbor_keys = ["perplexity"]

    def _num_neighbors(self, parameters):
        return viz_utils.perplexity_to_neighbors(parameters["perplexity"], self.index.fetch_index().num_observations())

    def _embed(self, neighbors, params, **kwargs):
        return viz_utils.run_tsne(neighbors, params["perplexity"], params["iterations"], **kwargs)


class UmapStep(VisualizationStep):
    step_name = "umap"
    parameter_model = UmapParameters
    kind = "umap"
    init_keys = ["num_neighbors", "min_dist"]
    run_keys = ["num_epochs"]
    neighbor_keys = ["num_neighbors"]

    def _num_neighbors(self, parameters):
        # the cell itself fills the first slot
        return max(1, int(math.ceil(parameters["num_neighbors"])) - 1)

    def _embed(self, neighbors, params, **kwargs):
        return viz_utils.run_umap(
            neighbors, params["num_neighbors"], params["num_epochs"], params["min_dist"], **kwargs
        )
