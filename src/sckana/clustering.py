from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import anndata as ad
import numpy as np
import scanpy as sc
from sklearn.cluster import KMeans

from .batch_correction import BatchCorrectionStep
from .config import ChooseClusteringParameters, KmeansClusterParameters, SnnGraphClusterParameters
from .engine import Step
from .errors import ClusterError
from .neighbor_index import NeighborIndexStep
from .neighbor_utils import build_snn_graph

LOGGER = logging.getLogger(__name__)

CLUSTER_METHODS = ("snn_graph", "kmeans")


def cluster_kmeans(x: np.ndarray, k: int, random_state: int = 0) -> np.ndarray:
    n = x.shape[0]
    k = max(1, min(int(k), n))
    model = KMeans(n_clusters=k, n_init=10, random_state=random_state)
    return model.fit_predict(x).astype(np.int32)


def cluster_leiden(graph, resolution: float, random_state: int = 0) -> np.ndarray:
    """Leiden communities of a symmetric weighted adjacency matrix (0-based, largest first)."""
    n = graph.shape[0]
    holder = ad.AnnData(X=np.zeros((n, 0), dtype=np.float32))
    sc.tl.leiden(
        holder,
        resolution=resolution,
        adjacency=graph,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
        key_added="leiden",
    )
    return holder.obs["leiden"].astype(int).to_numpy(dtype=np.int32)


class KmeansClusterStep(Step):
    """k-means on the corrected embedding; only computed when selected."""

    step_name = "kmeans_cluster"
    parameter_model = KmeansClusterParameters

    def __init__(self, correct: BatchCorrectionStep, context=None) -> None:
        super().__init__(context)
        self.correct = correct

    def valid(self) -> bool:
        return self.correct.valid()

    def has_clusters(self) -> bool:
        return "clusters" in self.buffers

    def fetch_clusters(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("clusters")
        return None if buf is None else buf.array

    def compute(self, run_me: bool, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False

        with self._transaction():
            if self.correct.changed or self._differs(parameters, ["k"]) or (not self.has_clusters() and run_me):
                if run_me and self.valid():
                    clusters = cluster_kmeans(self.correct.fetch_corrected(), parameters["k"])
                    self.buffers.store("clusters", clusters, "i32")
                    LOGGER.info("k-means produced %d clusters", int(clusters.max()) + 1 if clusters.size else 0)
                else:
                    self.buffers.free("clusters")
                self.changed = True
            self._parameters = parameters

        self._log_outcome()


class SnnGraphClusterStep(Step):
    """
    Leiden clustering of a shared-nearest-neighbour graph. Neighbours,
    graph and clusters are cached separately; with ``run_me=False`` stale
    levels are dropped and rebuilt on the next selected run.
    """

    step_name = "snn_graph_cluster"
    parameter_model = SnnGraphClusterParameters

    def __init__(self, index: NeighborIndexStep, context=None) -> None:
        super().__init__(context)
        self.index = index

    def valid(self) -> bool:
        return self.index.valid()

    def has_clusters(self) -> bool:
        return "clusters" in self.buffers

    def fetch_clusters(self) -> Optional[np.ndarray]:
        buf = self.buffers.get("clusters")
        return None if buf is None else buf.array

    def fetch_neighbors(self):
        return self._cache.get("neighbors")

    def fetch_graph(self):
        return self._cache.get("graph")

    def _ensure_neighbors(self, k: int):
        if "neighbors" not in self._cache:
            self._cache["neighbors"] = self.index.fetch_index().find_nearest_neighbors(k)
        return self._cache["neighbors"]

    def _ensure_graph(self, k: int, scheme: str):
        if "graph" not in self._cache:
            indices, _ = self._ensure_neighbors(k)
            self._cache["graph"] = build_snn_graph(indices, scheme)
        return self._cache["graph"]

    def compute(self, run_me: bool, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        self.changed = False
        k, scheme, resolution = parameters["k"], parameters["scheme"], parameters["resolution"]
        run_me = run_me and self.valid()

        with self._transaction():
            if self.index.changed or self._differs(parameters, ["k"]):
                self._cache.pop("neighbors", None)
                if run_me:
                    self._ensure_neighbors(k)
                self.changed = True

            if self.changed or self._differs(parameters, ["scheme"]):
                self._cache.pop("graph", None)
                if run_me:
                    self._ensure_graph(k, scheme)
                self.changed = True

            if self.changed or self._differs(parameters, ["resolution"]) or (not self.has_clusters() and run_me):
                if run_me:
                    clusters = cluster_leiden(self._ensure_graph(k, scheme), resolution)
                    self.buffers.store("clusters", clusters, "i32")
                    LOGGER.info("SNN graph clustering produced %d clusters", int(clusters.max()) + 1 if clusters.size else 0)
                else:
                    self.buffers.free("clusters")
                self.changed = True

            self._parameters = parameters

        self._log_outcome()


class ChooseClusteringStep(Step):
    """Exposes the clusters of the selected method."""

    step_name = "choose_clustering"
    parameter_model = ChooseClusteringParameters

    def __init__(self, snn: SnnGraphClusterStep, kmeans: KmeansClusterStep, context=None) -> None:
        super().__init__(context)
        self.snn = snn
        self.kmeans = kmeans

    def _chosen(self, method: str) -> Step:
        if method == "snn_graph":
            return self.snn
        if method == "kmeans":
            return self.kmeans
        raise ClusterError(
            "UnknownMethod",
            f"unknown clustering method '{method}'. Available: {', '.join(CLUSTER_METHODS)}",
            method=method,
        )

    def valid(self) -> bool:
        return self.snn.valid()

    def fetch_clusters(self) -> Optional[np.ndarray]:
        return self._chosen(self._parameters["method"]).fetch_clusters()

    def num_clusters(self) -> int:
        clusters = self.fetch_clusters()
        return 0 if clusters is None or clusters.size == 0 else int(clusters.max()) + 1

    def compute(self, parameters: Optional[Dict[str, Any]] = None) -> None:
        parameters = self.resolve_parameters(parameters)
        chosen = self._chosen(parameters["method"])

        self.changed = True
        if not self._differs(parameters, ["method"]) and not chosen.changed:
            self.changed = False
        self._parameters = parameters
        self._stale = False
        self._log_outcome()
