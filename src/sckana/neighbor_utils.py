from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp
from pynndescent import NNDescent
from sklearn.neighbors import NearestNeighbors

from .errors import ClusterError

LOGGER = logging.getLogger(__name__)

SNN_SCHEMES = ("rank", "number", "jaccard")
MIN_APPROXIMATE_SIZE = 100


class NeighborSearchIndex:
    """
    Nearest-neighbour search over the rows of ``x`` (cells x dims).

    ``approximate=True`` uses pynndescent, otherwise an exact scikit-learn
    search. Self matches are never reported by ``find_nearest_neighbors``.
    """

    def __init__(self, x: np.ndarray, approximate: bool = True, random_state: int = 0) -> None:
        self.x = np.ascontiguousarray(x, dtype=np.float64)
        self.approximate = approximate
        self.random_state = random_state
        self._nnd: Optional[NNDescent] = None
        self._exact: Optional[NearestNeighbors] = None

    def num_observations(self) -> int:
        return int(self.x.shape[0])

    def num_dimensions(self) -> int:
        return int(self.x.shape[1])

    def _cap(self, k: int, query_self: bool) -> int:
        limit = self.num_observations() - (1 if query_self else 0)
        if k > limit:
            LOGGER.warning("Requested %d neighbours but only %d are available; capping", k, limit)
        return max(0, min(int(k), limit))

    def _use_approximate(self) -> bool:
        # tiny inputs are searched exhaustively
        return self.approximate and self.num_observations() > MIN_APPROXIMATE_SIZE

    def _approximate_index(self) -> NNDescent:
        if self._nnd is None:
            n_neighbors = min(30, max(2, self.num_observations() - 1))
            self._nnd = NNDescent(self.x, n_neighbors=n_neighbors, random_state=self.random_state)
            self._nnd.prepare()
        return self._nnd

    def _exact_index(self) -> NearestNeighbors:
        if self._exact is None:
            self._exact = NearestNeighbors().fit(self.x)
        return self._exact

    def find_nearest_neighbors(self, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """(indices, distances), each cells x k, sorted by increasing distance, excluding self."""
        k = self._cap(k, query_self=True)
        n = self.num_observations()
        if k == 0:
            return np.zeros((n, 0), dtype=np.int32), np.zeros((n, 0), dtype=np.float64)

        if not self._use_approximate():
            dist, idx = self._exact_index().kneighbors(n_neighbors=k)
            return idx.astype(np.int32), dist.astype(np.float64)

        idx, dist = self._approximate_index().query(self.x, k=min(k + 1, n))
        out_idx = np.empty((n, k), dtype=np.int32)
        out_dist = np.empty((n, k), dtype=np.float64)
        for i in range(n):
            others = idx[i] != i
            row_idx, row_dist = idx[i][others][:k], dist[i][others][:k]
            if row_idx.size < k:
                # pynndescent can return fewer unique neighbours on tiny inputs
                dist_all = np.linalg.norm(self.x - self.x[i], axis=1)
                dist_all[i] = np.inf
                order = np.argsort(dist_all, kind="stable")[:k]
                row_idx, row_dist = order, dist_all[order]
            out_idx[i], out_dist[i] = row_idx, row_dist
        return out_idx, out_dist

    def query(self, y: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Neighbours in this index for each row of ``y``."""
        k = self._cap(k, query_self=False)
        y = np.ascontiguousarray(y, dtype=np.float64)
        if k == 0:
            return np.zeros((y.shape[0], 0), dtype=np.int32), np.zeros((y.shape[0], 0), dtype=np.float64)
        if self._use_approximate() and self.num_observations() > k:
            idx, dist = self._approximate_index().query(y, k=k)
            return idx.astype(np.int32), dist.astype(np.float64)
        dist, idx = self._exact_index().kneighbors(y, n_neighbors=k)
        return idx.astype(np.int32), dist.astype(np.float64)


def build_neighbor_index(x: np.ndarray, approximate: bool = True) -> NeighborSearchIndex:
    return NeighborSearchIndex(x, approximate=approximate)


# ---------------------------------------------------------------------
# Graphs
# ---------------------------------------------------------------------
def knn_distance_graph(indices: np.ndarray, distances: np.ndarray, n: int) -> sp.csr_matrix:
    """Sparse cells x cells matrix of neighbour distances (row = query cell)."""
    k = indices.shape[1]
    rows = np.repeat(np.arange(n), k)
    return sp.csr_matrix((distances.ravel(), (rows, indices.ravel())), shape=(n, n))


def build_snn_graph(indices: np.ndarray, scheme: str = "rank") -> sp.csr_matrix:
    """
    Shared-nearest-neighbour graph from a cells x k neighbour list.

    - ``rank``: weight = max(0, k - r/2) where r is the smallest summed rank of a shared neighbour
    - ``number``: number of shared neighbours
    - ``jaccard``: shared / union of the two neighbour sets
    Each cell counts as its own neighbour at rank 0.
    """
    if scheme not in SNN_SCHEMES:
        raise ClusterError(
            "UnknownScheme",
            f"unknown SNN weighting scheme '{scheme}'. Available: {', '.join(SNN_SCHEMES)}",
            scheme=scheme,
        )

    n, k = indices.shape
    full = np.concatenate([np.arange(n, dtype=np.int64)[:, None], indices.astype(np.int64)], axis=1)
    ranks = np.broadcast_to(np.arange(k + 1), full.shape)

    # cell x neighbour membership
    membership = sp.csr_matrix(
        (np.ones(full.size), (np.repeat(np.arange(n), k + 1), full.ravel())), shape=(n, n)
    )
    shared = (membership @ membership.T).tocoo()
    keep = shared.row < shared.col
    rows, cols, counts = shared.row[keep], shared.col[keep], shared.data[keep]

    if scheme == "number":
        weights = counts.astype(np.float64)
    elif scheme == "jaccard":
        weights = counts / (2 * (k + 1) - counts)
    else:
        rank_of = [dict(zip(full[i].tolist(), ranks[i].tolist())) for i in range(n)]
        weights = np.empty(rows.shape[0], dtype=np.float64)
        for e, (i, j) in enumerate(zip(rows.tolist(), cols.tolist())):
            ri, rj = rank_of[i], rank_of[j]
            if len(rj) < len(ri):
                ri, rj = rj, ri
            best = min(ri[m] + rj[m] for m in ri if m in rj)
            weights[e] = max(0.0, k - 0.5 * best)

    positive = weights > 0
    rows, cols, weights = rows[positive], cols[positive], weights[positive]
    graph = sp.coo_matrix((weights, (rows, cols)), shape=(n, n))
    return (graph + graph.T).tocsr()
