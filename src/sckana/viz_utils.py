from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import umap
from sklearn.manifold import TSNE

from .neighbor_utils import knn_distance_graph

LOGGER = logging.getLogger(__name__)

# scikit-learn refuses shorter t-SNE runs; this is also the exaggeration phase.
TSNE_MIN_ITERATIONS = 250
SPECTRAL_INIT_MIN_CELLS = 64

FrameCallback = Callable[[np.ndarray, np.ndarray, int], None]


def perplexity_to_neighbors(perplexity: float, ncells: Optional[int] = None) -> int:
    """Neighbours needed to compute t-SNE affinities at ``perplexity``."""
    k = int(3 * perplexity) + 1
    if ncells is not None:
        k = min(k, max(1, ncells - 1))
    return k


def capped_perplexity(perplexity: float, ncells: int) -> float:
    limit = max(1.0, (ncells - 1) / 3.0)
    if perplexity > limit:
        LOGGER.warning("Perplexity %.1f is too large for %d cells; using %.1f", perplexity, ncells, limit)
        return limit
    return float(perplexity)


def checkpoints(total: int, interval: int, minimum: int = 1) -> List[int]:
    """Iteration counts at which animation frames are taken, ending at ``total``."""
    steps = {max(minimum, c) for c in range(interval, total, interval)}
    steps.add(total)
    return sorted(s for s in steps if s <= total)


# ---------------------------------------------------------------------
# t-SNE
# ---------------------------------------------------------------------
def _tsne_once(graph, perplexity: float, iterations: int, random_state: int) -> np.ndarray:
    model = TSNE(
        n_components=2,
        perplexity=perplexity,
        max_iter=iterations,
        metric="precomputed",
        init="random",
        random_state=random_state,
    )
    return model.fit_transform(graph)


def run_tsne(
    neighbors: Dict[str, np.ndarray],
    perplexity: float,
    iterations: int,
    *,
    animate: bool = False,
    interval: int = 100,
    on_frame: Optional[FrameCallback] = None,
    random_state: int = 42,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    t-SNE coordinates from a precomputed neighbour list.

    ``neighbors`` holds ``indices`` and ``distances`` (cells x k, self
    excluded). With ``animate`` intermediate states are reported through
    ``on_frame``; each frame repeats the same seeded optimisation up to its
    checkpoint, so it lies on the trajectory of the final run.
    """
    indices, distances = neighbors["indices"], neighbors["distances"]
    n = indices.shape[0]
    if n < 2:
        return np.zeros(n), np.zeros(n)

    perplexity = capped_perplexity(perplexity, n)
    graph = knn_distance_graph(indices, distances, n)

    total = int(iterations)
    if total < TSNE_MIN_ITERATIONS:
        LOGGER.warning("t-SNE needs at least %d iterations; running %d", TSNE_MIN_ITERATIONS, TSNE_MIN_ITERATIONS)
        total = TSNE_MIN_ITERATIONS

    stops = checkpoints(total, interval, TSNE_MIN_ITERATIONS) if animate else [total]
    coords = None
    for stop in stops:
        coords = _tsne_once(graph, perplexity, stop, random_state)
        if on_frame is not None and stop != total:
            on_frame(coords[:, 0].copy(), coords[:, 1].copy(), stop)
    return coords[:, 0].copy(), coords[:, 1].copy()


# ---------------------------------------------------------------------
# UMAP
# ---------------------------------------------------------------------
def run_umap(
    neighbors: Dict[str, np.ndarray],
    num_neighbors: int,
    num_epochs: int,
    min_dist: float,
    *,
    animate: bool = False,
    interval: int = 100,
    on_frame: Optional[FrameCallback] = None,
    random_state: int = 42,
) -> Tuple[np.ndarray, np.ndarray]:
    """UMAP coordinates from a precomputed neighbour list (self excluded) and the embedding it came from."""
    x = np.asarray(neighbors["x"], dtype=np.float64)
    indices, distances = neighbors["indices"], neighbors["distances"]
    n = x.shape[0]
    if n < 3:
        return np.zeros(n), np.zeros(n)

    # umap-learn expects each cell to be its own first neighbour
    knn_indices = np.concatenate([np.arange(n)[:, None], indices], axis=1).astype(np.int64)
    knn_dists = np.concatenate([np.zeros((n, 1)), distances], axis=1).astype(np.float32)
    width = min(int(num_neighbors), knn_indices.shape[1])
    knn_indices, knn_dists = knn_indices[:, :width], knn_dists[:, :width]

    epochs = int(num_epochs)
    stops = checkpoints(epochs, interval) if animate else [epochs]
    model = umap.UMAP(
        n_components=2,
        n_neighbors=max(2, width),
        min_dist=min_dist,
        n_epochs=stops if len(stops) > 1 else epochs,
        init="spectral" if n > SPECTRAL_INIT_MIN_CELLS else "random",
        precomputed_knn=(knn_indices, knn_dists, None),
        random_state=random_state,
    )
    coords = model.fit_transform(x)

    if on_frame is not None and len(stops) > 1:
        for stop, frame in zip(stops[:-1], getattr(model, "embedding_list_", [])):
            on_frame(frame[:, 0].copy(), frame[:, 1].copy(), stop)
    return coords[:, 0].astype(np.float64), coords[:, 1].astype(np.float64)
