from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA
from statsmodels.nonparametric.smoothers_lowess import lowess

from .errors import CombineError, KernelError, PcaError
from .matrices import block_groups
from .neighbor_utils import NeighborSearchIndex

LOGGER = logging.getLogger(__name__)

PCA_BLOCK_METHODS = ("none", "regress", "project")
SCALE_NEIGHBORS = 20


# ---------------------------------------------------------------------
# Size factors and log-normalisation
# ---------------------------------------------------------------------
def center_size_factors(raw: np.ndarray, block: Optional[np.ndarray] = None, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Scale size factors to a mean of 1 within each block.

    Zeros are replaced by the smallest positive centred factor; negative or
    non-finite factors are rejected.
    """
    raw = np.asarray(raw, dtype=np.float64)
    if not np.all(np.isfinite(raw)) or np.any(raw < 0):
        bad = int(np.flatnonzero(~np.isfinite(raw) | (raw < 0))[0])
        raise KernelError("InvalidSizeFactors", "size factors should be finite and non-negative", index=bad)

    centred = np.empty_like(raw) if out is None else out
    for g in block_groups(block, raw.shape[0]):
        if g.size == 0:
            continue
        mean = raw[g].mean()
        if mean <= 0:
            raise KernelError(
                "InvalidSizeFactors",
                "all size factors in a block are zero",
                block=int(block[g[0]]) if block is not None else 0,
            )
        centred[g] = raw[g] / mean

    zeros = centred == 0
    if zeros.any():
        centred[zeros] = centred[~zeros].min()
        LOGGER.warning("Replaced %d zero size factors with the smallest positive factor", int(zeros.sum()))
    return centred


def log_norm_counts(mat: sp.csc_matrix, size_factors: np.ndarray) -> sp.csc_matrix:
    """log2(count / size_factor + 1), keeping sparsity."""
    mat = sp.csc_matrix(mat, dtype=np.float64, copy=True)
    size_factors = np.asarray(size_factors, dtype=np.float64)
    if size_factors.shape[0] != mat.shape[1]:
        raise KernelError(
            "SizeFactorLengthMismatch",
            "length of size factors should equal the number of cells",
            expected=mat.shape[1],
            observed=size_factors.shape[0],
        )
    columns = np.repeat(np.arange(mat.shape[1]), np.diff(mat.indptr))
    mat.data = np.log2(mat.data / size_factors[columns] + 1)
    return mat


# ---------------------------------------------------------------------
# Variance modelling
# ---------------------------------------------------------------------
def _row_mean_var(mat: sp.csc_matrix, cols: np.ndarray):
    sub = mat[:, cols]
    n = sub.shape[1]
    means = np.asarray(sub.mean(axis=1)).ravel()
    if n < 2:
        return means, np.zeros_like(means)
    sq = np.asarray(sub.multiply(sub).mean(axis=1)).ravel()
    variances = (sq - means ** 2) * n / (n - 1)
    return means, np.maximum(variances, 0)


def fit_trend(means: np.ndarray, variances: np.ndarray, span: float) -> np.ndarray:
    """LOWESS trend of variance on mean with tricube weights; fitted values at every point."""
    if means.size < 3:
        return variances.copy()
    delta = 0.01 * float(np.ptp(means))
    fitted = lowess(variances, means, frac=span, it=3, delta=delta, return_sorted=False)
    fitted = np.asarray(fitted, dtype=np.float64)
    return np.where(np.isfinite(fitted), np.maximum(fitted, 0), 0)


def model_gene_var(lognorm: sp.csc_matrix, span: float = 0.3, block: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
    """Per-feature means, variances, fitted trend and residuals, averaged over blocks."""
    ngenes = lognorm.shape[0]
    groups = [g for g in block_groups(block, lognorm.shape[1]) if g.size > 0]

    stats = {k: np.zeros(ngenes, dtype=np.float64) for k in ("means", "variances", "fitted", "residuals")}
    for g in groups:
        means, variances = _row_mean_var(lognorm, g)
        fitted = fit_trend(means, variances, span)
        stats["means"] += means
        stats["variances"] += variances
        stats["fitted"] += fitted
        stats["residuals"] += variances - fitted

    for k in stats:
        stats[k] /= max(len(groups), 1)
    return stats


def choose_hvgs(residuals: np.ndarray, num_hvgs: int) -> np.ndarray:
    """u8 mask of the top ``num_hvgs`` residuals, via the cutoff at ``len - num_hvgs`` of the sorted values."""
    n = residuals.shape[0]
    mask = np.zeros(n, dtype=np.uint8)
    if num_hvgs <= 0 or n == 0:
        return mask
    if num_hvgs >= n:
        mask[:] = 1
        return mask
    cutoff = np.sort(residuals)[n - num_hvgs]
    mask[residuals >= cutoff] = 1
    return mask


# ---------------------------------------------------------------------
# PCA
# ---------------------------------------------------------------------
def _block_centre(x: np.ndarray, block: np.ndarray) -> np.ndarray:
    out = x.copy()
    for g in block_groups(block, x.shape[0]):
        if g.size:
            out[g] -= out[g].mean(axis=0)
    return out


def run_pca(
    lognorm: sp.csc_matrix,
    features: Optional[np.ndarray] = None,
    num_pcs: int = 20,
    block: Optional[np.ndarray] = None,
    block_method: str = "none",
    random_state: int = 0,
) -> Dict[str, object]:
    """
    PCA over the selected rows of a features x cells matrix.

    Returns ``pcs`` (cells x k), ``variance_explained`` and ``total_variance``.
    """
    if block_method == "weight":
        block_method = "project"
    if block_method not in PCA_BLOCK_METHODS:
        raise PcaError(
            "UnknownBlockMethod",
            f"unknown PCA block method '{block_method}'. Available: {', '.join(PCA_BLOCK_METHODS)}",
            block_method=block_method,
        )

    mat = lognorm if features is None else lognorm[np.flatnonzero(features), :]
    x = np.asarray(mat.T.toarray(), dtype=np.float64)
    ncells, nfeatures = x.shape

    k = min(int(num_pcs), min(ncells, nfeatures) - 1)
    if k < int(num_pcs):
        LOGGER.warning("Capping number of PCs from %d to %d", num_pcs, max(k, 1))
    k = max(k, 1)

    if block is None or block_method == "none":
        pca = PCA(n_components=k, random_state=random_state)
        pcs = pca.fit_transform(x)
        centred = x - x.mean(axis=0)
    elif block_method == "regress":
        centred = _block_centre(x, block)
        pca = PCA(n_components=k, random_state=random_state)
        pcs = pca.fit_transform(centred)
    else:
        centred = _block_centre(x, block)
        weights = np.empty(ncells, dtype=np.float64)
        groups = [g for g in block_groups(block, ncells) if g.size]
        for g in groups:
            weights[g] = np.sqrt(ncells / (len(groups) * g.size))
        pca = PCA(n_components=k, random_state=random_state)
        pca.fit(centred * weights[:, None])
        pcs = (centred - pca.mean_) @ pca.components_.T

    total = float(np.sum(centred.var(axis=0, ddof=1))) if ncells > 1 else 0.0
    return {
        "pcs": np.ascontiguousarray(pcs, dtype=np.float64),
        "variance_explained": np.asarray(pca.explained_variance_, dtype=np.float64),
        "total_variance": total,
    }


# ---------------------------------------------------------------------
# Embedding combination
# ---------------------------------------------------------------------
def median_neighbor_distance(x: np.ndarray, k: int = SCALE_NEIGHBORS, approximate: bool = True) -> float:
    index = NeighborSearchIndex(x, approximate=approximate)
    _, dist = index.find_nearest_neighbors(k)
    if dist.shape[1] == 0:
        return 0.0
    return float(np.median(dist[:, -1]))


def scale_by_neighbors(
    embeddings: Sequence[np.ndarray],
    weights: Optional[Sequence[float]] = None,
    approximate: bool = True,
) -> np.ndarray:
    """
    Concatenate embeddings (cells x dims each) after scaling each by
    weight / median distance to its k-th nearest neighbour.
    """
    ncells = embeddings[0].shape[0]
    for i, e in enumerate(embeddings):
        if e.shape[0] != ncells:
            raise CombineError(
                "ShapeMismatch",
                "all embeddings should have the same number of cells",
                position=i,
                expected=ncells,
                observed=e.shape[0],
            )
    if weights is None:
        weights = [1.0] * len(embeddings)

    scaled = []
    for e, w in zip(embeddings, weights):
        dist = median_neighbor_distance(e, approximate=approximate)
        factor = float(w) / dist if dist > 0 else float(w)
        scaled.append(e * factor)

    return np.concatenate(scaled, axis=1)


# ---------------------------------------------------------------------
# MNN correction
# ---------------------------------------------------------------------
def _mnn_pairs(reference: np.ndarray, target: np.ndarray, k: int, approximate: bool):
    ref_index = NeighborSearchIndex(reference, approximate=approximate)
    tgt_index = NeighborSearchIndex(target, approximate=approximate)
    t2r, _ = ref_index.query(target, k)
    r2t, _ = tgt_index.query(reference, k)

    ref_neighbors = [set(row.tolist()) for row in r2t]
    pairs_t, pairs_r = [], []
    for t, row in enumerate(t2r):
        for r in row.tolist():
            if t in ref_neighbors[r]:
                pairs_t.append(t)
                pairs_r.append(r)
    return np.asarray(pairs_t, dtype=np.int64), np.asarray(pairs_r, dtype=np.int64)


def mnn_correct(x: np.ndarray, block: np.ndarray, num_neighbors: int = 15, approximate: bool = True) -> np.ndarray:
    """
    Mutual-nearest-neighbour correction of a cells x dims embedding.

    Blocks are merged into the reference in decreasing order of size. Each
    target cell moves by the average correction vector of its nearest
    MNN-paired target cells.
    """
    x = np.asarray(x, dtype=np.float64)
    corrected = x.copy()
    groups = [g for g in block_groups(block, x.shape[0]) if g.size]
    if len(groups) < 2:
        return corrected

    order = sorted(range(len(groups)), key=lambda b: (-groups[b].size, b))
    reference = groups[order[0]]
    for b in order[1:]:
        target = groups[b]
        ref_x, tgt_x = corrected[reference], corrected[target]
        pairs_t, pairs_r = _mnn_pairs(ref_x, tgt_x, num_neighbors, approximate)

        if pairs_t.size == 0:
            LOGGER.warning("No MNN pairs for block %d; shifting by the centroid difference", b)
            corrected[target] = tgt_x + (ref_x.mean(axis=0) - tgt_x.mean(axis=0))
        else:
            paired = np.unique(pairs_t)
            vectors = np.zeros((paired.size, x.shape[1]), dtype=np.float64)
            position = {t: i for i, t in enumerate(paired.tolist())}
            counts = np.zeros(paired.size, dtype=np.float64)
            for t, r in zip(pairs_t.tolist(), pairs_r.tolist()):
                vectors[position[t]] += ref_x[r] - tgt_x[t]
                counts[position[t]] += 1
            vectors /= counts[:, None]

            paired_index = NeighborSearchIndex(tgt_x[paired], approximate=approximate)
            nearest, _ = paired_index.query(tgt_x, min(num_neighbors, paired.size))
            corrected[target] = tgt_x + vectors[nearest].mean(axis=1)

        reference = np.sort(np.concatenate([reference, target]))
        LOGGER.info("MNN merged block %d (%d cells, %d pairs)", b, target.size, pairs_t.size)

    return corrected


# ---------------------------------------------------------------------
# ADT composition bias
# ---------------------------------------------------------------------
def _median_ratios(counts: np.ndarray, profile: np.ndarray) -> np.ndarray:
    """Per-cell median of count / profile over features with a positive profile (cells x features)."""
    usable = profile > 0
    if not usable.any():
        return np.zeros(counts.shape[0], dtype=np.float64)
    return np.median(counts[:, usable] / profile[usable], axis=1)


def quick_adt_size_factors(
    mat: sp.csc_matrix,
    totals: np.ndarray,
    block: Optional[np.ndarray] = None,
    num_pcs: int = 25,
    num_clusters: int = 20,
    random_state: int = 0,
) -> np.ndarray:
    """
    Composition-bias size factors for ADT counts: cluster the cells on
    log-normalised PCs, take median ratios against each cluster's average
    profile, then rescale each cluster by its profile's median ratio to the
    global profile. The result is not yet centred.
    """
    ncells = mat.shape[1]
    lib = center_size_factors(totals, block)
    lognorm = log_norm_counts(mat, lib)
    pcs = run_pca(lognorm, num_pcs=num_pcs, random_state=random_state)["pcs"]

    nclusters = max(1, min(int(num_clusters), ncells))
    labels = KMeans(n_clusters=nclusters, n_init=10, random_state=random_state).fit_predict(pcs)

    dense = np.asarray(mat.T.toarray(), dtype=np.float64)
    global_profile = dense.mean(axis=0)
    factors = np.empty(ncells, dtype=np.float64)
    for c in np.unique(labels):
        cells = np.flatnonzero(labels == c)
        profile = dense[cells].mean(axis=0)
        within = _median_ratios(dense[cells], profile)
        scale = float(_median_ratios(profile[None, :], global_profile)[0])
        factors[cells] = within * (scale if scale > 0 else 1.0)

    fallback = factors <= 0
    if fallback.any():
        factors[fallback] = lib[fallback]
        LOGGER.warning("Using library size factors for %d ADT cells with zero median ratio", int(fallback.sum()))
    return factors
