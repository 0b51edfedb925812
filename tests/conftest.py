import os

# numba's OpenMP threading layer deadlocks at interpreter exit when it was first
# used from a worker thread (real UMAP runs in one); use the workqueue layer.
os.environ.setdefault("NUMBA_THREADING_LAYER", "workqueue")

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from sckana import viz_utils
from sckana.io_utils import InMemoryDataset


# -------------------------------------------------------------------------
# Synthetic data
# -------------------------------------------------------------------------
def make_clustered_counts(n_per_group=20, n_groups=3, n_genes=40, seed=0):
    """genes x cells Poisson counts with five marker genes per group."""
    rng = np.random.default_rng(seed)
    ncells = n_per_group * n_groups
    counts = rng.poisson(2.0, size=(n_genes, ncells))
    for g in range(n_groups):
        rows = slice(2 + g * 5, 2 + g * 5 + 5)
        cols = slice(g * n_per_group, (g + 1) * n_per_group)
        counts[rows, cols] += rng.poisson(15.0, size=(5, n_per_group))
    return sp.csc_matrix(counts)


def gene_table(n_genes):
    # first two genes are mitochondrial by prefix
    names = ["mt-a", "mt-b"] + [f"gene_{i}" for i in range(2, n_genes)]
    return pd.DataFrame({"symbol": names}, index=names)


def make_rna_dataset(n_per_group=20, n_groups=3, n_genes=40, seed=0, cells=None):
    mat = make_clustered_counts(n_per_group, n_groups, n_genes, seed)
    return InMemoryDataset({"RNA": mat}, features={"RNA": gene_table(n_genes)}, cells=cells)


def make_rna_adt_dataset(n_per_group=20, n_groups=3, n_genes=40, seed=0):
    """RNA plus eight ADT tags, two of them IgG controls; tag g+2 marks group g."""
    rng = np.random.default_rng(seed + 100)
    ncells = n_per_group * n_groups
    tags = ["IgG1", "IgG2a"] + [f"CD{i}" for i in range(6)]
    adt = rng.poisson(20.0, size=(len(tags), ncells))
    adt[:2] = rng.poisson(5.0, size=(2, ncells))
    for g in range(n_groups):
        adt[2 + g, g * n_per_group:(g + 1) * n_per_group] += rng.poisson(60.0, size=n_per_group)

    matrices = {"RNA": make_clustered_counts(n_per_group, n_groups, n_genes, seed), "ADT": sp.csc_matrix(adt)}
    features = {"RNA": gene_table(n_genes), "ADT": pd.DataFrame({"name": tags}, index=tags)}
    return InMemoryDataset(matrices, features=features)


# Parameters that keep the full pipeline small, offline and deterministic.
SMALL_PARAMETERS = {
    "rna_quality_control": {"use_reference_mito": False},
    "rna_pca": {"num_hvgs": 30, "num_pcs": 5},
    "neighbor_index": {"approximate": False},
    "snn_graph_cluster": {"k": 5},
    "kmeans_cluster": {"k": 3},
    "tsne": {"perplexity": 5, "iterations": 250},
    "umap": {"num_neighbors": 5, "num_epochs": 50},
}


def small_parameters(**overrides):
    params = {k: dict(v) for k, v in SMALL_PARAMETERS.items()}
    for step, values in overrides.items():
        params.setdefault(step, {}).update(values)
    return params


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------
@pytest.fixture
def rna_dataset():
    return make_rna_dataset()


@pytest.fixture
def fake_embeddings(monkeypatch):
    """Replace t-SNE/UMAP with instant runners; returns the list of calls."""
    calls = []

    def fake(kind):
        def runner(neighbors, *args, animate=False, interval=100, on_frame=None, **kwargs):
            calls.append({"kind": kind, "args": args, "neighbors": neighbors, "animate": animate})
            n = neighbors["indices"].shape[0]
            x = np.arange(n, dtype=np.float64)
            if on_frame is not None:
                on_frame(x * 0.5, x * 0.5, interval)
            return x, -x
        return runner

    monkeypatch.setattr(viz_utils, "run_tsne", fake("tsne"))
    monkeypatch.setattr(viz_utils, "run_umap", fake("umap"))
    return calls
