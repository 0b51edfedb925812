import gzip
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from sckana.errors import ReaderError
from sckana.io_utils import (
    H5adDataset,
    TenxMatrixMarketDataset,
    dataset_from_path,
    fetch_mito_list,
    flush_mito_lists,
    load_serialized_dataset,
    serialize_datasets,
)


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def write_h5ad(path, ncells=6):
    rng = np.random.default_rng(0)
    var = pd.DataFrame(
        {"feature_types": ["Gene Expression"] * 3 + ["Antibody Capture"] * 2},
        index=["g1", "g2", "g3", "CD3", "CD4"],
    )
    obs = pd.DataFrame({"donor": ["x", "y"] * (ncells // 2)}, index=[f"c{i}" for i in range(ncells)])
    adata = ad.AnnData(X=sp.csr_matrix(rng.poisson(4.0, size=(ncells, 5)).astype(np.float32)), obs=obs, var=var)
    adata.write_h5ad(path)
    return adata


# -------------------------------------------------------------------------
# Readers
# -------------------------------------------------------------------------
def test_h5ad_modalities(tmp_path):
    path = tmp_path / "pbmc.h5ad"
    adata = write_h5ad(path)

    handle = dataset_from_path(path)
    assert isinstance(handle, H5adDataset)
    loaded = handle.load()

    assert loaded.matrix.available() == ["RNA", "ADT"]
    assert loaded.matrix.get("RNA").shape == (3, 6)
    assert list(loaded.features["ADT"].index) == ["CD3", "CD4"]
    assert loaded.primary_ids["RNA"] == ["g1", "g2", "g3"]
    assert list(loaded.cells["donor"]) == ["x", "y"] * 3
    assert np.array_equal(loaded.matrix.get("RNA").toarray(), adata.X.toarray()[:, :3].T)


def test_load_caches_only_when_asked(tmp_path):
    path = tmp_path / "pbmc.h5ad"
    write_h5ad(path)
    handle = H5adDataset(path)
    first = handle.load(cache=True)
    assert handle.load() is first
    assert handle.load() is not first


def test_abbreviation_tracks_the_file(tmp_path):
    path = tmp_path / "pbmc.h5ad"
    write_h5ad(path)
    assert H5adDataset(path).abbreviate() == H5adDataset(path).abbreviate()

    write_h5ad(path, ncells=8)
    assert H5adDataset(path).abbreviate()["files"][0]["size"] == path.stat().st_size


def test_reader_errors(tmp_path):
    with pytest.raises(ReaderError) as err:
        dataset_from_path(tmp_path / "counts.csv")
    assert err.value.kind == "EReader.UnknownFormat"

    with pytest.raises(ReaderError) as err:
        H5adDataset(tmp_path / "missing.h5ad").load()
    assert err.value.kind == "EReader.FileNotFound"

    assert isinstance(dataset_from_path(tmp_path), TenxMatrixMarketDataset)


def test_serialize_and_restore(tmp_path):
    path = tmp_path / "pbmc.h5ad"
    write_h5ad(path)
    store = {}

    def create_link(fmt, file):
        store[f"link-{len(store)}"] = Path(file).read_bytes()
        return f"link-{len(store) - 1}"

    described = serialize_datasets({"A": H5adDataset(path)}, create_link)
    assert described == [{"name": "A", "format": "H5AD", "files": [{"type": "h5", "id": "link-0"}]}]

    restored = load_serialized_dataset("H5AD", described[0]["files"], store.__getitem__, tmp_path / "restored")
    assert restored.load().matrix.get("ADT").shape == (2, 6)

    with pytest.raises(ReaderError):
        load_serialized_dataset("CSV", described[0]["files"], store.__getitem__, tmp_path)


# -------------------------------------------------------------------------
# Mitochondrial lists
# -------------------------------------------------------------------------
def test_mito_lists_are_cached_until_flushed():
    flush_mito_lists()
    urls = []

    def download(url):
        urls.append(url)
        return gzip.compress(b"ENSMUSG1\nENSMUSG2\n\n")

    assert fetch_mito_list("10090", "ensembl", download) == ["ENSMUSG1", "ENSMUSG2"]
    fetch_mito_list("10090", "ENSEMBL", download)
    assert len(urls) == 1
    assert urls[0].endswith("10090-mito-ensembl.txt.gz")

    flush_mito_lists()
    fetch_mito_list("10090", "ensembl", download)
    assert len(urls) == 2
    flush_mito_lists()
