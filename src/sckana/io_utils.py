from __future__ import annotations

import gzip
import hashlib
import io
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from .errors import InputsError, ReaderError
from .matrices import MultiMatrix

LOGGER = logging.getLogger(__name__)

# 10x feature_types -> modality name
FEATURE_TYPE_MODALITIES = {
    "Gene Expression": "RNA",
    "Antibody Capture": "ADT",
    "CRISPR Guide Capture": "CRISPR",
}

MITO_LIST_BASE_URL = "https://github.com/kanaverse/kana-special-features/releases/download/v1.0.0"


@dataclass
class LoadedDataset:
    """What a dataset handle hands to the inputs step."""

    matrix: MultiMatrix
    features: Dict[str, pd.DataFrame]
    primary_ids: Dict[str, List[str]]
    cells: pd.DataFrame = field(default_factory=pd.DataFrame)

    def num_cells(self) -> int:
        return self.matrix.num_columns()


# -------------------------------------------------------------------------
# Shared helpers
# -------------------------------------------------------------------------
def _split_modalities(adata: ad.AnnData, feature_type_column: str, primary_id_column: Optional[str]) -> LoadedDataset:
    """Split a cells x features AnnData into per-modality feature x cell matrices."""
    var = adata.var.copy()
    if feature_type_column in var.columns:
        types = var[feature_type_column].astype(str).map(lambda t: FEATURE_TYPE_MODALITIES.get(t, t))
    else:
        types = pd.Series("RNA", index=var.index)

    X = adata.X
    if not sp.issparse(X):
        X = sp.csr_matrix(X)
    X = sp.csc_matrix(X.T)

    matrix = MultiMatrix()
    features: Dict[str, pd.DataFrame] = {}
    primary: Dict[str, List[str]] = {}
    for modality in pd.unique(types):
        rows = np.flatnonzero((types == modality).to_numpy())
        table = var.iloc[rows].copy()
        if primary_id_column is not None:
            if primary_id_column not in table.columns:
                raise ReaderError(
                    "MissingColumn",
                    f"Primary id column '{primary_id_column}' not found. Available: {list(table.columns)}",
                    column=primary_id_column,
                )
            ids = table[primary_id_column].astype(str).tolist()
        else:
            ids = [str(x) for x in table.index]
        matrix.add(modality, X[rows, :])
        features[modality] = table
        primary[modality] = ids

    cells = adata.obs.copy()
    cells.index = pd.RangeIndex(cells.shape[0])
    return LoadedDataset(matrix=matrix, features=features, primary_ids=primary, cells=cells)


def _file_summary(path: Path) -> Dict[str, object]:
    path = Path(path)
    if path.is_dir():
        return {"name": path.name, "size": sum(p.stat().st_size for p in sorted(path.iterdir()) if p.is_file())}
    return {"name": path.name, "size": path.stat().st_size}


# -------------------------------------------------------------------------
# Dataset handles
# -------------------------------------------------------------------------
class DatasetHandle:
    """
    Reader contract: ``format()``, ``abbreviate()``, ``load(cache=False)`` and
    ``serialize()``. Two handles with equal abbreviations load equal content.
    """

    format_name = "abstract"

    def __init__(self) -> None:
        self._loaded: Optional[LoadedDataset] = None

    def format(self) -> str:
        return self.format_name

    def abbreviate(self) -> Dict[str, object]:
        raise NotImplementedError

    def _load(self) -> LoadedDataset:
        raise NotImplementedError

    def load(self, cache: bool = False) -> LoadedDataset:
        if self._loaded is not None:
            out = self._loaded
        else:
            LOGGER.info("Loading %s dataset", self.format())
            out = self._load()
        self._loaded = out if cache else None
        return out

    def clear(self) -> None:
        self._loaded = None

    def serialize(self) -> List[Dict[str, str]]:
        raise NotImplementedError


class _FileDataset(DatasetHandle):
    file_type = "file"

    def __init__(self, path, feature_type_column: str = "feature_types", primary_id_column: Optional[str] = None) -> None:
        super().__init__()
        self.path = Path(path)
        self.feature_type_column = feature_type_column
        self.primary_id_column = primary_id_column

    def abbreviate(self) -> Dict[str, object]:
        return {
            "format": self.format(),
            "files": [_file_summary(self.path)],
            "options": {
                "feature_type_column": self.feature_type_column,
                "primary_id_column": self.primary_id_column,
            },
        }

    def serialize(self) -> List[Dict[str, str]]:
        return [{"type": self.file_type, "file": str(self.path)}]

    def _read(self) -> ad.AnnData:
        raise NotImplementedError

    def _load(self) -> LoadedDataset:
        if not self.path.exists():
            raise ReaderError("FileNotFound", f"Input not found: {self.path}", path=str(self.path))
        adata = self._read()
        adata.var_names_make_unique()
        return _split_modalities(adata, self.feature_type_column, self.primary_id_column)


class H5adDataset(_FileDataset):
    format_name = "H5AD"
    file_type = "h5"

    def _read(self) -> ad.AnnData:
        return ad.read_h5ad(self.path)


class TenxHdf5Dataset(_FileDataset):
    format_name = "10X"
    file_type = "h5"

    def __init__(self, path, feature_type_column: str = "feature_types", primary_id_column: Optional[str] = "gene_ids") -> None:
        super().__init__(path, feature_type_column, primary_id_column)

    def _read(self) -> ad.AnnData:
        return sc.read_10x_h5(str(self.path), gex_only=False)


class TenxMatrixMarketDataset(_FileDataset):
    format_name = "MatrixMarket"
    file_type = "directory"

    def __init__(self, path, feature_type_column: str = "feature_types", primary_id_column: Optional[str] = "gene_ids") -> None:
        super().__init__(path, feature_type_column, primary_id_column)

    def _read(self) -> ad.AnnData:
        return sc.read_10x_mtx(str(self.path), var_names="gene_symbols", gex_only=False)


class InMemoryDataset(DatasetHandle):
    """
    Dataset built from objects already in memory.

    ``matrices`` maps modality -> feature x cell count matrix; ``features`` maps
    modality -> feature table (the index is used as primary id unless
    ``primary`` names a column for that modality).
    """

    format_name = "in-memory"

    def __init__(
        self,
        matrices: Dict[str, object],
        features: Optional[Dict[str, pd.DataFrame]] = None,
        cells: Optional[pd.DataFrame] = None,
        primary: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__()
        self.matrices = {k: sp.csc_matrix(v) for k, v in matrices.items()}
        self.features = {}
        for k, mat in self.matrices.items():
            table = (features or {}).get(k)
            if table is None:
                table = pd.DataFrame(index=[f"{k}_{i}" for i in range(mat.shape[0])])
            if table.shape[0] != mat.shape[0]:
                raise InputsError(
                    "FeatureCountMismatch",
                    f"feature table for '{k}' has {table.shape[0]} rows, matrix has {mat.shape[0]}",
                    modality=k,
                )
            self.features[k] = table
        self.cells = cells
        self.primary = primary or {}
        self._digest: Optional[str] = None

    def _fingerprint(self) -> str:
        if self._digest is None:
            h = hashlib.md5()
            for k in sorted(self.matrices):
                mat = self.matrices[k]
                h.update(k.encode())
                h.update(np.asarray(mat.shape, dtype=np.int64).tobytes())
                for arr in (mat.indptr, mat.indices, mat.data):
                    h.update(np.ascontiguousarray(arr).tobytes())
                table = self.features[k]
                h.update(pd.util.hash_pandas_object(table.reset_index(), index=False).to_numpy().tobytes())
            if self.cells is not None and self.cells.shape[1] > 0:
                h.update(pd.util.hash_pandas_object(self.cells, index=False).to_numpy().tobytes())
            self._digest = h.hexdigest()
        return self._digest

    def abbreviate(self) -> Dict[str, object]:
        return {
            "format": self.format(),
            "modalities": {k: list(v.shape) for k, v in self.matrices.items()},
            "md5": self._fingerprint(),
        }

    def _load(self) -> LoadedDataset:
        matrix = MultiMatrix(self.matrices)
        primary = {}
        for k, table in self.features.items():
            column = self.primary.get(k)
            if column is None:
                primary[k] = [str(x) for x in table.index]
            else:
                primary[k] = table[column].astype(str).tolist()

        cells = self.cells
        if cells is None:
            cells = pd.DataFrame(index=pd.RangeIndex(matrix.num_columns()))
        elif cells.shape[0] != matrix.num_columns():
            raise InputsError(
                "CellCountMismatch",
                f"cell annotations have {cells.shape[0]} rows for {matrix.num_columns()} cells",
                expected=matrix.num_columns(),
                observed=cells.shape[0],
            )
        cells = cells.reset_index(drop=True)
        return LoadedDataset(matrix=matrix, features=dict(self.features), primary_ids=primary, cells=cells)

    def serialize(self) -> List[Dict[str, str]]:
        raise ReaderError("Unserializable", "in-memory datasets cannot be serialized")


READERS: Dict[str, Callable[..., DatasetHandle]] = {
    H5adDataset.format_name: H5adDataset,
    TenxHdf5Dataset.format_name: TenxHdf5Dataset,
    TenxMatrixMarketDataset.format_name: TenxMatrixMarketDataset,
}


def dataset_from_path(path) -> DatasetHandle:
    """Pick a reader from the path: .h5ad, .h5 (10x) or a 10x MatrixMarket directory."""
    path = Path(path)
    if path.is_dir():
        return TenxMatrixMarketDataset(path)
    if path.suffix == ".h5ad":
        return H5adDataset(path)
    if path.suffix in (".h5", ".hdf5"):
        return TenxHdf5Dataset(path)
    raise ReaderError(
        "UnknownFormat",
        f"Cannot infer dataset format for {path}. Expected .h5ad, .h5 or a 10x directory.",
        path=str(path),
    )


def serialize_datasets(datasets: Dict[str, DatasetHandle], create_link) -> List[Dict[str, object]]:
    """Register every dataset file through ``create_link`` and describe them."""
    out = []
    for name in sorted(datasets):
        handle = datasets[name]
        files = []
        for f in handle.serialize():
            files.append({"type": f["type"], "id": create_link(handle.format(), f["file"])})
        out.append({"name": name, "format": handle.format(), "files": files})
    return out


def load_serialized_dataset(fmt: str, files: List[Dict[str, str]], resolve_link, workdir: Optional[Path] = None) -> DatasetHandle:
    """Rebuild a dataset handle from link ids; file contents are materialized under ``workdir``."""
    if fmt not in READERS:
        raise ReaderError(
            "UnknownFormat",
            f"Unknown dataset format '{fmt}'. Available: {', '.join(READERS)}",
            format=fmt,
        )
    if len(files) != 1 or files[0]["type"] == "directory":
        raise ReaderError("Unserializable", f"cannot restore '{fmt}' from {len(files)} file(s)", format=fmt)

    workdir = Path(workdir) if workdir is not None else Path(tempfile.mkdtemp(prefix="sckana-"))
    workdir.mkdir(parents=True, exist_ok=True)
    suffix = ".h5ad" if fmt == H5adDataset.format_name else ".h5"
    target = workdir / f"{files[0]['id']}{suffix}".replace("/", "_")
    target.write_bytes(resolve_link(files[0]["id"]))
    return READERS[fmt](target)


# -------------------------------------------------------------------------
# Reference mitochondrial gene lists
# -------------------------------------------------------------------------
_MITO_LISTS: Dict[Tuple[str, str], List[str]] = {}


def flush_mito_lists() -> None:
    """Drop every cached mitochondrial gene list."""
    _MITO_LISTS.clear()


def fetch_mito_list(species: str, id_type: str, download) -> List[str]:
    """
    Mitochondrial genes for one species/id type, cached process-wide.
    ``download(url) -> bytes`` fetches the gzipped one-id-per-line file.
    """
    key = (str(species), id_type.upper())
    if key not in _MITO_LISTS:
        url = f"{MITO_LIST_BASE_URL}/{key[0]}-mito-{key[1].lower()}.txt.gz"
        payload = download(url)
        with gzip.open(io.BytesIO(payload), "rt") as fh:
            _MITO_LISTS[key] = [line.strip() for line in fh if line.strip()]
        LOGGER.info("Cached %d mitochondrial ids for %s/%s", len(_MITO_LISTS[key]), key[0], key[1])
    return _MITO_LISTS[key]
