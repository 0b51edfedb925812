from __future__ import annotations

import gzip
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import h5py
import numpy as np
import pandas as pd
import scipy.sparse as sp

LOGGER = logging.getLogger(__name__)

# A file record is {"metadata": {...}, "contents": Path} for files with a
# payload, or {"metadata": {...}} for documents that are metadata only.
FileRecord = Dict[str, Any]

STRING = h5py.string_dtype(encoding="utf-8")


def _target(directory: Path, rel: str) -> Path:
    out = Path(directory) / rel
    out.parent.mkdir(parents=True, exist_ok=True)
    return out


def _write_strings(group: h5py.Group, name: str, values: Sequence[str]) -> h5py.Dataset:
    return group.create_dataset(name, data=np.array([str(v) for v in values], dtype=object), dtype=STRING)


def _write_scalar_string(group: h5py.Group, name: str, value: str) -> h5py.Dataset:
    return group.create_dataset(name, data=value, dtype=STRING)


# ---------------------------------------------------------------------
# Data frames
# ---------------------------------------------------------------------
def _missing_placeholder(values: Sequence[Any]) -> str:
    present = {v for v in values if isinstance(v, str)}
    placeholder = "NA"
    while placeholder in present:
        placeholder += "_"
    return placeholder


def _write_column(dhandle: h5py.Group, name: str, col: pd.Series) -> str:
    """Write one column as dataset ``name``; returns its declared type."""
    if pd.api.types.is_bool_dtype(col):
        dhandle.create_dataset(name, data=col.to_numpy(dtype=np.uint8))
        return "boolean"
    if pd.api.types.is_integer_dtype(col):
        dhandle.create_dataset(name, data=col.to_numpy(dtype=np.int32))
        return "integer"
    if pd.api.types.is_float_dtype(col):
        dhandle.create_dataset(name, data=col.to_numpy(dtype=np.float64))
        return "number"

    values = col.astype(object).tolist()
    missing = [v is None or (isinstance(v, float) and np.isnan(v)) for v in values]
    if any(missing):
        placeholder = _missing_placeholder(values)
        filled = [placeholder if m else str(v) for v, m in zip(values, missing)]
        ds = _write_strings(dhandle, name, filled)
        ds.attrs["missing-value-placeholder"] = placeholder
    else:
        _write_strings(dhandle, name, values)
    return "string"


def write_hdf5_data_frame(df: pd.DataFrame, path: str, directory: Path, group: str = "data") -> FileRecord:
    """
    Save ``df`` as ``<path>/simple.h5``: column names, optional row names and
    one dataset per column (named by position) under ``<group>/data``.
    """
    rel = f"{path}/simple.h5"
    metadata: Dict[str, Any] = {
        "path": rel,
        "$schema": "hdf5_data_frame/v1.json",
        "data_frame": {"dimensions": [int(df.shape[0]), int(df.shape[1])], "columns": [], "row_names": False},
        "hdf5_data_frame": {"group": group},
    }

    target = _target(directory, rel)
    with h5py.File(target, "w") as fh:
        ghandle = fh.create_group(group)
        _write_strings(ghandle, "column_names", [str(c) for c in df.columns])
        if not isinstance(df.index, pd.RangeIndex):
            metadata["data_frame"]["row_names"] = True
            _write_strings(ghandle, "row_names", [str(i) for i in df.index])

        dhandle = ghandle.create_group("data")
        for i, colname in enumerate(df.columns):
            coltype = _write_column(dhandle, str(i), df.iloc[:, i])
            metadata["data_frame"]["columns"].append({"name": str(colname), "type": coltype})

    return {"metadata": metadata, "contents": target}


# ---------------------------------------------------------------------
# Arrays
# ---------------------------------------------------------------------
def write_sparse_matrix(mat, path: str, directory: Path) -> FileRecord:
    """Counts in the 10x layout: compressed columns (cells) under group ``matrix``."""
    rel = f"{path}/matrix.h5"
    csc = sp.csc_matrix(mat)
    csc.sort_indices()

    target = _target(directory, rel)
    with h5py.File(target, "w") as fh:
        ghandle = fh.create_group("matrix")
        ghandle.create_dataset("data", data=np.rint(csc.data).astype(np.int32), compression="gzip")
        ghandle.create_dataset("indices", data=csc.indices.astype(np.int32), compression="gzip")
        ghandle.create_dataset("indptr", data=csc.indptr.astype(np.int64))
        ghandle.create_dataset("shape", data=np.array(csc.shape, dtype=np.int32))

    return {
        "metadata": {
            "$schema": "hdf5_sparse_matrix/v1.json",
            "path": rel,
            "array": {"dimensions": [int(csc.shape[0]), int(csc.shape[1])], "type": "integer"},
            "hdf5_sparse_matrix": {"group": "matrix", "format": "tenx_matrix"},
        },
        "contents": target,
    }


def _operation(group: h5py.Group, operation: str) -> None:
    group.attrs["delayed_type"] = "operation"
    group.attrs["delayed_operation"] = operation


def write_delayed_logcounts(
    size_factors: np.ndarray,
    shape: Tuple[int, int],
    count_path: str,
    path: str,
    directory: Path,
) -> FileRecord:
    """
    Log-expression as a delayed array over the saved counts:
    ``log1p(counts / size_factors) / log(2)``, nested from the outside in.
    """
    rel = f"{path}/array.h5"
    target = _target(directory, rel)
    with h5py.File(target, "w") as fh:
        log2 = fh.create_group("logcounts")
        _operation(log2, "unary arithmetic")
        log2.create_dataset("value", data=np.float64(np.log(2)))
        _write_scalar_string(log2, "method", "/")
        _write_scalar_string(log2, "side", "right")

        log1p = log2.create_group("seed")
        _operation(log1p, "unary math")
        _write_scalar_string(log1p, "method", "log1p")

        scaled = log1p.create_group("seed")
        _operation(scaled, "unary arithmetic")
        scaled.create_dataset("value", data=np.asarray(size_factors, dtype=np.float64))
        _write_scalar_string(scaled, "method", "/")
        _write_scalar_string(scaled, "side", "right")
        scaled.create_dataset("along", data=np.int32(1))

        seed = scaled.create_group("seed")
        seed.attrs["delayed_type"] = "array"
        seed.attrs["delayed_array"] = "custom alabaster local array"
        seed.create_dataset("dimensions", data=np.array(shape, dtype=np.int32))
        _write_scalar_string(seed, "type", "FLOAT")
        _write_scalar_string(seed, "path", count_path)

    return {
        "metadata": {
            "$schema": "hdf5_delayed_array/v1.json",
            "path": rel,
            "array": {"dimensions": [int(shape[0]), int(shape[1])], "type": "number"},
            "hdf5_delayed_array": {"group": "logcounts"},
        },
        "contents": target,
    }


def write_dense_array(columns: Sequence[np.ndarray], path: str, directory: Path) -> FileRecord:
    """Cells x dims matrix stored as ``data`` of shape (dims, cells), cells fastest."""
    ncells = len(columns[0]) if len(columns) else 0
    for c in columns:
        if len(c) != ncells:
            raise ValueError("all dimensions must have the same length")
    data = np.vstack([np.asarray(c, dtype=np.float64) for c in columns]) if len(columns) else np.zeros((0, 0))

    rel = f"{path}/matrix.h5"
    target = _target(directory, rel)
    with h5py.File(target, "w") as fh:
        fh.create_dataset("data", data=data)

    return {
        "metadata": {
            "$schema": "hdf5_dense_array/v1.json",
            "path": rel,
            "array": {"dimensions": [ncells, len(columns)]},
            "hdf5_dense_array": {"dataset": "data"},
        },
        "contents": target,
    }


# ---------------------------------------------------------------------
# Simple lists
# ---------------------------------------------------------------------
def _homogeneous(values: List[Any], kind) -> bool:
    return all(v is None or (isinstance(v, kind) and not (kind is int and isinstance(v, bool))) for v in values)


def to_simple_list(x: Any) -> Dict[str, Any]:
    """Nested plain data (dicts, lists, numpy arrays, scalars) in the JSON simple-list layout."""
    if isinstance(x, dict):
        return {"type": "list", "values": [to_simple_list(v) for v in x.values()], "names": [str(k) for k in x]}
    if isinstance(x, np.ndarray):
        if x.dtype.kind in "iu":
            return {"type": "integer", "values": [int(v) for v in x.ravel()]}
        if x.dtype.kind == "b":
            return {"type": "boolean", "values": [bool(v) for v in x.ravel()]}
        if x.dtype.kind == "f":
            return {"type": "number", "values": [None if np.isnan(v) else float(v) for v in x.ravel()]}
        return to_simple_list(x.tolist())
    if isinstance(x, (list, tuple)):
        values = list(x)
        if not values:
            return {"type": "list", "values": []}
        if _homogeneous(values, str):
            return {"type": "string", "values": values}
        if _homogeneous(values, bool):
            return {"type": "boolean", "values": values}
        if all(v is None or (isinstance(v, (int, float, np.number)) and not isinstance(v, bool)) for v in values):
            return {"type": "number", "values": [None if v is None else float(v) for v in values]}
        return {"type": "list", "values": [to_simple_list(v) for v in values]}
    if isinstance(x, (bool, np.bool_)):
        return {"type": "boolean", "values": [bool(x)]}
    if isinstance(x, (int, np.integer)):
        return {"type": "integer", "values": [int(x)]}
    if isinstance(x, (float, np.floating)):
        return {"type": "number", "values": [float(x)]}
    if isinstance(x, str):
        return {"type": "string", "values": [x]}
    raise TypeError(f"don't know how to save entry of type '{type(x).__name__}'")


def write_simple_list(x: Any, path: str, directory: Path) -> FileRecord:
    rel = f"{path}/simple.json.gz"
    target = _target(directory, rel)
    encoded = json.dumps(to_simple_list(x), indent=2) + "\n"
    with gzip.open(target, "wt", encoding="utf-8") as fh:
        fh.write(encoded)

    return {
        "metadata": {
            "$schema": "json_simple_list/v1.json",
            "path": rel,
            "simple_list": {"children": []},
            "json_simple_list": {"compression": "gzip"},
        },
        "contents": target,
    }


# ---------------------------------------------------------------------
# Finalisation
# ---------------------------------------------------------------------
def md5sum(path: Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def attach_md5sums(files: List[FileRecord]) -> None:
    for rec in files:
        if rec.get("contents") is not None:
            rec["metadata"]["md5sum"] = md5sum(rec["contents"])


def metadata_path(rec: FileRecord, directory: Path) -> Path:
    """Payload files get a ``.json`` sidecar; redirections are written as ``<path>.json``."""
    rel = rec["metadata"]["path"]
    if rec.get("contents") is not None or rec["metadata"]["$schema"].startswith("redirection/"):
        rel = rel + ".json"
    return Path(directory) / rel


def write_metadata(files: List[FileRecord], directory: Path) -> None:
    for rec in files:
        target = metadata_path(rec, directory)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w") as fh:
            json.dump(rec["metadata"], fh, indent=2)
            fh.write("\n")
    LOGGER.info("Wrote %d metadata document(s) under %s", len(files), directory)


def redirection(name: str, target: str) -> FileRecord:
    return {
        "metadata": {
            "$schema": "redirection/v1.json",
            "path": name,
            "redirection": {"targets": [{"type": "local", "location": target}]},
        }
    }


def local_resource(path: Optional[str]) -> Dict[str, Any]:
    return {"resource": {"type": "local", "path": path}}
