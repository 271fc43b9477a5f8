"""
Structured encodings for parameter snapshots and index files.

Two interchangeable formats, picked by preference.output_data_format:
JSON (json module) and YAML (pyyaml). Both store the same plain-Python tree
produced by to_plain(); numpy arrays become nested lists.
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict

import numpy as np
import yaml

SUPPORTED_FORMATS = ("json", "yaml")


def to_plain(obj: Any) -> Any:
    """Convert numpy containers/scalars into JSON/YAML-representable Python types."""
    if obj is None or isinstance(obj, (str, bool, int, float)):
        return obj
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, (list, tuple)):
        return [to_plain(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): to_plain(v) for k, v in obj.items()}
    raise TypeError(f"cannot serialize object of type {type(obj).__name__}")


def format_from_path(path: str) -> str:
    ext = os.path.splitext(path)[1].lower().lstrip(".")
    if ext == "yml":
        ext = "yaml"
    if ext not in SUPPORTED_FORMATS:
        raise ValueError(f"unsupported data format '.{ext}' for '{path}', expected one of {SUPPORTED_FORMATS}")
    return ext


def save_data(path: str, data: Dict[str, Any], fmt: str | None = None) -> None:
    """Write a dict tree to path; the format defaults to the file extension."""
    fmt = fmt or format_from_path(path)
    plain = to_plain(data)
    with open(path, "w") as f:
        if fmt == "json":
            json.dump(plain, f, indent=2)
        elif fmt == "yaml":
            yaml.safe_dump(plain, f, sort_keys=False)
        else:
            raise ValueError(f"unsupported data format '{fmt}'")


def load_data(path: str, fmt: str | None = None) -> Dict[str, Any]:
    fmt = fmt or format_from_path(path)
    with open(path) as f:
        if fmt == "json":
            return json.load(f)
        if fmt == "yaml":
            return yaml.safe_load(f) or {}
    raise ValueError(f"unsupported data format '{fmt}'")
