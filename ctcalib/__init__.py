"""
ctcalib: targetless spatiotemporal calibration of multi-sensor platforms.

A single continuous-time trajectory (orientation spline + scale spline) is
fitted to inertial, LiDAR, camera and radar streams read from a recorded log;
per-sensor extrinsics and time offsets are estimated jointly with it.

Subpackages:
- common/: configuration, status values, constants, SE(3) helpers
- sensors/: frame types, per-model message unpackers, log reader
- calib/: data manager, splines, parameter manager, estimator, solver
- reconstruction/: COLMAP export/import bridge for camera bootstrapping
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "CalibConfig",
    "CalibDataManager",
    "CalibParamManager",
    "CalibSolver",
    "Status",
]

_LAZY_ATTRS: dict[str, tuple[str, str | None]] = {
    "CalibConfig": ("ctcalib.common.param_models", "CalibConfig"),
    "Status": ("ctcalib.common.status", "Status"),
    "CalibDataManager": ("ctcalib.calib.data_manager", "CalibDataManager"),
    "CalibParamManager": ("ctcalib.calib.param_manager", "CalibParamManager"),
    # The solver pulls in JAX; keep it out of package import time.
    "CalibSolver": ("ctcalib.calib.calib_solver", "CalibSolver"),
}


def __getattr__(name: str) -> Any:
    target = _LAZY_ATTRS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    module = import_module(module_name)
    return module if attr_name is None else getattr(module, attr_name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(_LAZY_ATTRS.keys()))
