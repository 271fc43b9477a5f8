"""
Configuration, status values, constants and SO(3)/SE(3) helpers shared by
the sensors, calib and reconstruction subpackages.
"""

from ctcalib.common.status import CalibUsageError, FailureCategory, Status, StatusKind

__all__ = [
    "CalibUsageError",
    "FailureCategory",
    "Status",
    "StatusKind",
]
