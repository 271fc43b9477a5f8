"""
Explicit result values for pipeline operations.

Stage operations return a Status instead of raising; the top-level run loop
in ctcalib.app decides whether to abort or continue. Only contract misuse
(e.g. querying a world pose without a position spline) raises, through
CalibUsageError, and the run loop converts it into a fatal Status.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict


class StatusKind(enum.Enum):
    OK = "ok"
    WARNING = "warning"
    FATAL = "fatal"


class FailureCategory(enum.Enum):
    NONE = "none"
    CONFIGURATION = "configuration"
    DATA = "data"
    USAGE = "usage"
    IO = "io"


class CalibUsageError(RuntimeError):
    """Raised when an API is called in a configuration where it has no meaning."""


@dataclass(frozen=True)
class Status:
    """Outcome of one pipeline operation."""

    kind: StatusKind = StatusKind.OK
    category: FailureCategory = FailureCategory.NONE
    what: str = ""

    @classmethod
    def ok(cls) -> "Status":
        return cls()

    @classmethod
    def warning(cls, what: str, category: FailureCategory = FailureCategory.DATA) -> "Status":
        return cls(StatusKind.WARNING, category, what)

    @classmethod
    def fatal(cls, what: str, category: FailureCategory) -> "Status":
        if category is FailureCategory.NONE:
            raise ValueError("fatal status requires a failure category")
        return cls(StatusKind.FATAL, category, what)

    @property
    def is_ok(self) -> bool:
        return self.kind is StatusKind.OK

    @property
    def is_fatal(self) -> bool:
        return self.kind is StatusKind.FATAL

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "category": self.category.value, "what": self.what}

    def __str__(self) -> str:
        if self.is_ok:
            return "ok"
        return f"[{self.kind.value}/{self.category.value}] {self.what}"
