from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class StoreError(Exception):
    code = "error"


class ValidationError(StoreError):
    code = "validation"


class InvalidAccessType(ValidationError):
    code = "invalid_access_type"


class DuplicateEntry(StoreError):
    code = "duplicate"


class NotFound(StoreError):
    code = "not_found"


class LockTimeout(StoreError):
    """The exclusive lock could not be acquired in time. Safe to retry."""

    code = "lock_timeout"


class CorruptSnapshot(StoreError):
    code = "corrupt_snapshot"


class WriteFailure(StoreError):
    """The snapshot could not be committed; the mutation did not take effect."""

    code = "write_failure"


@dataclass
class Result:
    """
    Uniform envelope returned by every store operation.

    `error` is one of the StoreError codes on failure; callers map it to
    transport status codes.
    """

    success: bool
    message: str
    data: Any = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, message: str, data: Any = None, warnings: list[str] | None = None) -> "Result":
        return cls(True, message, data, None, list(warnings or []))

    @classmethod
    def fail(cls, exc: StoreError | str, message: str | None = None, warnings: list[str] | None = None) -> "Result":
        if isinstance(exc, StoreError):
            return cls(False, message or str(exc), None, exc.code, list(warnings or []))
        return cls(False, message or exc, None, exc, list(warnings or []))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        if self.error:
            out["error"] = self.error
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out
