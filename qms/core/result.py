"""Structured outcome of a business operation.

Workflow, delegation, CAPA and task operations never raise for rule
violations; they return an ``OperationResult`` so callers can render the
message to the user and map ``error_code`` to an HTTP status.

Usage:
    res = OperationResult.fail("Delegation.NotAllowed", "Cannot delegate ...")
    if not res.success:
        return jsonify(res.to_dict()), res.http_status
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# error_code suffix → HTTP status; anything unlisted is a 422 rule violation
_STATUS_BY_SUFFIX = {
    "NotFound": 404,
    "Forbidden": 403,
    "NotAllowed": 403,
    "Conflict": 409,
    "Failed": 500,
    "RevokeFailed": 500,
}


def _serialize(value):
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass(frozen=True)
class OperationResult:
    success: bool
    error_code: str | None = None
    message: str | None = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None, message: str | None = None) -> OperationResult:
        return cls(success=True, value=value, message=message)

    @classmethod
    def fail(cls, error_code: str, message: str) -> OperationResult:
        return cls(success=False, error_code=error_code, message=message)

    def __bool__(self) -> bool:
        return self.success

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        suffix = (self.error_code or "").rsplit(".", 1)[-1]
        return _STATUS_BY_SUFFIX.get(suffix, 422)

    def to_dict(self) -> dict:
        if self.success:
            d = {"success": True, "data": _serialize(self.value)}
            if self.message:
                d["message"] = self.message
            return d
        return {"success": False, "error": self.message, "code": self.error_code}
