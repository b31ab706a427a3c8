"""Error taxonomy for the approval workflow engine."""
from __future__ import annotations


class ApprovalEngineError(Exception):
    """Base class for errors surfaced to engine callers."""

    http_status = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(ApprovalEngineError):
    """No usable rule exists for a transaction; submission must be blocked."""

    http_status = 422


class ValidationError(ApprovalEngineError):
    http_status = 400


class AuthorizationError(ApprovalEngineError):
    """The acting user may not decide the requested action."""

    http_status = 403


class NotFoundError(ApprovalEngineError):
    http_status = 404


class InvalidStateError(ApprovalEngineError):
    http_status = 409


class ConcurrentModificationError(ApprovalEngineError):
    http_status = 409


class AuditWriteFailure(RuntimeError):
    """Raised internally when an audit entry cannot be written. Never surfaced."""
