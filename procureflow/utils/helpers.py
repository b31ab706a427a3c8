"""General helper utilities."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any, Callable

from flask import current_app, jsonify, request
from flask_login import current_user
from flask_wtf.csrf import CSRFError

from procureflow.services.errors import ApprovalEngineError, ConcurrentModificationError, ValidationError

JsonView = Callable[..., Any]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def json_response(payload: Any, status: int = 200):
    """Return a JSON response with status code."""
    return jsonify(payload), status


def to_decimal(value: Any, field: str, allow_none: bool = False) -> Decimal | None:
    """Parse a monetary amount, raising ``ValidationError`` on bad input."""
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(f"'{field}' is required.")
    if isinstance(value, bool):
        raise ValidationError(f"'{field}' must be a number.")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"'{field}' must be a number.") from exc
    if not amount.is_finite():
        raise ValidationError(f"'{field}' must be a finite number.")
    if amount < 0:
        raise ValidationError(f"'{field}' cannot be negative.")
    return amount


def parse_datetime(value: Any, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"'{field}' must be an ISO-8601 timestamp.") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def role_required(*roles):
    """Restrict a route to one or more user roles."""
    def decorator(view_func: JsonView) -> JsonView:
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return json_response({"error": "Authentication required."}, status=401)
            if current_user.role not in roles:
                return json_response({"error": "Insufficient permissions."}, status=403)
            return view_func(*args, **kwargs)

        return wrapped

    return decorator


def retry_on_conflict(func: Callable[..., Any]) -> Callable[..., Any]:
    """Retry an engine call once when it loses an optimistic-lock race."""
    @wraps(func)
    def wrapped(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConcurrentModificationError:
            current_app.logger.info("Retrying %s after concurrent modification", func.__name__)
            return func(*args, **kwargs)

    return wrapped


def register_error_handlers(app) -> None:
    @app.errorhandler(ApprovalEngineError)
    def handle_engine_error(exc: ApprovalEngineError):
        if exc.http_status >= 500:
            app.logger.error("Approval engine failure: %s", exc.message)
        return json_response(exc.to_dict(), status=exc.http_status)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(exc: CSRFError):
        app.logger.warning("Rejected %s %s: %s", request.method, request.path, exc.description)
        return json_response({"error": exc.description, "code": "CSRFError"}, status=400)
