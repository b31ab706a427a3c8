"""Audit trail and approval-matrix versioning."""
from __future__ import annotations

import enum
import json
import logging
from collections import deque
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from procureflow.models import (
    ApprovalMatrixVersion,
    ApprovalOverride,
    ApprovalRole,
    ApprovalRule,
    ApprovalRuleApprover,
    AuditLog,
    db,
)
from procureflow.services.errors import AuditWriteFailure, NotFoundError
from procureflow.services.rule_resolver import CatalogSnapshot

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _lenient_default(value: Any) -> Any:
    try:
        return _json_default(value)
    except TypeError:
        return repr(value)


def _normalize(values: Optional[Dict[str, Any]], lenient: bool = False) -> Optional[Dict[str, Any]]:
    if values is None:
        return None
    return json.loads(json.dumps(values, default=_lenient_default if lenient else _json_default))


class AuditRecorder:
    """Append-only writer for ``AuditLog`` entries.

    Entries are added to the caller's session so they commit together with the
    state change they describe. A failure to build or stage an entry never
    propagates: it is logged and parked in a retry queue drained by
    ``flush_pending``. Queued values are stored already serialised, with
    ``repr()`` standing in for anything JSON cannot express. An entry whose
    retry still cannot be built moves to ``dead_letters`` so the rest of the
    queue keeps draining.
    """

    def __init__(self) -> None:
        self._pending: Deque[Dict[str, Any]] = deque()
        self._dead_letters: List[Dict[str, Any]] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def dead_letters(self) -> List[Dict[str, Any]]:
        return list(self._dead_letters)

    def reset(self) -> None:
        self._pending.clear()
        self._dead_letters.clear()

    @staticmethod
    def _queueable(payload: Dict[str, Any]) -> Dict[str, Any]:
        queued = dict(payload)
        for key in ("old_values", "new_values"):
            try:
                queued[key] = _normalize(payload.get(key), lenient=True)
            except (TypeError, ValueError):
                queued[key] = {"repr": repr(payload.get(key))}
        return queued

    def _build(self, payload: Dict[str, Any]) -> AuditLog:
        try:
            return AuditLog(
                action=payload["action"],
                entity_type=payload["entity_type"],
                entity_id=str(payload["entity_id"]),
                old_values=_normalize(payload.get("old_values")),
                new_values=_normalize(payload.get("new_values")),
                performed_by=payload.get("performed_by"),
            )
        except (TypeError, ValueError) as exc:
            raise AuditWriteFailure(f"Cannot serialise audit entry '{payload['action']}': {exc}") from exc

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        performed_by: Optional[int] = None,
    ) -> Optional[AuditLog]:
        payload = {
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "old_values": old_values,
            "new_values": new_values,
            "performed_by": performed_by,
        }
        try:
            entry = self._build(payload)
            db.session.add(entry)
            return entry
        except (AuditWriteFailure, SQLAlchemyError) as exc:
            logger.error("Audit write failed for %s %s#%s: %s", action, entity_type, entity_id, exc)
            self._pending.append(self._queueable(payload))
            return None

    def flush_pending(self) -> int:
        """Retry queued entries in their own transaction. Returns entries written.

        A database error stops the drain and leaves the queue intact for the
        next attempt.
        """
        written = 0
        while self._pending:
            payload = self._pending[0]
            try:
                entry = self._build(payload)
            except AuditWriteFailure as exc:
                logger.error("Parking audit entry %s %s#%s: %s", payload["action"], payload["entity_type"],
                             payload["entity_id"], exc)
                self._dead_letters.append(self._pending.popleft())
                continue
            try:
                db.session.add(entry)
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.warning("Audit retry still failing (%s pending): %s", len(self._pending), exc)
                break
            self._pending.popleft()
            written += 1
        if written:
            logger.info("Flushed %s pending audit entries", written)
        return written


audit_recorder = AuditRecorder()


def record_audit(action, entity_type, entity_id, old_values=None, new_values=None, performed_by=None):
    """Module-level shortcut for ``audit_recorder.record``."""
    return audit_recorder.record(action, entity_type, entity_id, old_values, new_values, performed_by)


# Matrix versioning -----------------------------------------------------------


def serialize_catalog() -> Dict[str, Any]:
    """Full catalog as it currently stands in the session (flushed state)."""
    roles = db.session.execute(db.select(ApprovalRole).order_by(ApprovalRole.id)).scalars().all()
    rules = db.session.execute(db.select(ApprovalRule).order_by(ApprovalRule.id)).scalars().all()
    approvers = db.session.execute(
        db.select(ApprovalRuleApprover).order_by(ApprovalRuleApprover.rule_id, ApprovalRuleApprover.sequence_order)
    ).scalars().all()
    overrides = db.session.execute(db.select(ApprovalOverride).order_by(ApprovalOverride.id)).scalars().all()
    return _normalize(
        {
            "roles": [role.to_dict() for role in roles],
            "rules": [rule.to_dict(include_approvers=False) for rule in rules],
            "approvers": [approver.to_dict() for approver in approvers],
            "overrides": [override.to_dict() for override in overrides],
        }
    )


def latest_matrix_version() -> int:
    latest = db.session.execute(db.select(db.func.max(ApprovalMatrixVersion.version_number))).scalar()
    return latest or 0


def snapshot_catalog(change_summary: Optional[str] = None, changed_by: Optional[int] = None) -> ApprovalMatrixVersion:
    """Stage a new immutable matrix version. Committed with the caller's edit."""
    db.session.flush()
    version = ApprovalMatrixVersion(
        version_number=latest_matrix_version() + 1,
        snapshot=serialize_catalog(),
        change_summary=change_summary,
        changed_by=changed_by,
    )
    db.session.add(version)
    return version


def get_matrix_version(version_number: int) -> ApprovalMatrixVersion:
    version = db.session.execute(
        db.select(ApprovalMatrixVersion).filter_by(version_number=version_number)
    ).scalar_one_or_none()
    if version is None:
        raise NotFoundError(f"Approval matrix version {version_number} not found.")
    return version


def catalog_as_of(version_number: int) -> CatalogSnapshot:
    """Rebuild the catalog exactly as it was recorded in a matrix version."""
    version = get_matrix_version(version_number)
    return CatalogSnapshot.from_dict(version.version_number, version.snapshot)


def diff_snapshots(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, list]]:
    """Ids added, removed and changed per catalog section between two snapshots."""
    diff: Dict[str, Dict[str, list]] = {}
    for section in ("roles", "rules", "approvers", "overrides"):
        before = {item["id"]: item for item in old.get(section, [])}
        after = {item["id"]: item for item in new.get(section, [])}
        diff[section] = {
            "added": sorted(after.keys() - before.keys()),
            "removed": sorted(before.keys() - after.keys()),
            "changed": sorted(key for key in before.keys() & after.keys() if before[key] != after[key]),
        }
    return diff
