"""Administrative operations on the approval catalog (roles, rules, approvers, overrides).

Every catalog write bumps the edited entity's ``version``, stages an audit
entry and a full ``ApprovalMatrixVersion`` snapshot, and commits all three
together. Readers only ever see an immutable ``CatalogSnapshot``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from flask import current_app

from procureflow.models import (
    ApprovalCategory,
    ApprovalOverride,
    ApprovalRole,
    ApprovalRule,
    ApprovalRuleApprover,
    Department,
    OverrideType,
    User,
    UserApprovalRole,
    db,
)
from procureflow.services.audit_service import latest_matrix_version, record_audit, serialize_catalog, snapshot_catalog
from procureflow.services.errors import ConcurrentModificationError, NotFoundError, ValidationError
from procureflow.services.rule_resolver import ApproverStep, CatalogSnapshot, OverrideSpec, RoleSpec, RuleSpec
from procureflow.services.transactions import commit_or_conflict, rollback_on_error
from procureflow.utils.helpers import parse_datetime, to_decimal, utcnow

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
_CACHE_KEY = "procureflow_catalog"


@dataclass
class CatalogWrite:
    """Result of a catalog mutation: the entity plus the matrix version it produced."""

    entity: Any
    matrix_version: int

    def to_dict(self, key: str) -> Dict[str, Any]:
        return {
            key: self.entity.to_dict(),
            "version": getattr(self.entity, "version", None),
            "matrix_version": self.matrix_version,
        }


# Snapshot loading ------------------------------------------------------------


def _role_spec(role: ApprovalRole) -> RoleSpec:
    return RoleSpec(
        id=role.id,
        code=role.code,
        name=role.name,
        hierarchy_level=role.hierarchy_level,
        is_active=role.is_active,
    )


def _rule_spec(rule: ApprovalRule) -> RuleSpec:
    return RuleSpec(
        id=rule.id,
        name=rule.name,
        category=rule.category,
        min_amount=rule.min_amount,
        max_amount=rule.max_amount,
        currency=rule.currency,
        department_id=rule.department_id,
        auto_approve_below=rule.auto_approve_below,
        requires_sequential=rule.requires_sequential,
        escalation_hours=rule.escalation_hours,
        is_active=rule.is_active,
        version=rule.version,
        updated_at=rule.updated_at,
        steps=tuple(
            ApproverStep(
                sequence_order=approver.sequence_order,
                approval_role_id=approver.approval_role_id,
                is_mandatory=approver.is_mandatory,
                can_delegate=approver.can_delegate,
            )
            for approver in sorted(rule.approvers, key=lambda item: item.sequence_order)
        ),
    )


def _override_spec(override: ApprovalOverride) -> OverrideSpec:
    return OverrideSpec(
        id=override.id,
        name=override.name,
        override_type=override.override_type,
        category=override.category,
        bypass_levels=override.bypass_set,
        require_justification=override.require_justification,
        max_amount=override.max_amount,
        valid_from=override.valid_from,
        valid_until=override.valid_until,
        is_active=override.is_active,
        version=override.version,
    )


def build_catalog(version_number: int) -> CatalogSnapshot:
    roles = db.session.execute(db.select(ApprovalRole).order_by(ApprovalRole.id)).scalars().all()
    rules = db.session.execute(db.select(ApprovalRule).order_by(ApprovalRule.id)).scalars().all()
    overrides = db.session.execute(db.select(ApprovalOverride).order_by(ApprovalOverride.id)).scalars().all()
    return CatalogSnapshot(
        version_number=version_number,
        rules=tuple(_rule_spec(rule) for rule in rules),
        roles=tuple(_role_spec(role) for role in roles),
        overrides=tuple(_override_spec(override) for override in overrides),
    )


def get_active_catalog() -> CatalogSnapshot:
    """Current catalog snapshot, rebuilt only when the matrix version moves."""
    version_number = latest_matrix_version()
    cached = current_app.extensions.get(_CACHE_KEY)
    if cached is not None and cached.version_number == version_number and version_number:
        return cached
    catalog = build_catalog(version_number)
    current_app.extensions[_CACHE_KEY] = catalog
    return catalog


def invalidate_catalog_cache() -> None:
    current_app.extensions.pop(_CACHE_KEY, None)


def export_matrix() -> Dict[str, Any]:
    return {
        "matrix_version": latest_matrix_version(),
        "exported_at": utcnow().isoformat(),
        "catalog": serialize_catalog(),
    }


def _finish_write(entity_name: str, change_summary: str, performed_by: Optional[int]) -> int:
    version = snapshot_catalog(change_summary=change_summary, changed_by=performed_by)
    commit_or_conflict(entity_name)
    invalidate_catalog_cache()
    logger.info("Approval matrix v%s: %s", version.version_number, change_summary)
    return version.version_number


# Field parsing ---------------------------------------------------------------


def _parse_category(value: Any, allow_none: bool = False) -> Optional[ApprovalCategory]:
    if value in (None, ""):
        if allow_none:
            return None
        raise ValidationError("'category' is required.")
    if isinstance(value, ApprovalCategory):
        return value
    try:
        return ApprovalCategory(str(value).lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported category '{value}'.") from exc


def parse_category(value: Any) -> ApprovalCategory:
    return _parse_category(value)


def parse_currency(value: Any) -> str:
    currency = str(value or "").strip().upper()
    if not CURRENCY_PATTERN.match(currency):
        raise ValidationError(f"Invalid currency code '{value}'.")
    return currency


def _parse_optional_int(value: Any, field: str, minimum: int = 0) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"'{field}' must be an integer.") from exc
    if parsed < minimum:
        raise ValidationError(f"'{field}' must be at least {minimum}.")
    return parsed


def _require(payload: Dict[str, Any], fields: Iterable[str]) -> None:
    if missing := set(fields) - {key for key, value in payload.items() if value not in (None, "")}:
        raise ValidationError(f"Missing fields: {', '.join(sorted(missing))}")


def _get(model, entity_id: Any, label: str):
    entity = db.session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{label} {entity_id} not found.")
    return entity


# Roles -----------------------------------------------------------------------


@rollback_on_error
def create_role(payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    _require(payload, {"code", "name", "hierarchy_level"})
    code = str(payload["code"]).strip().upper()
    if db.session.execute(db.select(ApprovalRole).filter_by(code=code)).scalar_one_or_none():
        raise ValidationError(f"Approval role '{code}' already exists.")
    role = ApprovalRole(
        code=code,
        name=payload["name"],
        description=payload.get("description"),
        hierarchy_level=_parse_optional_int(payload["hierarchy_level"], "hierarchy_level", minimum=1),
        permissions=payload.get("permissions") or {},
        is_active=bool(payload.get("is_active", True)),
    )
    db.session.add(role)
    db.session.flush()
    record_audit("AddRole", "approval_roles", role.id, new_values=role.to_dict(), performed_by=performed_by)
    matrix_version = _finish_write("approval role", f"Added role: {role.code}", performed_by)
    return CatalogWrite(role, matrix_version)


@rollback_on_error
def update_role(role_id: int, payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    role = _get(ApprovalRole, role_id, "Approval role")
    old_values = role.to_dict()
    if "code" in payload and str(payload["code"]).strip().upper() != role.code:
        raise ValidationError("Role codes are immutable once created.")
    for field in ("name", "description", "permissions"):
        if field in payload:
            setattr(role, field, payload[field])
    if "hierarchy_level" in payload:
        role.hierarchy_level = _parse_optional_int(payload["hierarchy_level"], "hierarchy_level", minimum=1)
    if "is_active" in payload:
        role.is_active = bool(payload["is_active"])
    db.session.flush()
    record_audit("EditRole", "approval_roles", role.id, old_values, role.to_dict(), performed_by)
    matrix_version = _finish_write("approval role", f"Updated role: {role.code}", performed_by)
    return CatalogWrite(role, matrix_version)


def deactivate_role(role_id: int, performed_by: Optional[int] = None) -> CatalogWrite:
    return update_role(role_id, {"is_active": False}, performed_by)


# Rules -----------------------------------------------------------------------


def _apply_rule_fields(rule: ApprovalRule, payload: Dict[str, Any]) -> None:
    if "name" in payload:
        rule.name = payload["name"]
    if "category" in payload:
        rule.category = _parse_category(payload["category"])
    if "min_amount" in payload:
        rule.min_amount = to_decimal(payload["min_amount"], "min_amount")
    if "max_amount" in payload:
        rule.max_amount = to_decimal(payload["max_amount"], "max_amount", allow_none=True)
    if "currency" in payload:
        rule.currency = parse_currency(payload["currency"])
    if "department_id" in payload:
        department_id = _parse_optional_int(payload["department_id"], "department_id", minimum=1)
        if department_id is not None:
            _get(Department, department_id, "Department")
        rule.department_id = department_id
    if "auto_approve_below" in payload:
        rule.auto_approve_below = to_decimal(payload["auto_approve_below"], "auto_approve_below", allow_none=True)
    if "requires_sequential" in payload:
        rule.requires_sequential = bool(payload["requires_sequential"])
    if "escalation_hours" in payload:
        rule.escalation_hours = _parse_optional_int(payload["escalation_hours"], "escalation_hours", minimum=1)
    if "conditions" in payload:
        rule.conditions = payload["conditions"] or {}
    if "metadata" in payload:
        rule.extra_data = payload["metadata"] or {}
    if "is_active" in payload:
        rule.is_active = bool(payload["is_active"])


def _validate_rule(rule: ApprovalRule) -> None:
    if rule.max_amount is not None and rule.max_amount <= rule.min_amount:
        raise ValidationError("'max_amount' must be greater than 'min_amount'.")
    if not rule.is_active:
        return
    siblings = db.session.execute(
        db.select(ApprovalRule).filter(
            ApprovalRule.is_active.is_(True),
            ApprovalRule.category == rule.category,
            ApprovalRule.currency == rule.currency,
            ApprovalRule.department_id.is_(None)
            if rule.department_id is None
            else ApprovalRule.department_id == rule.department_id,
        )
    ).scalars().all()
    mine = _rule_spec(rule)
    for sibling in siblings:
        if rule.id is not None and sibling.id == rule.id:
            continue
        if mine.overlaps(_rule_spec(sibling)):
            raise ValidationError(
                f"Amount band overlaps active rule {sibling.id} ('{sibling.name}').",
                conflicting_rule_id=sibling.id,
            )


def _stage_approvers(rule: ApprovalRule, approvers: Iterable[Dict[str, Any]]) -> None:
    seen = {approver.sequence_order for approver in rule.approvers}
    for item in approvers:
        _require(item, {"approval_role_id", "sequence_order"})
        sequence_order = _parse_optional_int(item["sequence_order"], "sequence_order", minimum=1)
        if sequence_order in seen:
            raise ValidationError(f"Sequence order {sequence_order} is already used by this rule.")
        seen.add(sequence_order)
        role = _get(ApprovalRole, item["approval_role_id"], "Approval role")
        rule.approvers.append(
            ApprovalRuleApprover(
                approval_role_id=role.id,
                sequence_order=sequence_order,
                is_mandatory=bool(item.get("is_mandatory", True)),
                can_delegate=bool(item.get("can_delegate", False)),
            )
        )


@rollback_on_error
def create_rule(payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    _require(payload, {"name", "category", "currency"})
    rule = ApprovalRule(min_amount=0, created_by=performed_by, requires_sequential=True, is_active=True)
    _apply_rule_fields(rule, payload)
    _validate_rule(rule)
    _stage_approvers(rule, payload.get("approvers") or [])
    db.session.add(rule)
    db.session.flush()
    record_audit("AddRule", "approval_rules", rule.id, new_values=rule.to_dict(), performed_by=performed_by)
    matrix_version = _finish_write("approval rule", f"Added rule: {rule.name}", performed_by)
    return CatalogWrite(rule, matrix_version)


def _touch_rule(rule: ApprovalRule) -> None:
    # Forces an UPDATE so the version_id_col bumps even for approver-only edits.
    rule.updated_at = utcnow()


@rollback_on_error
def update_rule(rule_id: int, payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    rule = _get(ApprovalRule, rule_id, "Approval rule")
    if "version" in payload and payload["version"] is not None and int(payload["version"]) != rule.version:
        raise ConcurrentModificationError(
            f"Approval rule {rule_id} is at version {rule.version}, not {payload['version']}."
        )
    old_values = rule.to_dict()
    # The overlap query must not flush: an edit is exactly one UPDATE and one version bump.
    with db.session.no_autoflush:
        _apply_rule_fields(rule, payload)
        _validate_rule(rule)
    _touch_rule(rule)
    db.session.flush()
    record_audit("EditRule", "approval_rules", rule.id, old_values, rule.to_dict(), performed_by)
    matrix_version = _finish_write("approval rule", f"Updated rule: {rule.name}", performed_by)
    return CatalogWrite(rule, matrix_version)


@rollback_on_error
def deactivate_rule(rule_id: int, performed_by: Optional[int] = None) -> CatalogWrite:
    rule = _get(ApprovalRule, rule_id, "Approval rule")
    old_values = rule.to_dict()
    rule.is_active = False
    _touch_rule(rule)
    db.session.flush()
    record_audit("DeactivateRule", "approval_rules", rule.id, old_values, rule.to_dict(), performed_by)
    matrix_version = _finish_write("approval rule", f"Deactivated rule: {rule.name}", performed_by)
    return CatalogWrite(rule, matrix_version)


@rollback_on_error
def add_rule_approver(rule_id: int, payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    rule = _get(ApprovalRule, rule_id, "Approval rule")
    old_values = rule.to_dict()
    _stage_approvers(rule, [payload])
    _touch_rule(rule)
    db.session.flush()
    record_audit("AddRuleApprover", "approval_rules", rule.id, old_values, rule.to_dict(), performed_by)
    matrix_version = _finish_write(
        "approval rule", f"Added approver step {payload['sequence_order']} to rule: {rule.name}", performed_by
    )
    return CatalogWrite(rule, matrix_version)


@rollback_on_error
def remove_rule_approver(rule_id: int, approver_id: int, performed_by: Optional[int] = None) -> CatalogWrite:
    rule = _get(ApprovalRule, rule_id, "Approval rule")
    approver = next((item for item in rule.approvers if item.id == approver_id), None)
    if approver is None:
        raise NotFoundError(f"Approver {approver_id} not found on rule {rule_id}.")
    old_values = rule.to_dict()
    rule.approvers.remove(approver)
    _touch_rule(rule)
    db.session.flush()
    record_audit("RemoveRuleApprover", "approval_rules", rule.id, old_values, rule.to_dict(), performed_by)
    matrix_version = _finish_write(
        "approval rule", f"Removed approver step {approver.sequence_order} from rule: {rule.name}", performed_by
    )
    return CatalogWrite(rule, matrix_version)


# Overrides -------------------------------------------------------------------


def _apply_override_fields(override: ApprovalOverride, payload: Dict[str, Any]) -> None:
    if "name" in payload:
        override.name = payload["name"]
    if "override_type" in payload:
        try:
            override.override_type = OverrideType(str(payload["override_type"]).lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported override type '{payload['override_type']}'.") from exc
    if "category" in payload:
        override.category = _parse_category(payload["category"], allow_none=True)
    if "bypass_levels" in payload:
        levels = payload["bypass_levels"] or []
        if not isinstance(levels, (list, tuple, set, frozenset)):
            raise ValidationError("'bypass_levels' must be a list of sequence orders.")
        override.bypass_levels = sorted({_parse_optional_int(level, "bypass_levels", minimum=1) for level in levels})
    if "require_justification" in payload:
        override.require_justification = bool(payload["require_justification"])
    if "max_amount" in payload:
        override.max_amount = to_decimal(payload["max_amount"], "max_amount", allow_none=True)
    if "valid_from" in payload:
        override.valid_from = parse_datetime(payload["valid_from"], "valid_from")
    if "valid_until" in payload:
        override.valid_until = parse_datetime(payload["valid_until"], "valid_until")
    if "conditions" in payload:
        override.conditions = payload["conditions"] or {}
    if "is_active" in payload:
        override.is_active = bool(payload["is_active"])
    if override.valid_from and override.valid_until and override.valid_until < override.valid_from:
        raise ValidationError("'valid_until' must not be earlier than 'valid_from'.")
    if not override.bypass_levels:
        raise ValidationError("An override must bypass at least one level.")


@rollback_on_error
def create_override(payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    _require(payload, {"name", "override_type", "bypass_levels"})
    override = ApprovalOverride(created_by=performed_by, require_justification=True, is_active=True)
    _apply_override_fields(override, payload)
    db.session.add(override)
    db.session.flush()
    record_audit("AddOverride", "approval_overrides", override.id, new_values=override.to_dict(),
                 performed_by=performed_by)
    matrix_version = _finish_write("approval override", f"Added override: {override.name}", performed_by)
    return CatalogWrite(override, matrix_version)


@rollback_on_error
def update_override(override_id: int, payload: Dict[str, Any], performed_by: Optional[int] = None) -> CatalogWrite:
    override = _get(ApprovalOverride, override_id, "Approval override")
    old_values = override.to_dict()
    with db.session.no_autoflush:
        _apply_override_fields(override, payload)
    override.updated_at = utcnow()
    db.session.flush()
    record_audit("EditOverride", "approval_overrides", override.id, old_values, override.to_dict(), performed_by)
    matrix_version = _finish_write("approval override", f"Updated override: {override.name}", performed_by)
    return CatalogWrite(override, matrix_version)


def deactivate_override(override_id: int, performed_by: Optional[int] = None) -> CatalogWrite:
    return update_override(override_id, {"is_active": False}, performed_by)


# Role assignments ------------------------------------------------------------


@rollback_on_error
def assign_user_role(
    user_id: int,
    approval_role_id: int,
    max_approval_amount: Any = None,
    performed_by: Optional[int] = None,
) -> UserApprovalRole:
    """Grant (or re-activate) an approval role for a user. Audited, not versioned."""
    user = _get(User, user_id, "User")
    role = _get(ApprovalRole, approval_role_id, "Approval role")
    assignment = db.session.execute(
        db.select(UserApprovalRole).filter_by(user_id=user.id, approval_role_id=role.id)
    ).scalar_one_or_none()
    old_values = assignment.to_dict() if assignment else None
    if assignment is None:
        assignment = UserApprovalRole(user_id=user.id, approval_role_id=role.id, assigned_by=performed_by)
        db.session.add(assignment)
    assignment.max_approval_amount = to_decimal(max_approval_amount, "max_approval_amount", allow_none=True)
    assignment.is_active = True
    db.session.flush()
    record_audit("AssignApprover", "user_approval_roles", assignment.id, old_values, assignment.to_dict(),
                 performed_by)
    commit_or_conflict("approver assignment")
    return assignment


@rollback_on_error
def revoke_user_role(user_id: int, approval_role_id: int, performed_by: Optional[int] = None) -> UserApprovalRole:
    assignment = db.session.execute(
        db.select(UserApprovalRole).filter_by(user_id=user_id, approval_role_id=approval_role_id)
    ).scalar_one_or_none()
    if assignment is None:
        raise NotFoundError(f"User {user_id} does not hold approval role {approval_role_id}.")
    old_values = assignment.to_dict()
    assignment.is_active = False
    db.session.flush()
    record_audit("RevokeApprover", "user_approval_roles", assignment.id, old_values, assignment.to_dict(),
                 performed_by)
    commit_or_conflict("approver assignment")
    return assignment
