"""Admin routes for the approval matrix: roles, rules, approvers, overrides and audit."""
from __future__ import annotations

from typing import Any

from flask import request
from flask_login import current_user, login_required

from procureflow.models import (
    ApprovalMatrixVersion,
    ApprovalOverride,
    ApprovalRole,
    ApprovalRule,
    AuditLog,
    UserRole,
    db,
)
from procureflow.services import catalog_service
from procureflow.services.audit_service import diff_snapshots, get_matrix_version
from procureflow.services.errors import ValidationError
from procureflow.utils.helpers import json_response, role_required

from . import admin_bp


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"'{name}' must be an integer.") from exc


# Approval roles --------------------------------------------------------------


@admin_bp.route("/roles", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def list_roles() -> Any:
    roles = db.session.execute(db.select(ApprovalRole).order_by(ApprovalRole.hierarchy_level)).scalars().all()
    return json_response({"roles": [role.to_dict() for role in roles]})


@admin_bp.route("/roles", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def create_role() -> Any:
    result = catalog_service.create_role(_payload(), performed_by=current_user.id)
    return json_response(result.to_dict("role"), status=201)


@admin_bp.route("/roles/<int:role_id>", methods=["PUT"])
@login_required
@role_required(UserRole.ADMIN)
def update_role(role_id: int) -> Any:
    result = catalog_service.update_role(role_id, _payload(), performed_by=current_user.id)
    return json_response(result.to_dict("role"))


@admin_bp.route("/roles/<int:role_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def deactivate_role(role_id: int) -> Any:
    result = catalog_service.deactivate_role(role_id, performed_by=current_user.id)
    return json_response(result.to_dict("role"))


# Approval rules --------------------------------------------------------------


@admin_bp.route("/rules", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def list_rules() -> Any:
    query = db.select(ApprovalRule).order_by(ApprovalRule.category, ApprovalRule.min_amount)
    if request.args.get("active_only", "").lower() in {"1", "true", "yes"}:
        query = query.filter(ApprovalRule.is_active.is_(True))
    rules = db.session.execute(query).scalars().all()
    return json_response({"rules": [rule.to_dict() for rule in rules]})


@admin_bp.route("/rules", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def create_rule() -> Any:
    result = catalog_service.create_rule(_payload(), performed_by=current_user.id)
    return json_response(result.to_dict("rule"), status=201)


@admin_bp.route("/rules/<int:rule_id>", methods=["PUT"])
@login_required
@role_required(UserRole.ADMIN)
def update_rule(rule_id: int) -> Any:
    result = catalog_service.update_rule(rule_id, _payload(), performed_by=current_user.id)
    return json_response(result.to_dict("rule"))


@admin_bp.route("/rules/<int:rule_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def deactivate_rule(rule_id: int) -> Any:
    result = catalog_service.deactivate_rule(rule_id, performed_by=current_user.id)
    return json_response(result.to_dict("rule"))


@admin_bp.route("/rules/<int:rule_id>/approvers", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def add_rule_approver(rule_id: int) -> Any:
    result = catalog_service.add_rule_approver(rule_id, _payload(), performed_by=current_user.id)
    return json_response(result.to_dict("rule"), status=201)


@admin_bp.route("/rules/<int:rule_id>/approvers/<int:approver_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def remove_rule_approver(rule_id: int, approver_id: int) -> Any:
    result = catalog_service.remove_rule_approver(rule_id, approver_id, performed_by=current_user.id)
    return json_response(result.to_dict("rule"))


# Overrides -------------------------------------------------------------------


@admin_bp.route("/overrides", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def list_overrides() -> Any:
    overrides = db.session.execute(db.select(ApprovalOverride).order_by(ApprovalOverride.id)).scalars().all()
    return json_response({"overrides": [override.to_dict() for override in overrides]})


@admin_bp.route("/overrides", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def create_override() -> Any:
    result = catalog_service.create_override(_payload(), performed_by=current_user.id)
    return json_response(result.to_dict("override"), status=201)


@admin_bp.route("/overrides/<int:override_id>", methods=["PUT"])
@login_required
@role_required(UserRole.ADMIN)
def update_override(override_id: int) -> Any:
    result = catalog_service.update_override(override_id, _payload(), performed_by=current_user.id)
    return json_response(result.to_dict("override"))


@admin_bp.route("/overrides/<int:override_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def deactivate_override(override_id: int) -> Any:
    result = catalog_service.deactivate_override(override_id, performed_by=current_user.id)
    return json_response(result.to_dict("override"))


# Approver assignments --------------------------------------------------------


@admin_bp.route("/users/<int:user_id>/approval-roles", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def assign_approval_role(user_id: int) -> Any:
    data = _payload()
    if not data.get("approval_role_id"):
        raise ValidationError("'approval_role_id' is required.")
    assignment = catalog_service.assign_user_role(
        user_id,
        int(data["approval_role_id"]),
        max_approval_amount=data.get("max_approval_amount"),
        performed_by=current_user.id,
    )
    return json_response({"assignment": assignment.to_dict()}, status=201)


@admin_bp.route("/users/<int:user_id>/approval-roles/<int:role_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def revoke_approval_role(user_id: int, role_id: int) -> Any:
    assignment = catalog_service.revoke_user_role(user_id, role_id, performed_by=current_user.id)
    return json_response({"assignment": assignment.to_dict()})


# Matrix versions and audit ---------------------------------------------------


@admin_bp.route("/matrix/versions", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def matrix_versions() -> Any:
    versions = db.session.execute(
        db.select(ApprovalMatrixVersion).order_by(ApprovalMatrixVersion.version_number.desc())
    ).scalars().all()
    return json_response({"versions": [version.to_dict() for version in versions]})


@admin_bp.route("/matrix/versions/<int:version_number>", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def matrix_version(version_number: int) -> Any:
    return json_response({"version": get_matrix_version(version_number).to_dict(include_snapshot=True)})


@admin_bp.route("/matrix/diff", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def matrix_diff() -> Any:
    """Compare two matrix versions, e.g. ``/admin/matrix/diff?from=3&to=4``."""
    old = get_matrix_version(_int_arg("from", 0))
    new = get_matrix_version(_int_arg("to", 0))
    return json_response(
        {
            "from": old.version_number,
            "to": new.version_number,
            "diff": diff_snapshots(old.snapshot, new.snapshot),
        }
    )


@admin_bp.route("/matrix/export", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def matrix_export() -> Any:
    return json_response(catalog_service.export_matrix())


@admin_bp.route("/audit-logs", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def audit_logs() -> Any:
    query = db.select(AuditLog)
    if request.args.get("entity_type"):
        query = query.filter(AuditLog.entity_type == request.args["entity_type"])
    if request.args.get("entity_id"):
        query = query.filter(AuditLog.entity_id == request.args["entity_id"])
    if request.args.get("action"):
        query = query.filter(AuditLog.action == request.args["action"])
    limit = min(max(_int_arg("limit", 100), 1), 1000)
    entries = db.session.execute(query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)).scalars().all()
    return json_response({"audit_logs": [entry.to_dict() for entry in entries]})
