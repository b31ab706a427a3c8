"""Approval workflow routes: submission, status, decisions and approver queues."""
from __future__ import annotations

from typing import Any

from flask import current_app, request
from flask_login import current_user, login_required
from flask_wtf.csrf import generate_csrf

from procureflow.services import approval_engine
from procureflow.services.catalog_service import get_active_catalog, parse_category, parse_currency
from procureflow.services.errors import ValidationError
from procureflow.services.rule_resolver import simulate
from procureflow.utils.helpers import json_response, retry_on_conflict, to_decimal

from . import workflows_bp


def _payload() -> dict:
    return request.get_json(silent=True) or {}


@workflows_bp.route("", methods=["POST"])
@login_required
def create_workflow() -> Any:
    """Submit a transaction for approval."""
    data = _payload()
    workflow = approval_engine.create_workflow(
        reference_id=data.get("reference_id"),
        reference_code=data.get("reference_code"),
        category=data.get("category"),
        amount=data.get("amount"),
        currency=data.get("currency"),
        department_id=data.get("department_id", current_user.department_id),
        initiated_by=current_user.id,
        override_id=data.get("override_id"),
        justification=data.get("justification"),
    )
    current_app.logger.info("User %s submitted %s for approval", current_user.id, workflow.reference_code)
    return json_response({"workflow": workflow.to_dict()}, status=201)


@workflows_bp.route("/simulate", methods=["POST"])
@login_required
def simulate_workflow() -> Any:
    """Preview the rule and approval path for a hypothetical transaction."""
    data = _payload()
    result = simulate(
        get_active_catalog(),
        parse_category(data.get("category")),
        to_decimal(data.get("amount"), "amount"),
        parse_currency(data.get("currency") or current_app.config.get("DEFAULT_CURRENCY")),
        data.get("department_id"),
    )
    return json_response(result)


@workflows_bp.route("/csrf-token", methods=["GET"])
@login_required
def csrf_token() -> Any:
    """Token to send back in the ``X-CSRFToken`` header on every write."""
    return json_response({"csrf_token": generate_csrf()})


@workflows_bp.route("/pending", methods=["GET"])
@login_required
def pending_actions() -> Any:
    """Steps the current user can decide right now."""
    actions = approval_engine.list_pending_actions_for_approver(current_user.id)
    return json_response(
        {
            "actions": [
                {**action.to_dict(), "workflow": action.workflow.to_dict(include_actions=False)}
                for action in actions
            ]
        }
    )


@workflows_bp.route("/<reference_id>", methods=["GET"])
@login_required
def workflow_status(reference_id: str) -> Any:
    return json_response(approval_engine.get_workflow_status(reference_id, request.args.get("reference_code")))


@workflows_bp.route("/<int:workflow_id>/history", methods=["GET"])
@login_required
def workflow_history(workflow_id: int) -> Any:
    entries = approval_engine.workflow_history(workflow_id)
    return json_response({"workflow_id": workflow_id, "history": [entry.to_dict() for entry in entries]})


@workflows_bp.route("/<int:workflow_id>/actions/<int:sequence_order>/decision", methods=["POST"])
@login_required
def decide(workflow_id: int, sequence_order: int) -> Any:
    """Approve or reject one step of a workflow."""
    data = _payload()
    if "decision" not in data:
        raise ValidationError("'decision' is required.")
    workflow = retry_on_conflict(approval_engine.record_decision)(
        workflow_id,
        sequence_order,
        current_user.id,
        data["decision"],
        comment=data.get("comment"),
        expected_version=data.get("version"),
    )
    return json_response({"workflow": workflow.to_dict()})


@workflows_bp.route("/<int:workflow_id>/actions/<int:sequence_order>/delegate", methods=["POST"])
@login_required
def delegate(workflow_id: int, sequence_order: int) -> Any:
    data = _payload()
    if not data.get("to_user_id"):
        raise ValidationError("'to_user_id' is required.")
    workflow = approval_engine.delegate_action(
        workflow_id,
        sequence_order,
        current_user.id,
        int(data["to_user_id"]),
        comment=data.get("comment"),
    )
    return json_response({"workflow": workflow.to_dict()})


@workflows_bp.route("/<int:workflow_id>/override", methods=["POST"])
@login_required
def override(workflow_id: int) -> Any:
    """Apply an approval override to a pending workflow."""
    data = _payload()
    if not data.get("override_id"):
        raise ValidationError("'override_id' is required.")
    workflow = retry_on_conflict(approval_engine.apply_override)(
        workflow_id,
        int(data["override_id"]),
        justification=data.get("justification"),
        performed_by=current_user.id,
        expected_version=data.get("version"),
    )
    return json_response({"workflow": workflow.to_dict()})
