"""Approval workflow engine: creates workflow instances and advances them.

A workflow is created once per submitted transaction. Its ordered actions are
materialised from the rule picked by ``rule_resolver.resolve`` and then
decided one by one (or in parallel, for non-sequential rules) by approvers,
bypassed by an override, or escalated by the escalation monitor.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from procureflow.models import (
    OPEN_STATUSES,
    ApprovalStatus,
    ApprovalWorkflow,
    ApprovalWorkflowAction,
    AuditLog,
    User,
    UserApprovalRole,
    db,
)
from procureflow.services.audit_service import audit_recorder, record_audit
from procureflow.services.catalog_service import get_active_catalog, parse_category, parse_currency
from procureflow.services.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from procureflow.services.rule_resolver import AutoApprove, CatalogSnapshot, NoRuleFound, OverrideSpec, resolve
from procureflow.services.transactions import commit_or_conflict, rollback_on_error
from procureflow.utils.helpers import to_decimal, utcnow

logger = logging.getLogger(__name__)

ENTITY = "approval_workflows"

DECISIONS = {
    "approve": ApprovalStatus.APPROVED,
    "approved": ApprovalStatus.APPROVED,
    "reject": ApprovalStatus.REJECTED,
    "rejected": ApprovalStatus.REJECTED,
}

POLICY_ALL_REQUIRED = "all_required"
POLICY_ANY_ONE = "any_one"

RESOLVED_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.AUTO_APPROVED})


def _parallel_policy() -> str:
    policy = current_app.config.get("PARALLEL_APPROVAL_POLICY", POLICY_ALL_REQUIRED)
    if policy not in (POLICY_ALL_REQUIRED, POLICY_ANY_ONE):
        raise ConfigurationError(f"Unknown PARALLEL_APPROVAL_POLICY '{policy}'.")
    return policy


def _finalize() -> None:
    audit_recorder.flush_pending()


# Lookups ---------------------------------------------------------------------


def get_workflow(workflow_id: int) -> ApprovalWorkflow:
    workflow = db.session.get(ApprovalWorkflow, workflow_id)
    if workflow is None:
        raise NotFoundError(f"Approval workflow {workflow_id} not found.")
    return workflow


def _find_open_workflow(reference_id: str, reference_code: str) -> Optional[ApprovalWorkflow]:
    return db.session.execute(
        db.select(ApprovalWorkflow).filter(
            ApprovalWorkflow.reference_id == reference_id,
            ApprovalWorkflow.reference_code == reference_code,
            ApprovalWorkflow.status.in_(OPEN_STATUSES),
        )
    ).scalar_one_or_none()


def get_workflow_status(reference_id: str, reference_code: Optional[str] = None) -> Dict[str, Any]:
    """Latest workflow for a transaction reference with its ordered actions."""
    query = db.select(ApprovalWorkflow).filter(ApprovalWorkflow.reference_id == str(reference_id))
    if reference_code:
        query = query.filter(ApprovalWorkflow.reference_code == reference_code)
    workflow = db.session.execute(
        query.order_by(ApprovalWorkflow.created_at.desc(), ApprovalWorkflow.id.desc()).limit(1)
    ).scalar_one_or_none()
    if workflow is None:
        raise NotFoundError(f"No approval workflow for reference {reference_id}.")
    return {
        "workflow_id": workflow.id,
        "status": workflow.status.value,
        "current_level": workflow.current_level,
        "total_levels": len(workflow.actions),
        "actions": [action.to_dict() for action in workflow.actions],
        "workflow": workflow.to_dict(include_actions=False),
    }


def workflow_history(workflow_id: int) -> List[AuditLog]:
    get_workflow(workflow_id)
    return db.session.execute(
        db.select(AuditLog)
        .filter(AuditLog.entity_type == ENTITY, AuditLog.entity_id == str(workflow_id))
        .order_by(AuditLog.created_at, AuditLog.id)
    ).scalars().all()


# Chain bookkeeping -----------------------------------------------------------


def compute_current_level(workflow: ApprovalWorkflow) -> int:
    """Lowest open step beyond the furthest resolved step, else the lowest open step."""
    open_levels = sorted(action.sequence_order for action in workflow.actions if action.is_open)
    if not open_levels:
        return workflow.current_level
    frontier = max(
        (action.sequence_order for action in workflow.actions if action.status in RESOLVED_STATUSES),
        default=0,
    )
    ahead = [level for level in open_levels if level > frontier]
    return ahead[0] if ahead else open_levels[0]


def blocking_actions(workflow: ApprovalWorkflow, action: ApprovalWorkflowAction) -> List[ApprovalWorkflowAction]:
    """Earlier mandatory steps that must be decided first on sequential rules."""
    if not workflow.requires_sequential:
        return []
    return [
        other
        for other in workflow.actions
        if other.sequence_order < action.sequence_order and other.is_mandatory and other.is_open
    ]


def actionable_actions(workflow: ApprovalWorkflow) -> List[ApprovalWorkflowAction]:
    if workflow.is_terminal:
        return []
    return [action for action in workflow.actions if action.is_open and not blocking_actions(workflow, action)]


def _activate(workflow: ApprovalWorkflow, now: datetime) -> None:
    # Start the escalation clock for steps that just became decidable.
    for action in actionable_actions(workflow):
        if action.became_current_at is None:
            action.became_current_at = now


def _chain_complete(workflow: ApprovalWorkflow, approved_now: bool) -> bool:
    if approved_now and not workflow.requires_sequential and _parallel_policy() == POLICY_ANY_ONE:
        return True
    return not any(action.is_open and action.is_mandatory for action in workflow.actions)


def _advance(workflow: ApprovalWorkflow, now: datetime, approved_now: bool = False) -> None:
    if _chain_complete(workflow, approved_now):
        workflow.status = ApprovalStatus.APPROVED
        workflow.completed_at = now
        return
    workflow.current_level = compute_current_level(workflow)
    if any(action.status == ApprovalStatus.ESCALATED for action in workflow.actions):
        workflow.status = ApprovalStatus.ESCALATED
    else:
        workflow.status = ApprovalStatus.PENDING
    _activate(workflow, now)


# Eligibility -----------------------------------------------------------------


def holds_role(user_id: int, approval_role_id: int, amount) -> bool:
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return False
    assignment = db.session.execute(
        db.select(UserApprovalRole).filter_by(user_id=user_id, approval_role_id=approval_role_id, is_active=True)
    ).scalar_one_or_none()
    return assignment is not None and assignment.covers(amount)


def _ensure_eligible(workflow: ApprovalWorkflow, action: ApprovalWorkflowAction, user_id: int) -> None:
    if action.approver_id is not None:
        if action.approver_id == user_id:
            return
        raise AuthorizationError(
            f"Step {action.sequence_order} is assigned to user {action.approver_id}.",
            workflow_id=workflow.id,
        )
    if not holds_role(user_id, action.approval_role_id, workflow.amount):
        raise AuthorizationError(
            f"User {user_id} cannot decide step {action.sequence_order} of workflow {workflow.id}.",
            workflow_id=workflow.id,
        )


# Creation --------------------------------------------------------------------


def _record_conflict(result, catalog: CatalogSnapshot, performed_by: Optional[int]) -> None:
    logger.warning(
        "Overlapping active rules %s; chose rule %s (v%s)",
        result.conflicting_rule_ids, result.rule.id, result.rule.version,
    )
    record_audit(
        "rule_conflict",
        "approval_rules",
        result.rule.id,
        new_values={
            "chosen_rule_id": result.rule.id,
            "chosen_rule_version": result.rule.version,
            "conflicting_rule_ids": list(result.conflicting_rule_ids),
            "matrix_version": catalog.version_number,
        },
        performed_by=performed_by,
    )


@rollback_on_error
def create_workflow(
    reference_id: Any,
    reference_code: str,
    category: Any,
    amount: Any,
    currency: Optional[str] = None,
    department_id: Optional[int] = None,
    initiated_by: Optional[int] = None,
    override_id: Optional[int] = None,
    justification: Optional[str] = None,
) -> ApprovalWorkflow:
    """Resolve the approval rule for a transaction and materialise its workflow.

    Returns the already-open workflow for the same reference instead of a
    duplicate, so retried submissions are harmless.
    """
    if reference_id in (None, "") or not reference_code:
        raise ValidationError("'reference_id' and 'reference_code' are required.")
    reference_id = str(reference_id)
    category = parse_category(category)
    amount = to_decimal(amount, "amount")
    currency = parse_currency(currency or current_app.config.get("DEFAULT_CURRENCY"))

    existing = _find_open_workflow(reference_id, reference_code)
    if existing is not None:
        if existing.amount != amount or existing.category != category:
            logger.warning("Resubmission of %s with different attributes; keeping workflow %s",
                           reference_code, existing.id)
        return existing

    catalog = get_active_catalog()
    result = resolve(catalog, category, amount, currency, department_id)

    if isinstance(result, NoRuleFound):
        record_audit(
            "rule_not_found",
            ENTITY,
            reference_id,
            new_values={
                "reference_code": reference_code,
                "category": category,
                "amount": amount,
                "currency": currency,
                "department_id": department_id,
                "matrix_version": catalog.version_number,
            },
            performed_by=initiated_by,
        )
        db.session.commit()
        raise ConfigurationError(
            f"No active approval rule covers {category.value} {amount} {currency}; submission is blocked.",
            category=category.value,
            currency=currency,
        )

    if result.conflicting_rule_ids:
        _record_conflict(result, catalog, initiated_by)

    rule = result.rule
    now = utcnow()
    workflow = ApprovalWorkflow(
        reference_id=reference_id,
        reference_code=reference_code,
        category=category,
        amount=amount,
        currency=currency,
        department_id=department_id,
        rule_id=rule.id,
        rule_version=rule.version,
        matrix_version=catalog.version_number,
        requires_sequential=rule.requires_sequential,
        escalation_hours=rule.escalation_hours,
        initiated_by=initiated_by,
        created_at=now,
        updated_at=now,
    )

    if isinstance(result, AutoApprove):
        workflow.status = ApprovalStatus.AUTO_APPROVED
        workflow.current_level = 0
        workflow.completed_at = now
        db.session.add(workflow)
        db.session.flush()
        record_audit(
            "workflow_auto_approved",
            ENTITY,
            workflow.id,
            new_values={
                "reference_id": reference_id,
                "reference_code": reference_code,
                "amount": amount,
                "rule_id": rule.id,
                "rule_version": rule.version,
                "reason": f"amount below auto-approve threshold {rule.auto_approve_below}",
            },
            performed_by=initiated_by,
        )
    else:
        if not rule.steps:
            raise ConfigurationError(f"Approval rule {rule.id} ('{rule.name}') has no approver steps.")
        for step in rule.steps:
            workflow.actions.append(
                ApprovalWorkflowAction(
                    sequence_order=step.sequence_order,
                    approval_role_id=step.approval_role_id,
                    is_mandatory=step.is_mandatory,
                    can_delegate=step.can_delegate,
                    status=ApprovalStatus.PENDING,
                )
            )
        workflow.status = ApprovalStatus.PENDING
        workflow.current_level = compute_current_level(workflow)
        _activate(workflow, now)
        db.session.add(workflow)
        db.session.flush()
        record_audit(
            "workflow_initiated",
            ENTITY,
            workflow.id,
            new_values={
                "reference_id": reference_id,
                "reference_code": reference_code,
                "category": category,
                "amount": amount,
                "rule_id": rule.id,
                "rule_version": rule.version,
                "matrix_version": catalog.version_number,
                "approvers": len(rule.steps),
            },
            performed_by=initiated_by,
        )
        if override_id is not None:
            _apply_override(workflow, catalog, override_id, justification, initiated_by, now)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = _find_open_workflow(reference_id, reference_code)
        if existing is None:
            raise ConcurrentModificationError(f"Concurrent submission for {reference_code}; retry.")
        logger.info("Concurrent submission for %s resolved to workflow %s", reference_code, existing.id)
        return existing

    logger.info("Workflow %s for %s created with status %s", workflow.id, reference_code, workflow.status.value)
    _finalize()
    return workflow


# Overrides -------------------------------------------------------------------


def _validate_override(workflow: ApprovalWorkflow, override: OverrideSpec, justification: Optional[str],
                       now: datetime) -> None:
    if not override.is_valid_at(now):
        raise ValidationError(f"Override {override.id} is not active at {now.isoformat()}.")
    if not override.applies_to(workflow.category):
        raise ValidationError(f"Override {override.id} does not apply to {workflow.category.value}.")
    if not override.allows_amount(workflow.amount):
        raise ValidationError(f"Amount {workflow.amount} exceeds override {override.id} cap {override.max_amount}.")
    if override.require_justification and not (justification or "").strip():
        raise ValidationError(f"Override {override.id} requires a justification.")


def _apply_override(workflow: ApprovalWorkflow, catalog: CatalogSnapshot, override_id: int,
                    justification: Optional[str], performed_by: Optional[int], now: datetime) -> None:
    if workflow.status != ApprovalStatus.PENDING:
        raise InvalidStateError(
            f"Overrides can only be applied to pending workflows (workflow {workflow.id} is {workflow.status.value})."
        )
    if workflow.override_id is not None:
        raise InvalidStateError(f"Workflow {workflow.id} already has override {workflow.override_id} applied.")
    override = catalog.override(override_id)
    if override is None:
        raise NotFoundError(f"Approval override {override_id} not found.")
    _validate_override(workflow, override, justification, now)

    bypassed = [
        action for action in workflow.actions
        if action.sequence_order in override.bypass_levels and action.is_open
    ]
    if not bypassed:
        raise ValidationError(f"Override {override.id} does not bypass any open step of workflow {workflow.id}.")

    for action in bypassed:
        action.status = ApprovalStatus.AUTO_APPROVED
        action.override_id = override.id
        action.acted_at = now
        action.comments = f"Bypassed by override '{override.name}'"

    workflow.override_id = override.id
    workflow.override_justification = (justification or "").strip() or None
    workflow.updated_at = now
    _advance(workflow, now)

    record_audit(
        "override_applied",
        ENTITY,
        workflow.id,
        new_values={
            "override_id": override.id,
            "override_type": override.override_type,
            "override_version": override.version,
            "bypassed_levels": [action.sequence_order for action in bypassed],
            "justification": workflow.override_justification,
            "current_level": workflow.current_level,
            "status": workflow.status,
        },
        performed_by=performed_by,
    )


@rollback_on_error
def apply_override(
    workflow_id: int,
    override_id: int,
    justification: Optional[str] = None,
    performed_by: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> ApprovalWorkflow:
    """Bypass the override's levels on a pending workflow."""
    workflow = get_workflow(workflow_id)
    _check_version(workflow, expected_version)
    _apply_override(workflow, get_active_catalog(), override_id, justification, performed_by, utcnow())
    commit_or_conflict(f"Approval workflow {workflow_id}")
    logger.info("Override %s applied to workflow %s; status %s", override_id, workflow_id, workflow.status.value)
    _finalize()
    return workflow


# Decisions -------------------------------------------------------------------


def _check_version(workflow: ApprovalWorkflow, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != workflow.version_id:
        raise ConcurrentModificationError(
            f"Approval workflow {workflow.id} is at version {workflow.version_id}, not {expected_version}."
        )


def _open_action(workflow: ApprovalWorkflow, sequence_order: int) -> ApprovalWorkflowAction:
    if workflow.is_terminal:
        raise InvalidStateError(f"Approval workflow {workflow.id} is already {workflow.status.value}.")
    action = workflow.action_for(int(sequence_order))
    if action is None:
        raise NotFoundError(f"Workflow {workflow.id} has no step {sequence_order}.")
    if not action.is_open:
        raise InvalidStateError(f"Step {sequence_order} of workflow {workflow.id} is already {action.status.value}.")
    return action


@rollback_on_error
def record_decision(
    workflow_id: int,
    sequence_order: int,
    approver_id: int,
    decision: str,
    comment: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> ApprovalWorkflow:
    """Approve or reject one step. A single rejection ends the workflow."""
    workflow = get_workflow(workflow_id)
    _check_version(workflow, expected_version)
    action = _open_action(workflow, sequence_order)

    new_status = DECISIONS.get(str(decision or "").lower())
    if new_status is None:
        raise ValidationError(f"Unsupported decision '{decision}'; use 'approve' or 'reject'.")

    blockers = blocking_actions(workflow, action)
    if blockers:
        raise InvalidStateError(
            f"Step {action.sequence_order} cannot be decided before step {blockers[0].sequence_order}.",
            pending_steps=[blocker.sequence_order for blocker in blockers],
        )
    _ensure_eligible(workflow, action, approver_id)

    if new_status == ApprovalStatus.REJECTED and current_app.config.get("REQUIRE_REJECTION_REASON", True):
        if not (comment or "").strip():
            raise ValidationError("A rejection reason is required.")

    now = utcnow()
    previous_status = action.status
    action.status = new_status
    action.approver_id = approver_id
    action.acted_at = now
    action.comments = comment
    workflow.updated_at = now

    if new_status == ApprovalStatus.REJECTED:
        action.rejection_reason = comment
        workflow.status = ApprovalStatus.REJECTED
        workflow.completed_at = now
    else:
        _advance(workflow, now, approved_now=True)

    record_audit(
        "action_approved" if new_status == ApprovalStatus.APPROVED else "action_rejected",
        ENTITY,
        workflow.id,
        old_values={"sequence_order": action.sequence_order, "status": previous_status},
        new_values={
            "sequence_order": action.sequence_order,
            "action_id": action.id,
            "status": new_status,
            "approver_id": approver_id,
            "delegated_from": action.delegated_from,
            "comment": comment,
            "workflow_status": workflow.status,
            "current_level": workflow.current_level,
        },
        performed_by=approver_id,
    )
    commit_or_conflict(f"Approval workflow {workflow_id}")
    logger.info(
        "Workflow %s step %s %s by user %s; workflow %s",
        workflow.id, action.sequence_order, new_status.value, approver_id, workflow.status.value,
    )
    _finalize()
    return workflow


@rollback_on_error
def delegate_action(
    workflow_id: int,
    sequence_order: int,
    from_user_id: int,
    to_user_id: int,
    comment: Optional[str] = None,
) -> ApprovalWorkflow:
    """Hand a delegable step to another user, who may then decide it."""
    workflow = get_workflow(workflow_id)
    action = _open_action(workflow, sequence_order)
    if not action.can_delegate:
        raise InvalidStateError(f"Step {action.sequence_order} of workflow {workflow.id} cannot be delegated.")
    if from_user_id == to_user_id:
        raise ValidationError("A step cannot be delegated to the same user.")
    _ensure_eligible(workflow, action, from_user_id)
    delegate = db.session.get(User, to_user_id)
    if delegate is None or not delegate.is_active:
        raise NotFoundError(f"User {to_user_id} not found.")

    previous = {"approver_id": action.approver_id, "delegated_from": action.delegated_from}
    action.approver_id = delegate.id
    action.delegated_from = from_user_id
    workflow.updated_at = utcnow()
    record_audit(
        "action_delegated",
        ENTITY,
        workflow.id,
        old_values={"sequence_order": action.sequence_order, **previous},
        new_values={
            "sequence_order": action.sequence_order,
            "approver_id": delegate.id,
            "delegated_from": from_user_id,
            "comment": comment,
        },
        performed_by=from_user_id,
    )
    commit_or_conflict(f"Approval workflow {workflow_id}")
    _finalize()
    return workflow


# Approver queues -------------------------------------------------------------


def list_pending_actions_for_approver(user_id: int) -> List[ApprovalWorkflowAction]:
    """Open steps the user can decide right now, oldest workflow first."""
    assignments = db.session.execute(
        db.select(UserApprovalRole).filter_by(user_id=user_id, is_active=True)
    ).scalars().all()
    caps = {assignment.approval_role_id: assignment for assignment in assignments}

    criteria = ApprovalWorkflowAction.approver_id == user_id
    if caps:
        criteria = db.or_(
            criteria,
            db.and_(
                ApprovalWorkflowAction.approver_id.is_(None),
                ApprovalWorkflowAction.approval_role_id.in_(list(caps)),
            ),
        )
    candidates = db.session.execute(
        db.select(ApprovalWorkflowAction)
        .join(ApprovalWorkflow)
        .filter(
            ApprovalWorkflowAction.status.in_(OPEN_STATUSES),
            ApprovalWorkflow.status.in_(OPEN_STATUSES),
            criteria,
        )
        .order_by(ApprovalWorkflow.created_at, ApprovalWorkflow.id, ApprovalWorkflowAction.sequence_order)
    ).scalars().all()

    pending = []
    for action in candidates:
        workflow = action.workflow
        if action.approver_id is None and not caps[action.approval_role_id].covers(workflow.amount):
            continue
        if blocking_actions(workflow, action):
            continue
        pending.append(action)
    return pending
