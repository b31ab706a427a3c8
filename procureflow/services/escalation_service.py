"""Escalation monitor for approval steps that outlive their rule's SLA."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from flask import current_app

from procureflow.models import (
    OPEN_STATUSES,
    ApprovalStatus,
    ApprovalWorkflow,
    ApprovalWorkflowAction,
    User,
    UserApprovalRole,
    db,
)
from procureflow.services.audit_service import audit_recorder, record_audit
from procureflow.services.email_service import send_escalation_notice
from procureflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def is_overdue(action: ApprovalWorkflowAction, now: datetime) -> bool:
    hours = action.workflow.escalation_hours
    if hours is None or action.became_current_at is None:
        return False
    return action.became_current_at + timedelta(hours=hours) < now


def overdue_actions(now: datetime, limit: Optional[int] = None) -> List[ApprovalWorkflowAction]:
    candidates = db.session.execute(
        db.select(ApprovalWorkflowAction)
        .join(ApprovalWorkflow)
        .filter(
            ApprovalWorkflowAction.status == ApprovalStatus.PENDING,
            ApprovalWorkflowAction.became_current_at.isnot(None),
            ApprovalWorkflow.status.in_(OPEN_STATUSES),
            ApprovalWorkflow.escalation_hours.isnot(None),
        )
        .order_by(ApprovalWorkflowAction.became_current_at, ApprovalWorkflowAction.id)
    ).scalars()
    due = []
    for action in candidates:
        if is_overdue(action, now):
            due.append(action)
            if limit and len(due) >= limit:
                break
    return due


def _role_holder_emails(action: ApprovalWorkflowAction, amount) -> List[str]:
    if action.approver_id is not None:
        assignee = db.session.get(User, action.approver_id)
        return [assignee.email] if assignee and assignee.is_active else []
    assignments = db.session.execute(
        db.select(UserApprovalRole)
        .join(User, User.id == UserApprovalRole.user_id)
        .filter(
            UserApprovalRole.approval_role_id == action.approval_role_id,
            UserApprovalRole.is_active.is_(True),
            User.is_active.is_(True),
        )
    ).scalars().all()
    return [assignment.user.email for assignment in assignments if assignment.covers(amount)]


def _escalate(action_id: int, workflow_id: int, sequence_order: int, now: datetime) -> bool:
    """Move one step to escalated. Returns False when another sweep got there first."""
    moved = db.session.execute(
        db.update(ApprovalWorkflowAction)
        .where(
            ApprovalWorkflowAction.id == action_id,
            ApprovalWorkflowAction.status == ApprovalStatus.PENDING,
        )
        .values(status=ApprovalStatus.ESCALATED, escalated_at=now)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        db.session.rollback()
        return False
    db.session.execute(
        db.update(ApprovalWorkflow)
        .where(ApprovalWorkflow.id == workflow_id, ApprovalWorkflow.status.in_(OPEN_STATUSES))
        .values(
            status=ApprovalStatus.ESCALATED,
            updated_at=now,
            version_id=ApprovalWorkflow.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    record_audit(
        "action_escalated",
        "approval_workflows",
        workflow_id,
        old_values={"sequence_order": sequence_order, "status": ApprovalStatus.PENDING},
        new_values={
            "sequence_order": sequence_order,
            "action_id": action_id,
            "status": ApprovalStatus.ESCALATED,
            "escalated_at": now,
        },
    )
    db.session.commit()
    return True


def sweep(now: Optional[datetime] = None) -> List[int]:
    """Escalate every overdue pending step. Returns the ids of escalated actions.

    Safe to run repeatedly or concurrently: a step only escalates once.
    """
    now = now or utcnow()
    limit = current_app.config.get("ESCALATION_BATCH_SIZE")
    due = [
        (action.id, action.workflow_id, action.sequence_order)
        for action in overdue_actions(now, limit)
    ]
    escalated = []
    for action_id, workflow_id, sequence_order in due:
        if not _escalate(action_id, workflow_id, sequence_order, now):
            logger.debug("Action %s was already handled", action_id)
            continue
        escalated.append(action_id)
        logger.info("Escalated workflow %s step %s", workflow_id, sequence_order)
        if current_app.config.get("ESCALATION_NOTIFY_ENABLED"):
            action = db.session.get(ApprovalWorkflowAction, action_id)
            send_escalation_notice(
                _role_holder_emails(action, action.workflow.amount),
                action.workflow,
                action,
                action.approval_role.name if action.approval_role else None,
            )
    if due:
        logger.info("Escalation sweep at %s: %s of %s overdue steps escalated", now.isoformat(), len(escalated), len(due))
    audit_recorder.flush_pending()
    return escalated
