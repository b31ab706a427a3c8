"""Workflow instance models."""
from __future__ import annotations

import enum

from procureflow import db
from procureflow.models.approval import ApprovalCategory
from procureflow.utils.helpers import utcnow


class ApprovalStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    AUTO_APPROVED = "auto_approved"


TERMINAL_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.AUTO_APPROVED})
OPEN_STATUSES = frozenset({ApprovalStatus.PENDING, ApprovalStatus.ESCALATED})


def _timestamp(value):
    return value.isoformat() if value else None


class ApprovalWorkflow(db.Model):
    __tablename__ = "approval_workflows"
    __table_args__ = (
        # One open workflow per transaction reference.
        db.Index(
            "uq_open_workflow_reference",
            "reference_id",
            "reference_code",
            unique=True,
            sqlite_where=db.text("status IN ('PENDING', 'ESCALATED')"),
            postgresql_where=db.text("status IN ('PENDING', 'ESCALATED')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_id = db.Column(db.String(64), nullable=False, index=True)
    reference_code = db.Column(db.String(64), nullable=False)
    category = db.Column(db.Enum(ApprovalCategory, name="approval_category"), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("approval_rules.id"), nullable=True)
    rule_version = db.Column(db.Integer, nullable=True)
    matrix_version = db.Column(db.Integer, nullable=True)
    requires_sequential = db.Column(db.Boolean, default=True, nullable=False)
    escalation_hours = db.Column(db.Integer, nullable=True)
    override_id = db.Column(db.Integer, db.ForeignKey("approval_overrides.id"), nullable=True)
    override_justification = db.Column(db.Text, nullable=True)
    current_level = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.Enum(ApprovalStatus, name="approval_status"),
        nullable=False,
        default=ApprovalStatus.PENDING,
        index=True,
    )
    initiated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False)

    rule = db.relationship("ApprovalRule", lazy="joined")
    override = db.relationship("ApprovalOverride", lazy="joined")
    actions = db.relationship(
        "ApprovalWorkflowAction",
        back_populates="workflow",
        order_by="ApprovalWorkflowAction.sequence_order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def action_for(self, sequence_order: int):
        return next((action for action in self.actions if action.sequence_order == sequence_order), None)

    def to_dict(self, include_actions: bool = True) -> dict:
        payload = {
            "id": self.id,
            "reference_id": self.reference_id,
            "reference_code": self.reference_code,
            "category": self.category.value if self.category else None,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "department_id": self.department_id,
            "rule_id": self.rule_id,
            "rule_version": self.rule_version,
            "matrix_version": self.matrix_version,
            "requires_sequential": self.requires_sequential,
            "escalation_hours": self.escalation_hours,
            "override_id": self.override_id,
            "override_justification": self.override_justification,
            "current_level": self.current_level,
            "status": self.status.value if self.status else None,
            "initiated_by": self.initiated_by,
            "created_at": _timestamp(self.created_at),
            "updated_at": _timestamp(self.updated_at),
            "completed_at": _timestamp(self.completed_at),
            "version": self.version_id,
        }
        if include_actions:
            payload["actions"] = [action.to_dict() for action in self.actions]
        return payload

    def __repr__(self) -> str:
        return (
            f"<ApprovalWorkflow {self.reference_code} "
            f"status={self.status.value if self.status else None} level={self.current_level}>"
        )


class ApprovalWorkflowAction(db.Model):
    __tablename__ = "approval_workflow_actions"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "sequence_order", name="uq_workflow_action_sequence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("approval_workflows.id"), nullable=False, index=True)
    sequence_order = db.Column(db.Integer, nullable=False)
    approval_role_id = db.Column(db.Integer, db.ForeignKey("approval_roles.id"), nullable=False)
    is_mandatory = db.Column(db.Boolean, default=True, nullable=False)
    can_delegate = db.Column(db.Boolean, default=False, nullable=False)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    delegated_from = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    status = db.Column(
        db.Enum(ApprovalStatus, name="approval_status"),
        nullable=False,
        default=ApprovalStatus.PENDING,
        index=True,
    )
    comments = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    override_id = db.Column(db.Integer, db.ForeignKey("approval_overrides.id"), nullable=True)
    became_current_at = db.Column(db.DateTime, nullable=True)
    escalated_at = db.Column(db.DateTime, nullable=True)
    acted_at = db.Column(db.DateTime, nullable=True)

    workflow = db.relationship("ApprovalWorkflow", back_populates="actions")
    approval_role = db.relationship("ApprovalRole", lazy="joined")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "sequence_order": self.sequence_order,
            "approval_role_id": self.approval_role_id,
            "approval_role_code": self.approval_role.code if self.approval_role else None,
            "is_mandatory": self.is_mandatory,
            "can_delegate": self.can_delegate,
            "approver_id": self.approver_id,
            "delegated_from": self.delegated_from,
            "status": self.status.value if self.status else None,
            "comments": self.comments,
            "rejection_reason": self.rejection_reason,
            "override_id": self.override_id,
            "became_current_at": _timestamp(self.became_current_at),
            "escalated_at": _timestamp(self.escalated_at),
            "acted_at": _timestamp(self.acted_at),
        }

    def __repr__(self) -> str:
        return (
            f"<ApprovalWorkflowAction workflow_id={self.workflow_id} seq={self.sequence_order} "
            f"status={self.status.value if self.status else None}>"
        )
