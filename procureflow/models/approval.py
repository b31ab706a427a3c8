"""Approval catalog models: roles, rules, rule approvers and overrides."""
from __future__ import annotations

import enum

from procureflow import db
from procureflow.utils.helpers import utcnow


class ApprovalCategory(enum.Enum):
    PURCHASE_REQUEST = "purchase_request"
    PURCHASE_ORDER = "purchase_order"
    CONTRACTS = "contracts"
    CAPEX = "capex"
    PAYMENTS = "payments"
    FLOAT_CASH = "float_cash"


class OverrideType(enum.Enum):
    EMERGENCY_PURCHASE = "emergency_purchase"
    SINGLE_SOURCE_JUSTIFICATION = "single_source_justification"
    CAPEX_SPECIAL = "capex_special"
    FLOAT_CASH_REPLENISHMENT = "float_cash_replenishment"
    BUDGET_OVERRIDE = "budget_override"


def _amount(value):
    return float(value) if value is not None else None


def _timestamp(value):
    return value.isoformat() if value else None


class ApprovalRole(db.Model):
    __tablename__ = "approval_roles"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    hierarchy_level = db.Column(db.Integer, nullable=False, default=1)
    permissions = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "hierarchy_level": self.hierarchy_level,
            "permissions": self.permissions or {},
            "is_active": self.is_active,
            "created_at": _timestamp(self.created_at),
            "updated_at": _timestamp(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalRole {self.code} level={self.hierarchy_level}>"


class ApprovalRule(db.Model):
    __tablename__ = "approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.Enum(ApprovalCategory, name="approval_category"), nullable=False, index=True)
    min_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    max_amount = db.Column(db.Numeric(14, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)
    auto_approve_below = db.Column(db.Numeric(14, 2), nullable=True)
    requires_sequential = db.Column(db.Boolean, default=True, nullable=False)
    escalation_hours = db.Column(db.Integer, nullable=True)
    conditions = db.Column(db.JSON, nullable=False, default=dict)
    extra_data = db.Column("metadata", db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    version = db.Column(db.Integer, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    approvers = db.relationship(
        "ApprovalRuleApprover",
        back_populates="rule",
        order_by="ApprovalRuleApprover.sequence_order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self, include_approvers: bool = True) -> dict:
        payload = {
            "id": self.id,
            "name": self.name,
            "category": self.category.value if self.category else None,
            "min_amount": _amount(self.min_amount),
            "max_amount": _amount(self.max_amount),
            "currency": self.currency,
            "department_id": self.department_id,
            "auto_approve_below": _amount(self.auto_approve_below),
            "requires_sequential": self.requires_sequential,
            "escalation_hours": self.escalation_hours,
            "conditions": self.conditions or {},
            "metadata": self.extra_data or {},
            "is_active": self.is_active,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": _timestamp(self.created_at),
            "updated_at": _timestamp(self.updated_at),
        }
        if include_approvers:
            payload["approvers"] = [approver.to_dict() for approver in self.approvers]
        return payload

    def __repr__(self) -> str:
        return (
            f"<ApprovalRule id={self.id} {self.category.value if self.category else None} "
            f"[{self.min_amount}, {self.max_amount}) v{self.version}>"
        )


class ApprovalRuleApprover(db.Model):
    __tablename__ = "approval_rule_approvers"
    __table_args__ = (
        db.UniqueConstraint("rule_id", "sequence_order", name="uq_rule_approver_sequence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("approval_rules.id"), nullable=False, index=True)
    approval_role_id = db.Column(db.Integer, db.ForeignKey("approval_roles.id"), nullable=False)
    sequence_order = db.Column(db.Integer, nullable=False)
    is_mandatory = db.Column(db.Boolean, default=True, nullable=False)
    can_delegate = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    rule = db.relationship("ApprovalRule", back_populates="approvers")
    approval_role = db.relationship("ApprovalRole", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "approval_role_id": self.approval_role_id,
            "sequence_order": self.sequence_order,
            "is_mandatory": self.is_mandatory,
            "can_delegate": self.can_delegate,
        }

    def __repr__(self) -> str:
        return f"<ApprovalRuleApprover rule_id={self.rule_id} seq={self.sequence_order}>"


class ApprovalOverride(db.Model):
    __tablename__ = "approval_overrides"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    override_type = db.Column(db.Enum(OverrideType, name="override_type"), nullable=False)
    category = db.Column(db.Enum(ApprovalCategory, name="approval_category"), nullable=True)
    conditions = db.Column(db.JSON, nullable=False, default=dict)
    bypass_levels = db.Column(db.JSON, nullable=False, default=list)
    require_justification = db.Column(db.Boolean, default=True, nullable=False)
    max_amount = db.Column(db.Numeric(14, 2), nullable=True)
    valid_from = db.Column(db.DateTime, nullable=True)
    valid_until = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    version = db.Column(db.Integer, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def bypass_set(self) -> frozenset:
        return frozenset(int(level) for level in (self.bypass_levels or []))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "override_type": self.override_type.value if self.override_type else None,
            "category": self.category.value if self.category else None,
            "conditions": self.conditions or {},
            "bypass_levels": sorted(self.bypass_set),
            "require_justification": self.require_justification,
            "max_amount": _amount(self.max_amount),
            "valid_from": _timestamp(self.valid_from),
            "valid_until": _timestamp(self.valid_until),
            "is_active": self.is_active,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": _timestamp(self.created_at),
            "updated_at": _timestamp(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalOverride {self.override_type.value if self.override_type else None} id={self.id}>"
