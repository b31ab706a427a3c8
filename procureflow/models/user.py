"""User-related models."""
from __future__ import annotations

import enum

from flask_login import UserMixin

from procureflow import db


class UserRole(enum.Enum):
    ADMIN = "ADMIN"
    APPROVER = "APPROVER"
    REQUESTER = "REQUESTER"


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    role = db.Column(db.Enum(UserRole, name="user_role"), nullable=False, default=UserRole.REQUESTER)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    department = db.relationship("Department", lazy="joined")
    approval_roles = db.relationship(
        "UserApprovalRole",
        foreign_keys="UserApprovalRole.user_id",
        back_populates="user",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def get_id(self) -> str:
        return str(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "department_id": self.department_id,
            "is_active": self.is_active,
            "approval_roles": [assignment.approval_role_id for assignment in self.approval_roles if assignment.is_active],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class UserApprovalRole(db.Model):
    """Assignment of a user to an approval role, optionally capped by amount."""

    __tablename__ = "user_approval_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "approval_role_id", name="uq_user_approval_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approval_role_id = db.Column(db.Integer, db.ForeignKey("approval_roles.id"), nullable=False, index=True)
    max_approval_amount = db.Column(db.Numeric(14, 2), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    assigned_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    user = db.relationship("User", foreign_keys=[user_id], back_populates="approval_roles")
    approval_role = db.relationship("ApprovalRole", lazy="joined")

    def covers(self, amount) -> bool:
        return self.max_approval_amount is None or amount <= self.max_approval_amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "approval_role_id": self.approval_role_id,
            "max_approval_amount": float(self.max_approval_amount)
            if self.max_approval_amount is not None
            else None,
            "is_active": self.is_active,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }

    def __repr__(self) -> str:
        return f"<UserApprovalRole user_id={self.user_id} role_id={self.approval_role_id}>"
