"""Audit logging and approval matrix version models."""
from __future__ import annotations

from procureflow import db
from procureflow.utils.helpers import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(120), nullable=False, index=True)
    entity_type = db.Column(db.String(120), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    performed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (db.Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "performed_by": self.performed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<AuditLog {self.entity_type}#{self.entity_id} action={self.action}>"


class ApprovalMatrixVersion(db.Model):
    __tablename__ = "approval_matrix_versions"

    id = db.Column(db.Integer, primary_key=True)
    version_number = db.Column(db.Integer, unique=True, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False)
    change_summary = db.Column(db.String(500), nullable=True)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self, include_snapshot: bool = False) -> dict:
        payload = {
            "id": self.id,
            "version_number": self.version_number,
            "change_summary": self.change_summary,
            "changed_by": self.changed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_snapshot:
            payload["snapshot"] = self.snapshot
        return payload

    def __repr__(self) -> str:
        return f"<ApprovalMatrixVersion v{self.version_number}>"
