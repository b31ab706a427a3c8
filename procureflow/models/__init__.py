"""Application data models exposed for easy imports."""
from procureflow import db  # noqa: F401
from .department import Department  # noqa: F401
from .user import User, UserRole, UserApprovalRole  # noqa: F401
from .approval import (  # noqa: F401
    ApprovalCategory,
    ApprovalOverride,
    ApprovalRole,
    ApprovalRule,
    ApprovalRuleApprover,
    OverrideType,
)
from .workflow import (  # noqa: F401
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ApprovalStatus,
    ApprovalWorkflow,
    ApprovalWorkflowAction,
)
from .audit import ApprovalMatrixVersion, AuditLog  # noqa: F401

__all__ = [
    "db",
    "Department",
    "User",
    "UserRole",
    "UserApprovalRole",
    "ApprovalCategory",
    "ApprovalOverride",
    "ApprovalRole",
    "ApprovalRule",
    "ApprovalRuleApprover",
    "OverrideType",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "ApprovalStatus",
    "ApprovalWorkflow",
    "ApprovalWorkflowAction",
    "ApprovalMatrixVersion",
    "AuditLog",
]
