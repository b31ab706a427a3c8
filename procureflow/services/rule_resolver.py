"""Rule resolution against an immutable, versioned snapshot of the approval catalog.

The resolver never touches the database. Callers hand it a ``CatalogSnapshot``
(see ``catalog_service.get_active_catalog``) and receive one of three tagged
results: ``ResolvedRule``, ``AutoApprove`` or ``NoRuleFound``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from procureflow.models.approval import ApprovalCategory, OverrideType


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class RoleSpec:
    id: int
    code: str
    name: str
    hierarchy_level: int
    is_active: bool


@dataclass(frozen=True)
class ApproverStep:
    sequence_order: int
    approval_role_id: int
    is_mandatory: bool = True
    can_delegate: bool = False


@dataclass(frozen=True)
class RuleSpec:
    id: int
    name: str
    category: ApprovalCategory
    min_amount: Decimal
    max_amount: Optional[Decimal]
    currency: str
    department_id: Optional[int]
    auto_approve_below: Optional[Decimal]
    requires_sequential: bool
    escalation_hours: Optional[int]
    is_active: bool
    version: int
    updated_at: Optional[datetime] = None
    steps: Tuple[ApproverStep, ...] = ()

    def covers(self, amount: Decimal) -> bool:
        """Half-open band test: ``min_amount <= amount < max_amount``."""
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount < self.max_amount

    def auto_approves(self, amount: Decimal) -> bool:
        return self.auto_approve_below is not None and amount < self.auto_approve_below

    def overlaps(self, other: "RuleSpec") -> bool:
        if (self.category, self.currency, self.department_id) != (other.category, other.currency, other.department_id):
            return False
        self_upper = self.max_amount
        other_upper = other.max_amount
        starts_before_other_ends = other_upper is None or self.min_amount < other_upper
        other_starts_before_self_ends = self_upper is None or other.min_amount < self_upper
        return starts_before_other_ends and other_starts_before_self_ends

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "min_amount": float(self.min_amount),
            "max_amount": float(self.max_amount) if self.max_amount is not None else None,
            "currency": self.currency,
            "department_id": self.department_id,
            "auto_approve_below": float(self.auto_approve_below) if self.auto_approve_below is not None else None,
            "requires_sequential": self.requires_sequential,
            "escalation_hours": self.escalation_hours,
            "version": self.version,
        }


@dataclass(frozen=True)
class OverrideSpec:
    id: int
    name: str
    override_type: OverrideType
    category: Optional[ApprovalCategory]
    bypass_levels: frozenset
    require_justification: bool
    max_amount: Optional[Decimal]
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]
    is_active: bool
    version: int

    def is_valid_at(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        if self.valid_from is not None and moment < self.valid_from:
            return False
        return self.valid_until is None or moment <= self.valid_until

    def applies_to(self, category: ApprovalCategory) -> bool:
        return self.category is None or self.category == category

    def allows_amount(self, amount: Decimal) -> bool:
        return self.max_amount is None or amount <= self.max_amount


@dataclass(frozen=True)
class CatalogSnapshot:
    version_number: int
    rules: Tuple[RuleSpec, ...] = ()
    roles: Tuple[RoleSpec, ...] = ()
    overrides: Tuple[OverrideSpec, ...] = ()

    def rule(self, rule_id: int) -> Optional[RuleSpec]:
        return next((rule for rule in self.rules if rule.id == rule_id), None)

    def role(self, role_id: int) -> Optional[RoleSpec]:
        return next((role for role in self.roles if role.id == role_id), None)

    def override(self, override_id: int) -> Optional[OverrideSpec]:
        return next((item for item in self.overrides if item.id == override_id), None)

    @classmethod
    def from_dict(cls, version_number: int, data: Dict[str, Any]) -> "CatalogSnapshot":
        """Rebuild a snapshot from the JSON stored in ``ApprovalMatrixVersion``."""
        steps_by_rule: Dict[int, list] = {}
        for approver in data.get("approvers", []):
            steps_by_rule.setdefault(approver["rule_id"], []).append(
                ApproverStep(
                    sequence_order=approver["sequence_order"],
                    approval_role_id=approver["approval_role_id"],
                    is_mandatory=approver["is_mandatory"],
                    can_delegate=approver["can_delegate"],
                )
            )
        rules = tuple(
            RuleSpec(
                id=rule["id"],
                name=rule["name"],
                category=ApprovalCategory(rule["category"]),
                min_amount=_decimal(rule["min_amount"]),
                max_amount=_decimal(rule["max_amount"]),
                currency=rule["currency"],
                department_id=rule["department_id"],
                auto_approve_below=_decimal(rule["auto_approve_below"]),
                requires_sequential=rule["requires_sequential"],
                escalation_hours=rule["escalation_hours"],
                is_active=rule["is_active"],
                version=rule["version"],
                updated_at=_datetime(rule.get("updated_at")),
                steps=tuple(sorted(steps_by_rule.get(rule["id"], []), key=lambda step: step.sequence_order)),
            )
            for rule in data.get("rules", [])
        )
        roles = tuple(
            RoleSpec(
                id=role["id"],
                code=role["code"],
                name=role["name"],
                hierarchy_level=role["hierarchy_level"],
                is_active=role["is_active"],
            )
            for role in data.get("roles", [])
        )
        overrides = tuple(
            OverrideSpec(
                id=item["id"],
                name=item["name"],
                override_type=OverrideType(item["override_type"]),
                category=ApprovalCategory(item["category"]) if item["category"] else None,
                bypass_levels=frozenset(item["bypass_levels"]),
                require_justification=item["require_justification"],
                max_amount=_decimal(item["max_amount"]),
                valid_from=_datetime(item["valid_from"]),
                valid_until=_datetime(item["valid_until"]),
                is_active=item["is_active"],
                version=item["version"],
            )
            for item in data.get("overrides", [])
        )
        return cls(version_number=version_number, rules=rules, roles=roles, overrides=overrides)


@dataclass(frozen=True)
class ResolvedRule:
    rule: RuleSpec
    conflicting_rule_ids: Tuple[int, ...] = field(default=())


@dataclass(frozen=True)
class AutoApprove:
    rule: RuleSpec
    conflicting_rule_ids: Tuple[int, ...] = field(default=())


@dataclass(frozen=True)
class NoRuleFound:
    category: ApprovalCategory
    amount: Decimal
    currency: str
    department_id: Optional[int]


Resolution = Union[ResolvedRule, AutoApprove, NoRuleFound]


def _recency_key(rule: RuleSpec):
    return (rule.version, rule.updated_at or datetime.min, rule.id)


def matching_rules(
    rules: Iterable[RuleSpec],
    category: ApprovalCategory,
    amount: Decimal,
    currency: str,
    department_id: Optional[int],
) -> Tuple[RuleSpec, ...]:
    """Active rules whose scope and band contain the transaction, best tier only."""
    currency = currency.upper()
    in_band = [
        rule
        for rule in rules
        if rule.is_active
        and rule.category == category
        and rule.currency.upper() == currency
        and rule.covers(amount)
    ]
    if department_id is not None:
        specific = [rule for rule in in_band if rule.department_id == department_id]
        if specific:
            return tuple(specific)
    return tuple(rule for rule in in_band if rule.department_id is None)


def resolve(
    catalog: CatalogSnapshot,
    category: ApprovalCategory,
    amount: Decimal,
    currency: str,
    department_id: Optional[int] = None,
) -> Resolution:
    """Pick the single best-matching active rule for a transaction."""
    candidates = matching_rules(catalog.rules, category, amount, currency, department_id)
    if not candidates:
        return NoRuleFound(category=category, amount=amount, currency=currency.upper(), department_id=department_id)

    ordered = sorted(candidates, key=_recency_key, reverse=True)
    chosen = ordered[0]
    conflicts = tuple(rule.id for rule in ordered[1:])

    if chosen.auto_approves(amount):
        return AutoApprove(rule=chosen, conflicting_rule_ids=conflicts)
    return ResolvedRule(rule=chosen, conflicting_rule_ids=conflicts)


def simulate(
    catalog: CatalogSnapshot,
    category: ApprovalCategory,
    amount: Decimal,
    currency: str,
    department_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Describe what ``resolve`` would do without creating anything."""
    result = resolve(catalog, category, amount, currency, department_id)
    if isinstance(result, NoRuleFound):
        return {"rule": None, "auto_approved": False, "approval_path": [], "matrix_version": catalog.version_number}

    path = []
    if isinstance(result, ResolvedRule):
        for step in result.rule.steps:
            role = catalog.role(step.approval_role_id)
            path.append(
                {
                    "sequence_order": step.sequence_order,
                    "approval_role_id": step.approval_role_id,
                    "approval_role_code": role.code if role else None,
                    "is_mandatory": step.is_mandatory,
                    "can_delegate": step.can_delegate,
                }
            )
    return {
        "rule": result.rule.to_dict(),
        "auto_approved": isinstance(result, AutoApprove),
        "approval_path": path,
        "conflicting_rule_ids": list(result.conflicting_rule_ids),
        "matrix_version": catalog.version_number,
    }
