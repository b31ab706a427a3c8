from datetime import datetime
from decimal import Decimal

import pytest

from procureflow.models import ApprovalCategory, OverrideType
from procureflow.services.rule_resolver import (
    ApproverStep,
    AutoApprove,
    CatalogSnapshot,
    NoRuleFound,
    OverrideSpec,
    ResolvedRule,
    RuleSpec,
    matching_rules,
    resolve,
    simulate,
)

PR = ApprovalCategory.PURCHASE_REQUEST


def rule(rule_id, low, high, department_id=None, auto_below=None, version=1, updated_at=None, steps=2,
         category=PR, currency="AED", active=True):
    return RuleSpec(
        id=rule_id,
        name=f"rule {rule_id}",
        category=category,
        min_amount=Decimal(low),
        max_amount=Decimal(high) if high is not None else None,
        currency=currency,
        department_id=department_id,
        auto_approve_below=Decimal(auto_below) if auto_below is not None else None,
        requires_sequential=True,
        escalation_hours=None,
        is_active=active,
        version=version,
        updated_at=updated_at,
        steps=tuple(ApproverStep(sequence_order=seq, approval_role_id=seq) for seq in range(1, steps + 1)),
    )


@pytest.fixture
def bands():
    return CatalogSnapshot(
        version_number=7,
        rules=(
            rule(1, "0", "1000", auto_below="1000", steps=1),
            rule(2, "1000", "5000"),
            rule(3, "5000", None, steps=3),
        ),
    )


@pytest.mark.parametrize(
    "amount, expected_rule",
    [("500", 1), ("1000", 2), ("4999.99", 2), ("5000", 3), ("1000000", 3)],
)
def test_band_coverage_is_half_open(bands, amount, expected_rule):
    result = resolve(bands, PR, Decimal(amount), "AED")

    assert not isinstance(result, NoRuleFound)
    assert result.rule.id == expected_rule


def test_auto_approve_boundary(bands):
    assert isinstance(resolve(bands, PR, Decimal("999.99"), "AED"), AutoApprove)
    assert isinstance(resolve(bands, PR, Decimal("1000"), "AED"), ResolvedRule)


def test_resolution_is_deterministic(bands):
    results = {resolve(bands, PR, Decimal("2500"), "aed") for _ in range(5)}

    assert len(results) == 1


def test_no_rule_for_other_currency_or_category(bands):
    assert isinstance(resolve(bands, PR, Decimal("2500"), "USD"), NoRuleFound)
    assert isinstance(resolve(bands, ApprovalCategory.CAPEX, Decimal("2500"), "AED"), NoRuleFound)


def test_inactive_rules_are_ignored():
    catalog = CatalogSnapshot(version_number=1, rules=(rule(1, "0", None, active=False),))

    assert isinstance(resolve(catalog, PR, Decimal("10"), "AED"), NoRuleFound)


def test_department_rule_takes_priority_over_wildcard():
    catalog = CatalogSnapshot(
        version_number=1,
        rules=(rule(1, "0", None), rule(2, "0", None, department_id=9)),
    )

    assert resolve(catalog, PR, Decimal("100"), "AED", department_id=9).rule.id == 2
    assert resolve(catalog, PR, Decimal("100"), "AED", department_id=4).rule.id == 1
    assert resolve(catalog, PR, Decimal("100"), "AED").rule.id == 1


def test_overlapping_rules_pick_most_recent_and_report_conflict():
    older = rule(1, "0", "5000", version=2, updated_at=datetime(2026, 1, 1))
    newer = rule(2, "1000", "8000", version=2, updated_at=datetime(2026, 3, 1))
    catalog = CatalogSnapshot(version_number=1, rules=(older, newer))

    result = resolve(catalog, PR, Decimal("2000"), "AED")

    assert result.rule.id == 2
    assert result.conflicting_rule_ids == (1,)


def test_higher_rule_version_wins_before_timestamp():
    catalog = CatalogSnapshot(
        version_number=1,
        rules=(rule(1, "0", None, version=5), rule(2, "0", None, version=3, updated_at=datetime(2026, 6, 1))),
    )

    assert resolve(catalog, PR, Decimal("1"), "AED").rule.id == 1


def test_matching_rules_filters_band_and_scope(bands):
    matches = matching_rules(bands.rules, PR, Decimal("5000"), "AED", None)

    assert [match.id for match in matches] == [3]


def test_overlap_detection_respects_half_open_bands():
    assert not rule(1, "0", "1000").overlaps(rule(2, "1000", "5000"))
    assert rule(1, "0", "1001").overlaps(rule(2, "1000", "5000"))
    assert rule(1, "0", None).overlaps(rule(2, "1000000", None))
    assert not rule(1, "0", None).overlaps(rule(2, "0", None, department_id=3))


def test_override_window_category_and_cap():
    override = OverrideSpec(
        id=1,
        name="Emergency",
        override_type=OverrideType.EMERGENCY_PURCHASE,
        category=PR,
        bypass_levels=frozenset({2}),
        require_justification=True,
        max_amount=Decimal("10000"),
        valid_from=datetime(2026, 1, 1),
        valid_until=datetime(2026, 12, 31),
        is_active=True,
        version=1,
    )

    assert override.is_valid_at(datetime(2026, 6, 1))
    assert not override.is_valid_at(datetime(2027, 1, 1))
    assert override.applies_to(PR)
    assert not override.applies_to(ApprovalCategory.CAPEX)
    assert override.allows_amount(Decimal("10000"))
    assert not override.allows_amount(Decimal("10000.01"))


def test_simulate_describes_path(bands):
    preview = simulate(bands, PR, Decimal("7500"), "AED")

    assert preview["rule"]["id"] == 3
    assert preview["auto_approved"] is False
    assert [step["sequence_order"] for step in preview["approval_path"]] == [1, 2, 3]
    assert preview["matrix_version"] == 7


def test_simulate_without_rule(bands):
    preview = simulate(bands, PR, Decimal("10"), "EUR")

    assert preview["rule"] is None
    assert preview["approval_path"] == []


def test_snapshot_round_trips_from_stored_json():
    data = {
        "roles": [{"id": 1, "code": "MGR", "name": "Manager", "hierarchy_level": 1, "is_active": True}],
        "rules": [
            {
                "id": 4,
                "name": "PR",
                "category": "purchase_request",
                "min_amount": 0.0,
                "max_amount": 1000.0,
                "currency": "AED",
                "department_id": None,
                "auto_approve_below": None,
                "requires_sequential": True,
                "escalation_hours": 12,
                "is_active": True,
                "version": 3,
                "updated_at": "2026-02-01T10:00:00",
            }
        ],
        "approvers": [
            {"id": 9, "rule_id": 4, "approval_role_id": 1, "sequence_order": 1, "is_mandatory": True,
             "can_delegate": False},
        ],
        "overrides": [],
    }

    snapshot = CatalogSnapshot.from_dict(2, data)
    result = resolve(snapshot, PR, Decimal("999.99"), "AED")

    assert isinstance(result, ResolvedRule)
    assert result.rule.version == 3
    assert result.rule.steps == (ApproverStep(sequence_order=1, approval_role_id=1),)
    assert snapshot.role(1).code == "MGR"
