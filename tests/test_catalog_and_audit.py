from datetime import datetime

import pytest

from procureflow.models import ApprovalCategory, ApprovalMatrixVersion, ApprovalRule, AuditLog, db
from procureflow.services import approval_engine, catalog_service
from procureflow.services.audit_service import (
    AuditRecorder,
    audit_recorder,
    catalog_as_of,
    diff_snapshots,
    get_matrix_version,
    latest_matrix_version,
)
from procureflow.services.errors import (
    AuditWriteFailure,
    ConcurrentModificationError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from procureflow.services.rule_resolver import ResolvedRule, resolve


def submit(reference, amount, **kwargs):
    return approval_engine.create_workflow(
        reference_id=reference,
        reference_code=reference,
        category="purchase_request",
        amount=amount,
        currency="AED",
        **kwargs,
    )


def test_every_catalog_write_produces_a_matrix_version(catalog):
    assert latest_matrix_version() == 6
    summaries = [version.change_summary for version in db.session.query(ApprovalMatrixVersion).order_by(
        ApprovalMatrixVersion.version_number)]
    assert summaries[0] == "Added role: MGR"
    assert summaries[-1] == "Added rule: PR large"


def test_overlapping_band_is_rejected(catalog):
    with pytest.raises(ValidationError) as excinfo:
        catalog_service.create_rule(
            {"name": "Overlap", "category": "purchase_request", "currency": "AED", "min_amount": 4000,
             "max_amount": 6000},
            performed_by=catalog.people.admin_id,
        )

    assert excinfo.value.details["conflicting_rule_id"] in {catalog.medium_rule_id, catalog.large_rule_id}
    assert latest_matrix_version() == 6
    assert db.session.query(ApprovalRule).count() == 3


def test_department_rule_may_share_band_with_wildcard(catalog):
    result = catalog_service.create_rule(
        {
            "name": "IT medium",
            "category": "purchase_request",
            "currency": "AED",
            "department_id": catalog.people.it_id,
            "min_amount": 1000,
            "max_amount": 5000,
            "approvers": [{"sequence_order": 1, "approval_role_id": catalog.roles["DIR"]}],
        },
        performed_by=catalog.people.admin_id,
    )

    it_workflow = submit("IT-1", "2500", department_id=catalog.people.it_id)
    other = submit("PROC-1", "2500", department_id=catalog.people.procurement_id)

    assert it_workflow.rule_id == result.entity.id
    assert len(it_workflow.actions) == 1
    assert other.rule_id == catalog.medium_rule_id


def test_invalid_band_is_rejected(catalog):
    with pytest.raises(ValidationError):
        catalog_service.create_rule(
            {"name": "Backwards", "category": "capex", "currency": "AED", "min_amount": 500, "max_amount": 100},
        )
    with pytest.raises(ValidationError):
        catalog_service.create_rule({"name": "Bad currency", "category": "capex", "currency": "dirhams"})


def test_rule_edit_bumps_version_and_snapshot_diff(catalog):
    before = submit("PR-OLD", "2500")
    assert before.rule_version == 1

    result = catalog_service.update_rule(
        catalog.medium_rule_id, {"escalation_hours": 12, "version": 1}, performed_by=catalog.people.admin_id
    )

    assert result.entity.version == 2
    assert result.matrix_version == 7
    diff = diff_snapshots(get_matrix_version(6).snapshot, get_matrix_version(7).snapshot)
    assert diff["rules"] == {"added": [], "removed": [], "changed": [catalog.medium_rule_id]}
    assert all(diff[section] == {"added": [], "removed": [], "changed": []}
               for section in ("roles", "approvers", "overrides"))

    after = submit("PR-NEW", "2500")
    assert after.rule_version == 2
    assert after.escalation_hours == 12
    assert db.session.get(type(before), before.id).rule_version == 1


def test_each_edit_moves_the_version_by_one(catalog):
    renamed = catalog_service.update_rule(catalog.medium_rule_id, {"name": "renamed"})
    assert renamed.entity.version == 2

    widened = catalog_service.update_rule(catalog.large_rule_id, {"min_amount": 5000, "escalation_hours": 48})
    assert widened.entity.version == 2

    deactivated = catalog_service.deactivate_rule(catalog.medium_rule_id)
    assert deactivated.entity.version == 3

    override = catalog_service.create_override(
        {"name": "Budget", "override_type": "budget_override", "bypass_levels": [2]}
    ).entity.id
    edited = catalog_service.update_override(override, {"bypass_levels": [2, 3]})
    assert edited.entity.version == 2

    audit = db.session.query(AuditLog).filter_by(action="EditRule", entity_id=str(catalog.medium_rule_id)).one()
    assert audit.old_values["version"] == 1
    assert audit.new_values["version"] == 2


def test_stale_rule_version_is_rejected(catalog):
    catalog_service.update_rule(catalog.medium_rule_id, {"name": "PR medium v2"})

    with pytest.raises(ConcurrentModificationError):
        catalog_service.update_rule(catalog.medium_rule_id, {"name": "PR medium v3", "version": 1})


def test_historical_catalog_resolves_with_old_rule_version(catalog):
    catalog_service.update_rule(catalog.medium_rule_id, {"escalation_hours": 6})

    old = catalog_as_of(6)
    result = resolve(old, ApprovalCategory.PURCHASE_REQUEST, 2500, "AED")

    assert isinstance(result, ResolvedRule)
    assert result.rule.version == 1
    assert result.rule.escalation_hours is None
    with pytest.raises(NotFoundError):
        catalog_as_of(99)


def test_approver_steps_are_versioned(catalog):
    result = catalog_service.add_rule_approver(
        catalog.medium_rule_id, {"sequence_order": 3, "approval_role_id": catalog.roles["CFO"]}
    )
    assert result.entity.version == 2
    assert [step.sequence_order for step in result.entity.approvers] == [1, 2, 3]

    with pytest.raises(ValidationError):
        catalog_service.add_rule_approver(
            catalog.medium_rule_id, {"sequence_order": 3, "approval_role_id": catalog.roles["MGR"]}
        )

    step = result.entity.approvers[-1]
    removed = catalog_service.remove_rule_approver(catalog.medium_rule_id, step.id)
    assert removed.entity.version == 3
    assert len(removed.entity.approvers) == 2


def test_deactivated_rule_blocks_submission(catalog):
    catalog_service.deactivate_rule(catalog.medium_rule_id)

    with pytest.raises(ConfigurationError):
        submit("PR-X", "2500")


def test_override_definition_is_validated(catalog):
    with pytest.raises(ValidationError):
        catalog_service.create_override({"name": "Empty", "override_type": "budget_override", "bypass_levels": []})
    with pytest.raises(ValidationError):
        catalog_service.create_override(
            {
                "name": "Backwards",
                "override_type": "budget_override",
                "bypass_levels": [1],
                "valid_from": "2026-05-01T00:00:00",
                "valid_until": "2026-04-01T00:00:00",
            }
        )
    with pytest.raises(ValidationError):
        catalog_service.create_override({"name": "Odd", "override_type": "whim", "bypass_levels": [1]})


def test_expired_override_cannot_be_applied(catalog):
    override = catalog_service.create_override(
        {
            "name": "Year-end",
            "override_type": "budget_override",
            "bypass_levels": [2],
            "require_justification": False,
            "valid_until": datetime(2020, 1, 1).isoformat(),
        }
    ).entity.id
    workflow = submit("PR-Y", "7500")

    with pytest.raises(ValidationError):
        approval_engine.apply_override(workflow.id, override)


def test_role_assignment_is_audited(catalog):
    catalog_service.revoke_user_role(catalog.people.capped_id, catalog.roles["MGR"], performed_by=catalog.people.admin_id)

    actions = [entry.action for entry in db.session.query(AuditLog).filter_by(entity_type="user_approval_roles")]
    assert actions.count("AssignApprover") == 4
    assert actions.count("RevokeApprover") == 1


def test_audit_failure_is_queued_and_retried(catalog, monkeypatch):
    def broken(self, payload):
        raise AuditWriteFailure("disk full")

    monkeypatch.setattr(AuditRecorder, "_build", broken)
    workflow = submit("PR-Z", "2500")
    monkeypatch.undo()

    assert workflow.id is not None
    assert audit_recorder.pending_count == 1
    assert db.session.query(AuditLog).filter_by(action="workflow_initiated").count() == 0

    assert audit_recorder.flush_pending() == 1
    assert audit_recorder.pending_count == 0
    entry = db.session.query(AuditLog).filter_by(action="workflow_initiated").one()
    assert entry.entity_id == str(workflow.id)


def test_unserialisable_values_do_not_block_the_retry_queue(app):
    class Opaque:
        def __repr__(self):
            return "<Opaque blob>"

    assert audit_recorder.record("blob_attached", "approval_workflows", 1, new_values={"blob": Opaque()}) is None
    assert audit_recorder.record("blob_attached", "approval_workflows", 2, new_values={"blob": Opaque()}) is None
    audit_recorder.record("workflow_initiated", "approval_workflows", 3, new_values={"status": "pending"})
    db.session.commit()

    assert audit_recorder.pending_count == 2
    assert audit_recorder.flush_pending() == 2
    assert audit_recorder.pending_count == 0
    blobs = db.session.query(AuditLog).filter_by(action="blob_attached").order_by(AuditLog.entity_id).all()
    assert [entry.new_values for entry in blobs] == [{"blob": "<Opaque blob>"}, {"blob": "<Opaque blob>"}]
    assert db.session.query(AuditLog).filter_by(action="workflow_initiated").count() == 1


def test_entry_that_keeps_failing_is_parked(app, monkeypatch):
    build = AuditRecorder._build
    failing = {"poison", "later"}

    def flaky(self, payload):
        if payload["action"] in failing:
            raise AuditWriteFailure("still broken")
        return build(self, payload)

    monkeypatch.setattr(AuditRecorder, "_build", flaky)
    audit_recorder.record("poison", "approval_workflows", 1)
    audit_recorder.record("later", "approval_workflows", 2)
    failing.discard("later")

    assert audit_recorder.flush_pending() == 1
    assert audit_recorder.pending_count == 0
    assert [payload["action"] for payload in audit_recorder.dead_letters] == ["poison"]
    assert db.session.query(AuditLog).filter_by(action="later").count() == 1


def test_export_contains_current_catalog(catalog):
    exported = catalog_service.export_matrix()

    assert exported["matrix_version"] == 6
    assert {rule["name"] for rule in exported["catalog"]["rules"]} == {"PR small", "PR medium", "PR large"}
    assert len(exported["catalog"]["approvers"]) == 6
