from datetime import timedelta

import pytest

from procureflow import mail
from procureflow.models import ApprovalStatus, ApprovalWorkflow, ApprovalWorkflowAction, AuditLog, db
from procureflow.services import approval_engine, catalog_service, escalation_service
from procureflow.services.errors import InvalidStateError
from procureflow.utils.helpers import utcnow


@pytest.fixture
def large_workflow(catalog):
    workflow = approval_engine.create_workflow(
        reference_id="PR-9000",
        reference_code="PR-9000",
        category="purchase_request",
        amount="9000",
        currency="AED",
        initiated_by=catalog.people.requester_id,
    )
    return workflow.id


def escalation_entries(workflow_id):
    return db.session.query(AuditLog).filter_by(action="action_escalated", entity_id=str(workflow_id)).all()


def test_step_within_window_is_left_alone(large_workflow):
    assert escalation_service.sweep(utcnow() + timedelta(hours=23)) == []

    workflow = db.session.get(ApprovalWorkflow, large_workflow)
    assert workflow.status == ApprovalStatus.PENDING


def test_overdue_step_escalates_once(large_workflow):
    later = utcnow() + timedelta(hours=25)

    escalated = escalation_service.sweep(later)

    workflow = db.session.get(ApprovalWorkflow, large_workflow)
    assert escalated == [workflow.actions[0].id]
    assert workflow.status == ApprovalStatus.ESCALATED
    assert workflow.version_id == 2
    assert workflow.actions[0].status == ApprovalStatus.ESCALATED
    assert workflow.actions[0].escalated_at == later
    assert [action.status for action in workflow.actions[1:]] == [ApprovalStatus.PENDING, ApprovalStatus.PENDING]

    assert escalation_service.sweep(later) == []
    assert escalation_service.sweep(later + timedelta(hours=1)) == []
    assert len(escalation_entries(large_workflow)) == 1


def test_escalated_step_can_still_be_approved(large_workflow, catalog):
    escalation_service.sweep(utcnow() + timedelta(hours=25))

    workflow = approval_engine.record_decision(large_workflow, 1, catalog.people.manager_id, "approve")

    assert workflow.status == ApprovalStatus.PENDING
    assert workflow.current_level == 2
    assert workflow.actions[1].became_current_at is not None


def test_terminal_workflows_are_not_escalated(large_workflow, catalog):
    approval_engine.record_decision(large_workflow, 1, catalog.people.manager_id, "reject", comment="Duplicate")

    assert escalation_service.sweep(utcnow() + timedelta(days=30)) == []
    assert escalation_entries(large_workflow) == []


def test_rules_without_window_never_escalate(catalog):
    workflow = approval_engine.create_workflow(
        reference_id="PR-2500",
        reference_code="PR-2500",
        category="purchase_request",
        amount="2500",
        currency="AED",
    )

    assert escalation_service.sweep(utcnow() + timedelta(days=365)) == []
    assert db.session.get(ApprovalWorkflow, workflow.id).status == ApprovalStatus.PENDING


def test_batch_size_limits_a_sweep(app, catalog):
    app.config["ESCALATION_BATCH_SIZE"] = 1
    for reference in ("PR-A", "PR-B"):
        approval_engine.create_workflow(
            reference_id=reference, reference_code=reference, category="purchase_request", amount="8000"
        )
    later = utcnow() + timedelta(hours=25)

    assert len(escalation_service.sweep(later)) == 1
    assert len(escalation_service.sweep(later)) == 1
    assert escalation_service.sweep(later) == []


def test_role_holders_are_notified(app, large_workflow):
    app.config["ESCALATION_NOTIFY_ENABLED"] = True

    with mail.record_messages() as outbox:
        escalation_service.sweep(utcnow() + timedelta(hours=25))

    assert len(outbox) == 1
    assert outbox[0].recipients == ["manager@example.com"]
    assert "PR-9000" in outbox[0].subject


def test_overdue_check_uses_workflow_window(large_workflow):
    action = db.session.query(ApprovalWorkflowAction).filter_by(workflow_id=large_workflow, sequence_order=1).one()

    assert not escalation_service.is_overdue(action, action.became_current_at + timedelta(hours=23, minutes=59))
    assert not escalation_service.is_overdue(action, action.became_current_at + timedelta(hours=24))
    assert escalation_service.is_overdue(action, action.became_current_at + timedelta(hours=24, seconds=1))


def test_sweep_at_exact_window_boundary_does_nothing(large_workflow):
    action = db.session.query(ApprovalWorkflowAction).filter_by(workflow_id=large_workflow, sequence_order=1).one()

    assert escalation_service.sweep(action.became_current_at + timedelta(hours=24)) == []
    assert escalation_service.sweep(action.became_current_at + timedelta(hours=24, seconds=1)) == [action.id]


def test_escalated_workflow_refuses_override(large_workflow):
    override_id = catalog_service.create_override(
        {"name": "Emergency", "override_type": "emergency_purchase", "bypass_levels": [2],
         "require_justification": False}
    ).entity.id
    escalation_service.sweep(utcnow() + timedelta(hours=25))

    with pytest.raises(InvalidStateError):
        approval_engine.apply_override(large_workflow, override_id)
    assert db.session.get(ApprovalWorkflow, large_workflow).override_id is None
