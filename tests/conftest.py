from types import SimpleNamespace

import pytest
from flask import g

from procureflow import create_app, db
from procureflow.models import Department, User, UserRole
from procureflow.services import catalog_service
from procureflow.services.audit_service import audit_recorder


@pytest.fixture
def app():
    app = create_app("testing")
    with app.app_context():
        db.create_all()
        audit_recorder.reset()
        yield app
        db.session.remove()
        db.drop_all()
        audit_recorder.reset()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id):
        # The test app context outlives requests, so drop the cached user.
        g.pop("_login_user", None)
        with client.session_transaction() as session:
            session["_user_id"] = str(user_id)
            session["_fresh"] = True
        return client

    return _login


def _user(name, email, role=UserRole.APPROVER, department=None):
    user = User(name=name, email=email, role=role, department=department)
    db.session.add(user)
    return user


@pytest.fixture
def people(app):
    """Departments and users; approval roles are granted by ``catalog``."""
    procurement = Department(code="PROC", name="Procurement")
    it = Department(code="IT", name="Information Technology")
    db.session.add_all([procurement, it])
    users = {
        "admin": _user("Admin", "admin@example.com", UserRole.ADMIN),
        "requester": _user("Rania Requester", "requester@example.com", UserRole.REQUESTER, procurement),
        "manager": _user("Omar Manager", "manager@example.com"),
        "director": _user("Dana Director", "director@example.com"),
        "cfo": _user("Chris CFO", "cfo@example.com"),
        "deputy": _user("Devi Deputy", "deputy@example.com"),
        "capped": _user("Casey Capped", "capped@example.com"),
    }
    db.session.commit()
    return SimpleNamespace(
        procurement_id=procurement.id,
        it_id=it.id,
        **{f"{key}_id": user.id for key, user in users.items()},
    )


@pytest.fixture
def catalog(people):
    """Purchase-request matrix in AED with three bands:

    ``[0, 1000)`` auto-approved, ``[1000, 5000)`` manager then director,
    ``[5000, open)`` manager, director, CFO with a 24 hour escalation window.
    """
    admin = people.admin_id
    roles = {}
    for level, (code, name) in enumerate(
        [("MGR", "Department Manager"), ("DIR", "Procurement Director"), ("CFO", "Chief Financial Officer")],
        start=1,
    ):
        roles[code] = catalog_service.create_role(
            {"code": code, "name": name, "hierarchy_level": level}, performed_by=admin
        ).entity.id

    small = catalog_service.create_rule(
        {
            "name": "PR small",
            "category": "purchase_request",
            "currency": "AED",
            "min_amount": 0,
            "max_amount": 1000,
            "auto_approve_below": 1000,
            "approvers": [{"sequence_order": 1, "approval_role_id": roles["MGR"]}],
        },
        performed_by=admin,
    ).entity.id
    medium = catalog_service.create_rule(
        {
            "name": "PR medium",
            "category": "purchase_request",
            "currency": "AED",
            "min_amount": 1000,
            "max_amount": 5000,
            "approvers": [
                {"sequence_order": 1, "approval_role_id": roles["MGR"], "can_delegate": True},
                {"sequence_order": 2, "approval_role_id": roles["DIR"]},
            ],
        },
        performed_by=admin,
    ).entity.id
    large = catalog_service.create_rule(
        {
            "name": "PR large",
            "category": "purchase_request",
            "currency": "AED",
            "min_amount": 5000,
            "max_amount": None,
            "escalation_hours": 24,
            "approvers": [
                {"sequence_order": 1, "approval_role_id": roles["MGR"]},
                {"sequence_order": 2, "approval_role_id": roles["DIR"]},
                {"sequence_order": 3, "approval_role_id": roles["CFO"]},
            ],
        },
        performed_by=admin,
    ).entity.id

    catalog_service.assign_user_role(people.manager_id, roles["MGR"], performed_by=admin)
    catalog_service.assign_user_role(people.director_id, roles["DIR"], performed_by=admin)
    catalog_service.assign_user_role(people.cfo_id, roles["CFO"], performed_by=admin)
    catalog_service.assign_user_role(people.capped_id, roles["MGR"], max_approval_amount=2000, performed_by=admin)

    return SimpleNamespace(
        people=people,
        roles=roles,
        small_rule_id=small,
        medium_rule_id=medium,
        large_rule_id=large,
    )
