import uuid

import pytest

from servicequeue.models.models import (
    ActivityLog,
    ActivityType,
    Agent,
    Company,
    Notification,
    NotificationType,
    User,
    UserRole,
)
from servicequeue.schemas.admin import CustomerDetailsUpdate, UserCreate
from servicequeue.services import admin as admin_service
from servicequeue.services.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError


@pytest.fixture
def office(make_company, make_user):
    company = make_company("First Agency")
    return {
        "company": company,
        "admin": make_user(UserRole.SUPER_ADMIN, first_name="Robin"),
        "customer": make_user(UserRole.CUSTOMER, company, first_name="Casey"),
        "agent": make_user(UserRole.AGENT, first_name="Alex"),
        "manager": make_user(UserRole.AGENT_MANAGER, company, first_name="Morgan"),
    }


def _inbox(db, user):
    return db.query(Notification).filter(Notification.user_id == user.id).all()


def _details(**overrides):
    data = {
        "company_name": "First Agency Holdings",
        "first_name": "Jordan",
        "last_name": "Lee",
        "email": "Jordan.Lee@example.test",
        "login_code": "JLEE2026",
    }
    data.update(overrides)
    return CustomerDetailsUpdate(**data)


def test_generated_codes_use_the_code_alphabet():
    code = admin_service.generate_code()
    assert len(code) == admin_service.CODE_LENGTH
    assert set(code) <= set(admin_service.CODE_ALPHABET)


def test_create_agent_user_adds_agent_row_and_notifies_admin(db, office, actor_for, notifier):
    data = UserCreate(first_name="Sam", last_name="Reyes", email="Sam@Example.test", role="agent")

    user = admin_service.create_user(db, data, actor_for(office["admin"]), notifier=notifier)

    assert user.email == "sam@example.test"
    assert len(user.login_code) == admin_service.CODE_LENGTH
    assert db.query(Agent).filter(Agent.user_id == user.id).count() == 1
    [notification] = _inbox(db, office["admin"])
    assert notification.type == NotificationType.USER_CREATED
    assert notification.message == "User Sam Reyes (agent) has been created successfully"
    log = db.query(ActivityLog).filter(ActivityLog.type == ActivityType.USER_CREATED).one()
    assert log.user_id == office["admin"].id


def test_create_user_rules(db, office, actor_for, notifier):
    admin = actor_for(office["admin"])

    with pytest.raises(ValidationError) as exc:
        admin_service.create_user(
            db, UserCreate(first_name="Pat", last_name="Doe", email="pat@example.test", role="customer"), admin,
            notifier=notifier,
        )
    assert exc.value.field == "company_id"

    taken = UserCreate(first_name="Pat", last_name="Doe", email=office["agent"].email, role="agent")
    with pytest.raises(ConflictError):
        admin_service.create_user(db, taken, admin, notifier=notifier)

    with pytest.raises(AuthorizationError):
        admin_service.create_user(
            db, UserCreate(first_name="Pat", last_name="Doe", email="pat@example.test", role="agent"),
            actor_for(office["manager"]), notifier=notifier,
        )


def test_promotion_goes_through_the_role_change(db, office, actor_for, notifier):
    promoted = admin_service.change_agent_role(
        db, office["agent"].id, UserRole.AGENT_MANAGER, actor_for(office["admin"]), notifier=notifier
    )

    assert promoted.role == UserRole.AGENT_MANAGER
    [mine] = _inbox(db, office["agent"])
    assert mine.type == NotificationType.USER_PROMOTED
    [theirs] = _inbox(db, office["admin"])
    assert theirs.title == "User Role Updated"


def test_role_change_only_moves_between_agent_roles(db, office, actor_for, notifier):
    admin = actor_for(office["admin"])

    with pytest.raises(ValidationError):
        admin_service.change_agent_role(db, office["agent"].id, UserRole.SUPER_ADMIN, admin, notifier=notifier)
    with pytest.raises(ValidationError) as exc:
        admin_service.change_agent_role(db, office["customer"].id, UserRole.AGENT, admin, notifier=notifier)
    assert exc.value.message == "Can only promote/demote agent roles"
    with pytest.raises(NotFoundError):
        admin_service.change_agent_role(db, uuid.uuid4(), UserRole.AGENT, admin, notifier=notifier)

    # Same role again is a no-op
    admin_service.change_agent_role(db, office["agent"].id, UserRole.AGENT, admin, notifier=notifier)
    assert db.query(Notification).count() == 0


def test_login_code_reset_retries_on_collision(db, office, actor_for, notifier, monkeypatch):
    office["manager"].login_code = "TAKEN01"
    office["agent"].login_code = "OLDCODE"
    db.commit()
    codes = iter(["TAKEN01", "FRESH01"])
    monkeypatch.setattr(admin_service, "generate_code", lambda: next(codes))

    user, old_code = admin_service.reset_login_code(db, office["agent"].id, actor_for(office["admin"]), notifier=notifier)

    assert old_code == "OLDCODE"
    assert user.login_code == "FRESH01"
    [notification] = _inbox(db, office["agent"])
    assert notification.type == NotificationType.LOGIN_CODE_RESET
    assert notification.metadata_json == {"old_code": "OLDCODE", "new_code": "FRESH01"}
    assert db.query(ActivityLog).count() == 0


def test_company_code_reset_gives_up_after_repeated_collisions(db, office, actor_for, notifier, monkeypatch):
    existing = office["company"].company_code
    monkeypatch.setattr(admin_service, "generate_code", lambda: existing)

    with pytest.raises(ConflictError):
        admin_service.reset_company_code(db, office["company"].id, actor_for(office["admin"]), notifier=notifier)

    db.expire_all()
    assert db.get(Company, office["company"].id).company_code == existing
    assert db.query(Notification).count() == 0


def test_company_code_reset_notifies_admin(db, office, actor_for, notifier):
    old = office["company"].company_code

    company, old_code = admin_service.reset_company_code(
        db, office["company"].id, actor_for(office["admin"]), notifier=notifier
    )

    assert old_code == old
    assert company.company_code != old
    [notification] = _inbox(db, office["admin"])
    assert notification.type == NotificationType.COMPANY_CODE_RESET
    assert notification.metadata_json["new_code"] == company.company_code
    log = db.query(ActivityLog).filter(ActivityLog.type == ActivityType.COMPANY_UPDATED).one()
    assert log.company_id == office["company"].id


def test_customer_details_update_the_company_contact(db, office, actor_for, notifier):
    company, user, created = admin_service.update_customer_details(
        db, office["company"].id, _details(user_id=office["customer"].id), actor_for(office["admin"]),
        notifier=notifier,
    )

    assert created is False
    assert user.id == office["customer"].id
    assert user.email == "jordan.lee@example.test"
    assert user.login_code == "JLEE2026"
    assert user.role == UserRole.CUSTOMER_ADMIN
    assert company.company_name == "First Agency Holdings"
    assert company.primary_contact == "Jordan Lee"
    [notification] = _inbox(db, office["admin"])
    assert notification.title == "Customer Details Updated"


def test_customer_details_create_a_contact_for_an_empty_company(db, office, actor_for, make_company, notifier):
    empty = make_company("Second Agency")

    _, user, created = admin_service.update_customer_details(
        db, empty.id, _details(), actor_for(office["admin"]), notifier=notifier
    )

    assert created is True
    assert user.company_id == empty.id
    titles = sorted(n.title for n in _inbox(db, office["admin"]))
    assert titles == ["Customer Details Updated", "New User Created"]


def test_customer_details_conflict_changes_nothing(db, office, actor_for, notifier):
    with pytest.raises(ConflictError) as exc:
        admin_service.update_customer_details(
            db, office["company"].id, _details(user_id=office["customer"].id, email=office["agent"].email),
            actor_for(office["admin"]), notifier=notifier,
        )
    assert exc.value.field == "email"

    db.expire_all()
    assert db.get(Company, office["company"].id).company_name == "First Agency"
    assert db.get(User, office["customer"].id).first_name == "Casey"


def test_customer_details_user_must_belong_to_the_company(db, office, actor_for, notifier):
    with pytest.raises(NotFoundError) as exc:
        admin_service.update_customer_details(
            db, office["company"].id, _details(user_id=office["agent"].id), actor_for(office["admin"]),
            notifier=notifier,
        )
    assert exc.value.field == "user_id"


def test_admin_routes_require_super_admin(client, office, auth):
    body = {"first_name": "Sam", "last_name": "Reyes", "email": "sam@example.test", "role": "agent"}

    assert client.post("/admin/users", json=body, headers=auth(office["manager"])).status_code == 403

    r = client.post("/admin/users", json=body, headers=auth(office["admin"]))
    assert r.status_code == 201, r.text
    assert r.json()["role"] == "agent"
    assert "login_code" not in r.json()


def test_admin_routes_over_http(client, office, auth, db):
    headers = auth(office["admin"])

    promoted = client.post(f"/admin/agents/{office['agent'].id}/role", json={"role": "agent_manager"}, headers=headers)
    assert promoted.status_code == 200, promoted.text
    assert promoted.json()["role"] == "agent_manager"

    reset = client.post(f"/admin/users/{office['agent'].id}/reset-code", headers=headers)
    assert reset.status_code == 200
    assert len(reset.json()["new_code"]) == admin_service.CODE_LENGTH

    company_reset = client.post(f"/admin/companies/{office['company'].id}/reset-code", headers=headers).json()
    assert company_reset["new_code"] != company_reset["old_code"]

    details = client.put(
        f"/admin/companies/{office['company'].id}/details",
        json={
            "user_id": str(office["customer"].id),
            "company_name": "First Agency Holdings",
            "first_name": "Jordan",
            "last_name": "Lee",
            "email": "jordan@example.test",
            "login_code": "JLEE2026",
        },
        headers=headers,
    )
    assert details.status_code == 200, details.text
    assert details.json()["company"]["company_name"] == "First Agency Holdings"
    assert details.json()["user_created"] is False

    missing = client.post(f"/admin/companies/{uuid.uuid4()}/reset-code", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Customer not found"
