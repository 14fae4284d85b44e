from datetime import datetime

import pytest

from conftest import ExplodingMailer
from servicequeue.models.models import (
    ActivityLog,
    ActivityType,
    Notification,
    NotificationType,
    ServiceRequest,
    TaskStatus,
    UserRole,
)
from servicequeue.schemas.requests import ServiceRequestCreate, ServiceRequestUpdate
from servicequeue.services import requests as request_service
from servicequeue.services.notifications import NotificationService, unique_ids
from servicequeue.services.reminders import send_due_date_reminders


@pytest.fixture
def agency(make_company, make_user):
    c1 = make_company("First Agency")
    c2 = make_company("Second Agency")
    return {
        "c1": c1,
        "customer": make_user(UserRole.CUSTOMER, c1, first_name="Casey"),
        "manager": make_user(UserRole.AGENT_MANAGER, c1, first_name="Morgan"),
        "other_manager": make_user(UserRole.AGENT_MANAGER, c2, first_name="Riley"),
        "agent": make_user(UserRole.AGENT, first_name="Alex"),
        "company_agent": make_user(UserRole.AGENT, c1, first_name="Jamie"),
    }


def _inbox(db, user, type=None):
    query = db.query(Notification).filter(Notification.user_id == user.id)
    if type is not None:
        query = query.filter(Notification.type == type)
    return query.all()


def _new_request(agency, assigned_to=None):
    return ServiceRequestCreate(
        insured="Acme Corp",
        service_request_narrative="Add a driver to the auto policy",
        service_queue_category="policy_inquiry",
        assigned_by_id=agency["customer"].id,
        assigned_to_id=assigned_to.id if assigned_to else None,
    )


def test_unique_ids_drops_none_duplicates_and_excluded():
    a, b, c = object(), object(), object()
    assert unique_ids([a, None, b, a, c], exclude=c) == [a, b]


def test_create_notifies_assignee_and_own_company_managers(db, agency, actor_for, storage, notifier, mailer):
    request = request_service.create_request(
        db, _new_request(agency, agency["agent"]), actor_for(agency["company_agent"]), storage=storage, notifier=notifier
    )

    created = _inbox(db, agency["manager"], NotificationType.REQUEST_CREATED)
    assert len(created) == 1
    assert created[0].title == "New Service Request"
    assert created[0].metadata_json["service_queue_id"] == request.service_queue_id
    assert _inbox(db, agency["other_manager"]) == []

    agent_types = sorted(n.type.value for n in _inbox(db, agency["agent"]))
    assert agent_types == ["request_assigned", "request_created"]

    templates = sorted(t for t, _, _ in mailer.to(agency["agent"].email))
    assert templates == ["new_request", "request_assigned"]

    logs = db.query(ActivityLog).filter(ActivityLog.request_id == request.id).all()
    assert sorted(log.type.value for log in logs) == ["request_assigned", "request_created"]
    assert all(log.user_id == agency["company_agent"].id for log in logs)


def test_unassigned_create_reaches_only_the_company_managers(db, agency, actor_for, storage, notifier, mailer):
    data = ServiceRequestCreate(
        insured="Acme Corp",
        service_request_narrative="Policy renewal",
        service_queue_category="policy_inquiry",
        assigned_by_id=agency["customer"].id,
    )

    request = request_service.create_request(
        db, data, actor_for(agency["customer"]), storage=storage, notifier=notifier
    )

    assert db.query(ServiceRequest).count() == 1
    assert request.task_status == TaskStatus.NEW
    assert request.company_id == agency["c1"].id
    rows = db.query(Notification).all()
    assert [(n.user_id, n.type) for n in rows] == [(agency["manager"].id, NotificationType.REQUEST_CREATED)]
    assert mailer.sent == []


def test_failing_mailer_does_not_undo_the_request(db, agency, actor_for, storage):
    exploding = ExplodingMailer()
    notifier = NotificationService(db, exploding)

    request = request_service.create_request(
        db, _new_request(agency, agency["agent"]), actor_for(agency["company_agent"]), storage=storage, notifier=notifier
    )

    assert exploding.attempts >= 1
    assert db.query(ServiceRequest).filter(ServiceRequest.id == request.id).count() == 1
    assert len(_inbox(db, agency["agent"])) == 2
    assert db.query(ActivityLog).filter(ActivityLog.request_id == request.id).count() == 2


def test_actor_who_is_assignee_and_assigner_is_not_notified(
    db, agency, actor_for, make_request, storage, notifier, mailer
):
    manager = agency["manager"]
    request = make_request(manager, assigned_to=manager)

    request_service.update_request(
        db, request.id, ServiceRequestUpdate(task_status="in_progress"), actor_for(manager),
        storage=storage, notifier=notifier,
    )

    assert _inbox(db, manager) == []
    assert mailer.sent == []
    log = db.query(ActivityLog).filter(ActivityLog.request_id == request.id).one()
    assert log.type == ActivityType.STATUS_CHANGED


def test_status_change_emails_only_the_other_party(db, agency, actor_for, make_request, storage, notifier, mailer):
    request = make_request(agency["customer"], assigned_to=agency["agent"])

    request_service.update_request(
        db, request.id, ServiceRequestUpdate(task_status="in_progress"), actor_for(agency["agent"]),
        storage=storage, notifier=notifier,
    )

    inbox = _inbox(db, agency["customer"], NotificationType.STATUS_CHANGED)
    assert len(inbox) == 1
    assert inbox[0].message == f"Request {request.service_queue_id} status changed to in_progress"
    assert _inbox(db, agency["agent"]) == []

    assert mailer.to(agency["agent"].email) == []
    [(template, _, payload)] = mailer.to(agency["customer"].email)
    assert template == "status_update"
    assert payload["user_type"] == "customer"
    assert payload["old_status"] == "new" and payload["new_status"] == "in_progress"


def test_plain_update_notifies_without_email(db, agency, actor_for, make_request, storage, notifier, mailer):
    request = make_request(agency["customer"], assigned_to=agency["agent"])

    request_service.update_request(
        db, request.id, ServiceRequestUpdate(insured="Acme Holdings"), actor_for(agency["agent"]),
        storage=storage, notifier=notifier,
    )

    [notification] = _inbox(db, agency["customer"])
    assert notification.type == NotificationType.REQUEST_UPDATED
    assert notification.metadata_json["changes"]["insured"] == {"before": "Acme Corp", "after": "Acme Holdings"}
    assert mailer.sent == []


def test_internal_note_reaches_agents_only(db, agency, actor_for, make_request, notifier, mailer):
    request = make_request(agency["customer"], assigned_to=agency["agent"])

    note = request_service.add_note(
        db, request.id, "Underwriter wants the prior claims history", actor_for(agency["agent"]),
        is_internal=True, notifier=notifier,
    )

    assert note.is_internal is True
    assert len(_inbox(db, agency["company_agent"], NotificationType.NOTE_ADDED)) == 1
    assert len(_inbox(db, agency["manager"], NotificationType.NOTE_ADDED)) == 1
    assert _inbox(db, agency["customer"]) == []
    assert _inbox(db, agency["agent"]) == []
    assert mailer.sent == []


def test_external_note_reaches_customer_inbox_and_email(db, agency, actor_for, make_request, notifier, mailer):
    request = make_request(agency["customer"], assigned_to=agency["agent"])

    request_service.add_note(
        db, request.id, "Driver added, endorsement attached", actor_for(agency["agent"]), notifier=notifier
    )

    [notification] = _inbox(db, agency["customer"])
    assert notification.type == NotificationType.NOTE_ADDED
    assert notification.metadata_json["is_internal"] is False
    assert _inbox(db, agency["manager"]) == []

    [(template, _, payload)] = mailer.to(agency["customer"].email)
    assert template == "note_added"
    assert payload["note_content"] == "Driver added, endorsement attached"
    log = db.query(ActivityLog).filter(ActivityLog.type == ActivityType.NOTE_ADDED).one()
    assert log.metadata_json["author_name"] == agency["agent"].full_name


def test_customer_cannot_write_internal_notes(db, agency, actor_for, make_request, notifier):
    request = make_request(agency["customer"], assigned_to=agency["agent"])

    note = request_service.add_note(
        db, request.id, "Is this done yet?", actor_for(agency["customer"]), is_internal=True, notifier=notifier
    )

    assert note.is_internal is False
    assert len(_inbox(db, agency["agent"], NotificationType.NOTE_ADDED)) == 1


def test_attachment_upload_skips_the_uploader(db, agency, actor_for, make_request, storage, notifier, make_file):
    request = make_request(agency["customer"], assigned_to=agency["agent"])

    stored = request_service.upload_attachments(
        db, request.id, [make_file("declarations.pdf")], actor_for(agency["customer"]),
        storage=storage, notifier=notifier,
    )

    assert len(stored) == 1
    [notification] = _inbox(db, agency["agent"])
    assert notification.type == NotificationType.ATTACHMENT_UPLOADED
    assert notification.message == f'File "declarations.pdf" uploaded to request {request.service_queue_id}'
    assert _inbox(db, agency["customer"]) == []


def test_promotion_notifies_target_and_admin(db, agency, notifier):
    admin = agency["manager"]
    target = agency["company_agent"]

    notifier.notify_user_role_changed(admin.id, target, UserRole.AGENT, UserRole.AGENT_MANAGER)

    [mine] = _inbox(db, target)
    assert mine.type == NotificationType.USER_PROMOTED
    assert mine.title == "Promoted to Agent Manager"
    [theirs] = _inbox(db, admin)
    assert theirs.title == "User Role Updated"
    assert theirs.metadata_json["new_role"] == "agent_manager"

    log = db.query(ActivityLog).filter(ActivityLog.type == ActivityType.USER_UPDATED).one()
    assert log.metadata_json["is_promotion"] is True
    assert log.metadata_json["is_demotion"] is False


def test_demotion_uses_role_changed_title(db, agency, notifier):
    notifier.notify_user_role_changed(
        agency["manager"].id, agency["company_agent"], UserRole.AGENT_MANAGER, UserRole.AGENT
    )

    [mine] = _inbox(db, agency["company_agent"])
    assert mine.type == NotificationType.USER_DEMOTED
    assert mine.message == "Your role has been changed from agent_manager to agent"


def test_login_code_reset_writes_no_activity(db, agency, notifier):
    notifier.notify_login_code_reset(agency["customer"], "OLD123", "NEW456")

    [notification] = _inbox(db, agency["customer"])
    assert notification.type == NotificationType.LOGIN_CODE_RESET
    assert db.query(ActivityLog).count() == 0


def test_due_date_reminders_cover_due_soon_and_overdue(db, agency, make_request, notifier, mailer):
    now = datetime(2026, 3, 10, 15, 0)

    def due(on, status=TaskStatus.OPEN):
        request = make_request(agency["customer"], assigned_to=agency["agent"], status=status)
        request.due_date = on
        db.commit()
        return request

    tomorrow = due(datetime(2026, 3, 11))
    overdue = due(datetime(2026, 3, 9))
    due(datetime(2026, 3, 20))
    due(datetime(2026, 3, 11), status=TaskStatus.CLOSED)

    reminded = send_due_date_reminders(db, notifier, now=now, window_days=2, tz_name="UTC")

    assert reminded == 2
    agent_inbox = {n.metadata_json["request_id"]: n for n in _inbox(db, agency["agent"])}
    assert agent_inbox[str(tomorrow.id)].message == f"Request {tomorrow.service_queue_id} is due tomorrow"
    assert agent_inbox[str(overdue.id)].type == NotificationType.REQUEST_OVERDUE
    # Assignee, creator and the company's manager each get one row per request
    assert db.query(Notification).count() == 6
    assert db.query(ActivityLog).count() == 0

    overdue_mail = [p for t, _, p in mailer.to(agency["agent"].email) if p["service_queue_id"] == overdue.service_queue_id]
    assert overdue_mail[0]["days_until_due"] < 0
