from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient

from app.db import get_db
from app.main import app
from app.models import (
    AdvanceSalaryRequest,
    ApprovalStatus,
    DeliveryRecord,
    DeliveryStatus,
    Employee,
    Holiday,
    LeaveApplication,
    ProjectTask,
)
from app.routers.notify import get_dispatcher
from app.security import Actor, require_actor
from app.services.dispatcher import DispatchRequest, DispatchSummary
from app.settings import Settings

HR_ACTOR = Actor(uid="u-hr", email="hr@example.com", roles=("HR",), employee_id="e-hr")
EMPLOYEE_ACTOR = Actor(uid="u-1", email="ayse@example.com", roles=("Employee",), employee_id="e-1")


class _ScalarRows:
    def __init__(self, rows):  # type: ignore[no-untyped-def]
        self._rows = rows

    def all(self):  # type: ignore[no-untyped-def]
        return self._rows


class _FakeNotifyDB:
    def __init__(self, objects=None, rows=None):  # type: ignore[no-untyped-def]
        self.objects = {(type(obj), obj.id): obj for obj in objects or []}
        self.rows = list(rows or [])
        self.statements: list[str] = []

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        return self.objects.get((model, pk))

    def scalars(self, statement):  # type: ignore[no-untyped-def]
        self.statements.append(str(statement))
        return _ScalarRows(self.rows)

    def commit(self) -> None:
        return None


class _StubDispatcher:
    def __init__(self) -> None:
        self.requests = []

    def dispatch(self, request):  # type: ignore[no-untyped-def]
        self.requests.append(request)
        return DispatchSummary(
            dispatch_id="d-42",
            event_type=request.event_type,
            title=request.title or "",
            template_slug=request.template_slug,
            target_roles=list(request.target_roles),
            user_ids=list(request.user_ids),
            employee_ids=list(request.employee_ids),
            channels=sorted(channel.value for channel in request.channels),
            status="sent",
            recipient_count=2,
            attempted_count=3,
            success_count=3,
            notified_count=2,
            channel_breakdown={"email": {"attempted": 2, "success": 2, "failure": 0}},
            record_id=7,
        )


def _override_get_db(fake_db):  # type: ignore[no-untyped-def]
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


class _NotifyTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.dispatcher = _StubDispatcher()
        app.dependency_overrides[get_dispatcher] = lambda: self.dispatcher

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _client(self, fake_db: _FakeNotifyDB, actor: Actor | None = None) -> TestClient:
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        if actor is not None:
            app.dependency_overrides[require_actor] = lambda: actor
        return TestClient(app)


class ApplicationNotifyEndpointTests(_NotifyTestCase):
    def test_leave_new_request_returns_summary(self) -> None:
        leave = LeaveApplication(
            id="l-1",
            employee_id="e-1",
            leave_type="Sick",
            from_date=date(2026, 2, 2),
            to_date=date(2026, 2, 2),
            status=ApprovalStatus.PENDING,
        )
        employee = Employee(id="e-1", full_name="Ayse Kaya", supervisor_id="e-hr")
        client = self._client(_FakeNotifyDB([leave, employee]), EMPLOYEE_ACTOR)

        response = client.post("/api/notify/leave", json={"type": "new_request", "id": "l-1"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "sent")
        self.assertEqual(body["notified_count"], 2)
        self.assertEqual(body["record_id"], 7)
        self.assertEqual(body["channels"]["email"]["success"], 2)
        request = self.dispatcher.requests[0]
        self.assertEqual(request.template_slug, "admin_new_leave_application")
        self.assertEqual(request.variables["days"], "1")
        self.assertEqual(request.created_by, "u-1")

    def test_unknown_visit_is_404(self) -> None:
        client = self._client(_FakeNotifyDB(), EMPLOYEE_ACTOR)

        response = client.post("/api/notify/visit", json={"type": "decision", "id": "nope", "status": "Approved"})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "VISIT_NOT_FOUND")
        self.assertEqual(self.dispatcher.requests, [])

    def test_unknown_event_type_is_validation_error(self) -> None:
        client = self._client(_FakeNotifyDB(), EMPLOYEE_ACTOR)

        response = client.post("/api/notify/leave", json={"type": "reminder", "id": "l-1"})

        self.assertEqual(response.status_code, 422)


class AdvanceSalaryAndTaskEndpointTests(_NotifyTestCase):
    def test_advance_salary_decision_reaches_employee_devices(self) -> None:
        advance = AdvanceSalaryRequest(
            id="a-1",
            employee_id="e-1",
            amount=Decimal("500.00"),
            status=ApprovalStatus.APPROVED,
        )
        employee = Employee(id="e-1", full_name="Ayse Kaya")
        client = self._client(_FakeNotifyDB([advance, employee]), HR_ACTOR)

        response = client.post(
            "/api/notify/advance-salary",
            json={"type": "decision", "id": "a-1", "status": "Approved"},
        )

        self.assertEqual(response.status_code, 200)
        request = self.dispatcher.requests[0]
        self.assertEqual(request.template_slug, "employee_advance_salary_approved")
        self.assertEqual(request.variables["amount"], "500.00")
        self.assertEqual(sorted(channel.value for channel in request.channels), ["email", "push", "whatsapp"])

    def test_task_assignment_fans_out_to_assignees(self) -> None:
        task = ProjectTask(id="t-1", title="Fix login redirect")
        fake_db = _FakeNotifyDB([task], rows=[Employee(id="e-1", full_name="Ayse Kaya")])
        client = self._client(fake_db, HR_ACTOR)

        response = client.post(
            "/api/notify/task",
            json={"type": "task_assigned", "task_id": "t-1", "target_user_ids": ["e-1"]},
        )

        self.assertEqual(response.status_code, 200)
        request = self.dispatcher.requests[0]
        self.assertEqual(request.event_type, "task_assigned")
        self.assertEqual([item.key for item in request.recipients], ["e-1"])
        self.assertEqual(request.variables["task_title"], "Fix login redirect")

    def test_task_notification_needs_assignees(self) -> None:
        client = self._client(_FakeNotifyDB(), HR_ACTOR)

        response = client.post(
            "/api/notify/task",
            json={"type": "task_assigned", "task_id": "t-1", "target_user_ids": []},
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.dispatcher.requests, [])


class MonthlyReportEndpointTests(_NotifyTestCase):
    def test_reports_need_reviewer_role(self) -> None:
        client = self._client(_FakeNotifyDB(), EMPLOYEE_ACTOR)

        response = client.post("/api/notify/reports", json={"type": "payslip", "month": "2026-03"})

        self.assertEqual(response.status_code, 403)

    def test_malformed_month_is_validation_error(self) -> None:
        client = self._client(_FakeNotifyDB(), HR_ACTOR)

        response = client.post("/api/notify/reports", json={"type": "payslip", "month": "2026-3"})

        self.assertEqual(response.status_code, 422)

    def test_report_without_matching_employees_is_404(self) -> None:
        client = self._client(_FakeNotifyDB(rows=[]), HR_ACTOR)

        response = client.post(
            "/api/notify/reports",
            json={"type": "attendance", "month": "2026-03", "target_email": "nobody@example.com"},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "NO_MATCHING_EMPLOYEES")
        self.assertEqual(self.dispatcher.requests, [])

    def test_payslip_report_returns_summary(self) -> None:
        client = self._client(_FakeNotifyDB(), HR_ACTOR)

        def _send(_db, dispatcher, **_kwargs):  # type: ignore[no-untyped-def]
            return dispatcher.dispatch(DispatchRequest(event_type="monthly_payslip_report", audience_resolved=True))

        with patch("app.routers.notify.send_monthly_reports", side_effect=_send) as send:
            response = client.post(
                "/api/notify/reports",
                json={"type": "payslip", "month": "2026-03", "target_email": "ayse@example.com"},
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["record_id"], 7)
        self.assertEqual(response.json()["event_type"], "monthly_payslip_report")
        kwargs = send.call_args.kwargs
        self.assertEqual(kwargs["report_type"], "payslip")
        self.assertEqual(kwargs["month"], "2026-03")
        self.assertEqual(kwargs["target_email"], "ayse@example.com")
        self.assertEqual(kwargs["actor"], HR_ACTOR)


class HolidayNotifyEndpointTests(_NotifyTestCase):
    def test_already_announced_holiday_reports_already_sent(self) -> None:
        holiday = Holiday(id="h-1", title="New Year", from_date=date(2027, 1, 1), email_sent=True)
        client = self._client(_FakeNotifyDB([holiday]), HR_ACTOR)

        response = client.post("/api/notify/holiday", json={"holiday_id": "h-1"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"holiday_id": "h-1", "already_sent": True, "summary": None})
        self.assertEqual(self.dispatcher.requests, [])

    def test_holiday_announcement_needs_reviewer_role(self) -> None:
        client = self._client(_FakeNotifyDB(), EMPLOYEE_ACTOR)

        response = client.post("/api/notify/holiday", json={"holiday_id": "h-1"})

        self.assertEqual(response.status_code, 403)


class BroadcastEndpointTests(_NotifyTestCase):
    def test_reviewer_broadcast_goes_out_as_push(self) -> None:
        client = self._client(_FakeNotifyDB(), HR_ACTOR)

        response = client.post(
            "/api/notifications/send",
            json={"title": "Heads up", "body": "Fire drill at 3pm", "target_roles": ["Employee"], "badge_count": 1},
        )

        self.assertEqual(response.status_code, 200)
        request = self.dispatcher.requests[0]
        self.assertEqual(sorted(channel.value for channel in request.channels), ["push"])
        self.assertEqual(request.target_roles, ["Employee"])
        self.assertEqual(request.badge_count, 1)

    def test_employee_cannot_broadcast(self) -> None:
        client = self._client(_FakeNotifyDB(), EMPLOYEE_ACTOR)

        response = client.post(
            "/api/notifications/send",
            json={"title": "x", "body": "y", "target_roles": ["Employee"]},
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.dispatcher.requests, [])

    def test_broadcast_without_audience_is_rejected(self) -> None:
        client = self._client(_FakeNotifyDB(), HR_ACTOR)

        response = client.post("/api/notifications/send", json={"title": "x", "body": "y"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")


class DeliveryRecordEndpointTests(_NotifyTestCase):
    def test_records_are_listed_for_reviewers(self) -> None:
        record = DeliveryRecord(
            id=1,
            dispatch_id="d-1",
            event_type="broadcast",
            title="Heads up",
            template_slug=None,
            target_roles=["Employee"],
            user_ids=[],
            employee_ids=[],
            channels=["push"],
            recipient_count=4,
            attempted_count=5,
            success_count=4,
            failure_count=1,
            notified_count=4,
            invalid_token_count=1,
            channel_breakdown={"push": {"attempted": 5, "success": 4, "failure": 1}},
            skipped_channels=[],
            status=DeliveryStatus.SENT,
            created_by="u-hr",
            created_at=datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
        )
        fake_db = _FakeNotifyDB(rows=[record])
        client = self._client(fake_db, HR_ACTOR)

        response = client.get("/api/delivery-records?event_type=broadcast&limit=5")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body), 1)
        self.assertEqual(body[0]["status"], "sent")
        self.assertEqual(body[0]["invalid_token_count"], 1)
        self.assertIn("delivery_records.event_type", fake_db.statements[0])


class CronEndpointTests(_NotifyTestCase):
    def test_cron_run_with_valid_secret(self) -> None:
        client = self._client(_FakeNotifyDB(rows=[]))

        with patch("app.security.get_settings", return_value=Settings(cron_secret="cron-secret")):
            response = client.post(
                "/api/cron/announcements",
                headers={"Authorization": "Bearer cron-secret"},
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"processed": 0, "results": []})

    def test_birthday_run_wishes_todays_celebrants(self) -> None:
        employee = Employee(id="e-1", full_name="Ayse Kaya", date_of_birth=date(1990, 10, 19))
        client = self._client(_FakeNotifyDB(rows=[employee]))

        with patch("app.security.get_settings", return_value=Settings(cron_secret="cron-secret")):
            with patch("app.services.triggers._local_today", return_value=date(2026, 10, 19)):
                response = client.post(
                    "/api/cron/daily-birthdays",
                    headers={"Authorization": "Bearer cron-secret"},
                )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["run_date"], "2026-10-19")
        self.assertEqual(body["checked"], 1)
        self.assertEqual(body["celebrant_ids"], ["e-1"])
        self.assertEqual(body["summary"]["record_id"], 7)
        self.assertEqual(self.dispatcher.requests[0].template_slug, "employee_birthday_wish")

    def test_birthday_run_without_secret_is_rejected(self) -> None:
        client = self._client(_FakeNotifyDB(rows=[]))

        with patch("app.security.get_settings", return_value=Settings(cron_secret="cron-secret")):
            response = client.post("/api/cron/daily-birthdays")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.dispatcher.requests, [])


if __name__ == "__main__":
    unittest.main()
