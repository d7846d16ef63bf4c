from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from app.db import get_db
from app.errors import TemplateNotFound
from app.main import app
from app.models import ApprovalStatus, AttendanceEvent, Employee, LeaveApplication, Site, User
from app.routers.notify import get_dispatcher
from app.security import Actor, require_actor

HR_ACTOR = Actor(uid="u-hr", email="hr@example.com", roles=("HR",), employee_id="e-hr")
EMPLOYEE_ACTOR = Actor(uid="u-1", email="ayse@example.com", roles=("Employee",), employee_id="e-1")


class _ScalarRows:
    def __init__(self, rows):  # type: ignore[no-untyped-def]
        self._rows = rows

    def all(self):  # type: ignore[no-untyped-def]
        return self._rows


class _FakeEndpointDB:
    def __init__(self, objects=None, rows=None):  # type: ignore[no-untyped-def]
        self.objects: dict[tuple[type, object], object] = {}
        for obj in objects or []:
            self._store(obj)
        self.rows = list(rows or [])
        self.added: list[object] = []
        self.commits = 0
        self._next_id = 100

    def _store(self, obj) -> None:  # type: ignore[no-untyped-def]
        key = obj.uid if isinstance(obj, User) else obj.id
        self.objects[(type(obj), key)] = obj

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        return self.objects.get((model, pk))

    def add(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def commit(self) -> None:
        self.commits += 1
        for obj in self.added:
            if getattr(obj, "id", None) is None:
                self._next_id += 1
                obj.id = self._next_id
            self._store(obj)

    def refresh(self, _obj) -> None:  # type: ignore[no-untyped-def]
        return None

    def rollback(self) -> None:
        return None

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        return _ScalarRows(self.rows)


def _override_get_db(fake_db):  # type: ignore[no-untyped-def]
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


def _site() -> Site:
    return Site(id=1, name="HQ", latitude=41.0082, longitude=28.9784, allowed_radius_m=300.0)


def _employee() -> Employee:
    return Employee(id="e-1", full_name="Ayse Kaya", employee_code="EMP-001", site_id=1, supervisor_id="e-hr")


def _summary_mock() -> MagicMock:
    summary = MagicMock()
    summary.to_dict.return_value = {"dispatch_id": "d-1", "status": "sent", "success_count": 2}
    return summary


class _EndpointTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.dispatcher = MagicMock()
        app.dependency_overrides[get_dispatcher] = lambda: self.dispatcher

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _client(self, fake_db: _FakeEndpointDB, actor: Actor) -> TestClient:
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[require_actor] = lambda: actor
        return TestClient(app)


class CheckinEndpointTests(_EndpointTestCase):
    def test_checkin_outside_radius_is_pending_and_escalated(self) -> None:
        fake_db = _FakeEndpointDB([_employee(), _site()])
        client = self._client(fake_db, EMPLOYEE_ACTOR)

        with patch(
            "app.routers.attendance.notify_attendance_escalation",
            return_value=_summary_mock(),
        ) as notify_mock:
            response = client.post("/api/attendance/check-in", json={"lat": 41.0122, "lon": 28.9784})

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["event"]["status"], "Pending")
        self.assertFalse(body["event"]["is_inside_geofence"])
        self.assertTrue(body["escalated"])
        self.assertEqual(body["geofence"]["decision"], "ESCALATE")
        self.assertGreater(body["geofence"]["distance_m"], 400)
        self.assertEqual(body["notification"]["status"], "sent")
        notify_mock.assert_called_once()
        self.assertEqual(notify_mock.call_args.kwargs["actor"], EMPLOYEE_ACTOR)

    def test_checkin_inside_radius_is_approved_without_notification(self) -> None:
        fake_db = _FakeEndpointDB([_employee(), _site()])
        client = self._client(fake_db, EMPLOYEE_ACTOR)

        with patch("app.routers.attendance.notify_attendance_escalation") as notify_mock:
            response = client.post(
                "/api/attendance/check-in",
                json={"lat": 41.0090, "lon": 28.9784, "remarks": "Front gate"},
            )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["event"]["status"], "Approved")
        self.assertEqual(body["event"]["remarks"], "Front gate")
        self.assertFalse(body["escalated"])
        self.assertIsNone(body["notification"])
        notify_mock.assert_not_called()

    def test_checkin_survives_notification_setup_error(self) -> None:
        fake_db = _FakeEndpointDB([_employee(), _site()])
        client = self._client(fake_db, EMPLOYEE_ACTOR)

        with patch(
            "app.routers.attendance.notify_attendance_escalation",
            side_effect=TemplateNotFound("attendance_pending_review"),
        ):
            with self.assertLogs("app.attendance", level="ERROR"):
                response = client.post("/api/attendance/check-in", json={"lat": 41.0122, "lon": 28.9784})

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["escalated"])
        self.assertIsNone(response.json()["notification"])
        self.assertEqual(len([obj for obj in fake_db.added if isinstance(obj, AttendanceEvent)]), 1)

    def test_checkin_without_linked_employee_is_422(self) -> None:
        actor = Actor(uid="u-x", email=None, roles=("Employee",), employee_id=None)
        client = self._client(_FakeEndpointDB(), actor)

        response = client.post("/api/attendance/check-in", json={"lat": 41.0, "lon": 29.0})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_NOT_LINKED")


def _pending_event(**overrides) -> AttendanceEvent:  # type: ignore[no-untyped-def]
    values = {
        "id": 9,
        "employee_id": "e-1",
        "site_id": 1,
        "lat": 41.0122,
        "lon": 28.9784,
        "ts_utc": datetime(2026, 3, 10, 6, 45, tzinfo=timezone.utc),
        "status": ApprovalStatus.PENDING,
        "distance_m": 444.8,
        "is_inside_geofence": False,
    }
    values.update(overrides)
    return AttendanceEvent(**values)


class DecisionEndpointTests(_EndpointTestCase):
    def test_reviewer_approves_pending_event(self) -> None:
        event = _pending_event()
        client = self._client(_FakeEndpointDB([event]), HR_ACTOR)

        with patch(
            "app.routers.attendance.notify_attendance_decision",
            return_value=_summary_mock(),
        ) as notify_mock:
            response = client.post("/api/attendance/9/decision", json={"status": "Approved", "reason": " ok "})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["event"]["status"], "Approved")
        self.assertEqual(body["event"]["reviewed_by"], "u-hr")
        self.assertEqual(body["event"]["review_reason"], "ok")
        self.assertEqual(notify_mock.call_args.kwargs["event_id"], 9)

    def test_decided_event_is_409(self) -> None:
        event = _pending_event(status=ApprovalStatus.APPROVED)
        client = self._client(_FakeEndpointDB([event]), HR_ACTOR)

        with patch("app.routers.attendance.notify_attendance_decision") as notify_mock:
            response = client.post("/api/attendance/9/decision", json={"status": "Rejected"})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "ATTENDANCE_ALREADY_DECIDED")
        notify_mock.assert_not_called()

    def test_employee_without_reports_cannot_decide(self) -> None:
        client = self._client(_FakeEndpointDB([_pending_event()]), EMPLOYEE_ACTOR)

        response = client.post("/api/attendance/9/decision", json={"status": "Approved"})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_supervisor_cannot_decide_own_escalated_checkin(self) -> None:
        supervisor = Actor(uid="u-sup", email="sup@example.com", roles=("Supervisor",), employee_id="e-sup")
        event = _pending_event(employee_id="e-sup")
        client = self._client(_FakeEndpointDB([event]), supervisor)

        with patch("app.routers.attendance.notify_attendance_decision") as notify_mock:
            response = client.post("/api/attendance/9/decision", json={"status": "Approved"})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "SELF_APPROVAL_FORBIDDEN")
        self.assertEqual(event.status, ApprovalStatus.PENDING)
        notify_mock.assert_not_called()

    def test_supervisor_decides_report_checkin(self) -> None:
        supervisor = Actor(uid="u-sup", email="sup@example.com", roles=("Supervisor",), employee_id="e-sup")
        event = _pending_event(employee_id="e-1")
        client = self._client(_FakeEndpointDB([event], rows=["e-1"]), supervisor)

        with patch("app.routers.attendance.notify_attendance_decision", return_value=_summary_mock()):
            response = client.post("/api/attendance/9/decision", json={"status": "Rejected"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["event"]["status"], "Rejected")

    def test_org_wide_reviewer_may_decide_own_checkin(self) -> None:
        event = _pending_event(employee_id="e-hr")
        client = self._client(_FakeEndpointDB([event]), HR_ACTOR)

        with patch("app.routers.attendance.notify_attendance_decision", return_value=_summary_mock()):
            response = client.post("/api/attendance/9/decision", json={"status": "Approved"})

        self.assertEqual(response.status_code, 200)

    def test_pending_is_not_a_valid_decision(self) -> None:
        client = self._client(_FakeEndpointDB([_pending_event()]), HR_ACTOR)

        response = client.post("/api/attendance/9/decision", json={"status": "Pending"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")


class ScopedRecordsEndpointTests(_EndpointTestCase):
    def test_org_wide_reader_gets_all_scope(self) -> None:
        leave = LeaveApplication(
            id="l-1",
            employee_id="e-7",
            leave_type="Annual",
            from_date=date(2026, 4, 6),
            to_date=date(2026, 4, 8),
            status=ApprovalStatus.PENDING,
        )
        client = self._client(_FakeEndpointDB(rows=[leave]), HR_ACTOR)

        response = client.get("/api/records/leave?limit=10")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["resource"], "leave")
        self.assertEqual(body["scope"], "ALL")
        self.assertFalse(body["truncated"])
        self.assertEqual(body["items"][0]["id"], "l-1")
        self.assertEqual(body["items"][0]["from_date"], "2026-04-06")

    def test_employee_without_reports_gets_self_scope(self) -> None:
        client = self._client(_FakeEndpointDB(rows=[]), EMPLOYEE_ACTOR)

        response = client.get("/api/records/claim")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["scope"], "SELF")
        self.assertEqual(response.json()["items"], [])

    def test_unknown_resource_is_404(self) -> None:
        client = self._client(_FakeEndpointDB(), HR_ACTOR)

        response = client.get("/api/records/payroll")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "UNKNOWN_RESOURCE")


class PushTokenEndpointTests(_EndpointTestCase):
    def test_register_then_remove_token(self) -> None:
        user = User(uid="u-1", email="ayse@example.com", push_tokens=["existing"])
        fake_db = _FakeEndpointDB([user])
        client = self._client(fake_db, EMPLOYEE_ACTOR)

        added = client.post("/api/push-tokens", json={"token": "new-token"})
        removed = client.request("DELETE", "/api/push-tokens", json={"token": "existing"})

        self.assertEqual(added.status_code, 200)
        self.assertEqual(added.json(), {"ok": True, "token_count": 2})
        self.assertEqual(removed.json(), {"ok": True, "token_count": 1})
        self.assertEqual(user.push_tokens, ["new-token"])


class SiteEndpointTests(_EndpointTestCase):
    def test_negative_radius_is_rejected(self) -> None:
        client = self._client(_FakeEndpointDB(), HR_ACTOR)

        response = client.post(
            "/api/sites",
            json={"name": "Depot", "latitude": 40.0, "longitude": 29.0, "allowed_radius_m": -5},
        )

        self.assertEqual(response.status_code, 422)

    def test_reviewer_creates_site(self) -> None:
        fake_db = _FakeEndpointDB()
        client = self._client(fake_db, HR_ACTOR)

        response = client.post(
            "/api/sites",
            json={"name": " Depot ", "latitude": 40.0, "longitude": 29.0, "allowed_radius_m": 0},
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["name"], "Depot")
        self.assertEqual(response.json()["allowed_radius_m"], 0.0)

    def test_employee_cannot_create_site(self) -> None:
        client = self._client(_FakeEndpointDB(), EMPLOYEE_ACTOR)

        response = client.post("/api/sites", json={"name": "Depot"})

        self.assertEqual(response.status_code, 403)


if __name__ == "__main__":
    unittest.main()
