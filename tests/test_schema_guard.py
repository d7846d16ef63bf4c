from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy.exc import NoSuchTableError, OperationalError

from app.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value, error=None):
        self._version_value = version_value
        self._error = error

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        if self._error is not None:
            raise self._error
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value, error=None):
        self._version_value = version_value
        self._error = error

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value, self._error)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        if table_name not in self._columns_by_table:
            raise NoSuchTableError(table_name)
        return [{"name": item} for item in self._columns_by_table[table_name]]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _complete_columns() -> dict[str, set[str]]:
    return {table: set(columns) | {"id"} for table, columns in REQUIRED_TABLE_COLUMNS.items()}


def _complete_enums() -> list[dict[str, object]]:
    return [
        {"name": "approval_status", "labels": ["Approved", "Pending", "Rejected"]},
        {"name": "delivery_status", "labels": ["sent", "no_targets", "failed"]},
    ]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=_complete_columns(), enums=_complete_enums())

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns_tables_and_enum_values(self) -> None:
        columns = _complete_columns()
        columns["delivery_records"] = {"id", "dispatch_id", "event_type"}
        del columns["supervisor_links"]
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            enums=[{"name": "approval_status", "labels": ["Approved", "Pending"]}],
        )

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:delivery_records:channel_breakdown,status", result.issues)
        self.assertIn("TABLE_UNREADABLE:supervisor_links:NoSuchTableError", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:approval_status:Rejected", result.issues)
        self.assertIn("ENUM_NOT_FOUND:delivery_status", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_verify_runtime_schema_reports_unreachable_version_table(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=_complete_columns(), enums=_complete_enums())
        error = OperationalError("SELECT version_num", {}, Exception("connection refused"))

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(None, error))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertEqual(result.issues, ["ALEMBIC_VERSION_CHECK_FAILED:OperationalError"])
        self.assertEqual(result.to_dict()["issue_count"], 1)


if __name__ == "__main__":
    unittest.main()
