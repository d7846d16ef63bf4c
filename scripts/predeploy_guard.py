#!/usr/bin/env python
from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.services.capabilities import validate_role_policy
from app.services.channels import get_notification_channel_health
from app.services.schema_guard import verify_runtime_schema
from app.settings import get_settings

VERSIONS_DIR = ROOT_DIR / "app" / "migrations" / "versions"
MAX_REVISION_ID_LENGTH = 32


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]


def _extract_revision_ids() -> list[str]:
    pattern = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
    revisions: list[str] = []
    for path in sorted(VERSIONS_DIR.glob("*.py")):
        match = pattern.search(path.read_text(encoding="utf-8"))
        if match:
            revisions.append(match.group(1).strip())
    return revisions


def _check_revision_id_lengths() -> CheckResult:
    revisions = _extract_revision_ids()
    too_long = [revision for revision in revisions if len(revision) > MAX_REVISION_ID_LENGTH]
    return CheckResult(
        name="migration_revision_length",
        status="ok" if not too_long else "fail",
        details={"max_len": MAX_REVISION_ID_LENGTH, "too_long": too_long, "total": len(revisions)},
    )


def _check_role_policy() -> CheckResult:
    try:
        validate_role_policy()
    except RuntimeError as exc:
        return CheckResult(name="role_policy", status="fail", details={"error": str(exc)})
    return CheckResult(name="role_policy", status="ok", details={})


def _check_notification_channels() -> CheckResult:
    health = get_notification_channel_health()
    misconfigured = {
        channel: item["missing_fields"]
        for channel, item in health.items()
        if item.get("enabled") and item.get("missing_fields")
    }
    return CheckResult(
        name="notification_channels",
        status="ok" if not misconfigured else "fail",
        details={"channels": health, "misconfigured": misconfigured},
    )


def _check_database_migration_and_schema() -> CheckResult:
    database_url = (get_settings().database_url or "").strip()
    if not database_url:
        return CheckResult(name="database_schema_guard", status="warn", details={"reason": "DATABASE_URL_NOT_SET"})

    script = ScriptDirectory.from_config(Config(str(ROOT_DIR / "alembic.ini")))
    expected_heads = sorted(script.get_heads())
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_versions = [
                str(value).strip()
                for value in connection.execute(text("SELECT version_num FROM alembic_version")).scalars()
                if value is not None
            ]
        schema_result = verify_runtime_schema(engine)
    except SQLAlchemyError as exc:
        return CheckResult(
            name="database_schema_guard",
            status="fail",
            details={"reason": "DATABASE_UNREACHABLE", "error": exc.__class__.__name__},
        )
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current_versions]
    return CheckResult(
        name="database_schema_guard",
        status="fail" if missing_heads or not schema_result.ok else "ok",
        details={
            "expected_heads": expected_heads,
            "current_versions": current_versions,
            "missing_heads": missing_heads,
            "schema_guard": schema_result.to_dict(),
        },
    )


def main() -> int:
    checks = [
        _check_revision_id_lengths(),
        _check_role_policy(),
        _check_notification_channels(),
        _check_database_migration_and_schema(),
    ]
    failed = [check for check in checks if check.status == "fail"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": not failed,
        "checks": [{"name": check.name, "status": check.status, "details": check.details} for check in checks],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if not failed else 1


if __name__ == "__main__":
    raise SystemExit(main())
