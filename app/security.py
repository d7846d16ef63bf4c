from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import ApiError
from app.models import User
from app.services.capabilities import REVIEWER_ROLES, canonical_roles
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class Actor:
    uid: str
    email: str | None
    roles: tuple[str, ...] = field(default_factory=tuple)
    employee_id: str | None = None

    def has_any_role(self, *roles: str) -> bool:
        return bool(set(self.roles) & set(roles))


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=503, code="AUTH_NOT_CONFIGURED", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def actor_from_user(user: User) -> Actor:
    return Actor(
        uid=user.uid,
        email=user.email,
        roles=tuple(canonical_roles(user.roles)),
        employee_id=user.employee_id,
    )


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    user = db.get(User, payload["sub"])
    if user is None:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Unknown user.")
    if not user.is_active:
        raise ApiError(status_code=403, code="USER_INACTIVE", message="User is inactive.")

    actor = actor_from_user(user)
    request.state.actor = "user"
    request.state.actor_id = actor.uid
    return actor


def require_reviewer(actor: Actor = Depends(require_actor)) -> Actor:
    if not actor.has_any_role(*REVIEWER_ROLES):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return actor


def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    expected = get_settings().cron_secret
    if not expected:
        raise ApiError(status_code=503, code="CRON_NOT_CONFIGURED", message="Cron secret is not configured.")
    presented = credentials.credentials.encode("utf-8") if credentials is not None else b""
    if credentials is None or not hmac.compare_digest(presented, expected.encode("utf-8")):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Invalid cron credentials.")
