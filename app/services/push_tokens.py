from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import User

logger = logging.getLogger("app.push_tokens")


def _clean(tokens: Iterable[str] | None) -> list[str]:
    seen: dict[str, None] = {}
    for token in tokens or []:
        if isinstance(token, str) and token.strip():
            seen.setdefault(token.strip(), None)
    return list(seen)


def _load_user(db: Session, user_uid: str) -> User:
    user = db.get(User, user_uid)
    if user is None:
        raise ApiError(status_code=404, code="USER_NOT_FOUND", message="User not found.")
    return user


def register_push_token(db: Session, *, user_uid: str, token: str) -> list[str]:
    normalized = (token or "").strip()
    if not normalized:
        raise ApiError(status_code=422, code="INVALID_PUSH_TOKEN", message="Push token is required.")

    user = _load_user(db, user_uid)
    current = _clean(user.push_tokens)
    if normalized in current:
        return current

    # Assign a new list so the JSON column is flagged dirty.
    user.push_tokens = current + [normalized]
    db.commit()
    logger.info("push_token_registered", extra={"user_uid": user_uid, "token_count": len(user.push_tokens)})
    return list(user.push_tokens)


def remove_push_tokens(db: Session, *, user_uid: str, tokens: Iterable[str]) -> list[str]:
    """Set-difference on the user's token set; absent tokens and users are a no-op."""
    user = db.get(User, user_uid)
    if user is None:
        return []
    drop = set(_clean(tokens))
    current = _clean(user.push_tokens)
    remaining = [item for item in current if item not in drop]
    if len(remaining) != len(current):
        user.push_tokens = remaining
        db.commit()
        logger.info(
            "push_tokens_removed",
            extra={"user_uid": user_uid, "removed": len(current) - len(remaining)},
        )
    return remaining


def prune_invalid_tokens(db: Session, invalid_by_user: Mapping[str, Iterable[str]]) -> int:
    removed = 0
    for user_uid, tokens in invalid_by_user.items():
        drop = _clean(tokens)
        if not drop:
            continue
        user = db.get(User, user_uid)
        if user is None:
            continue
        before = _clean(user.push_tokens)
        after = [item for item in before if item not in set(drop)]
        if len(after) != len(before):
            user.push_tokens = after
            removed += len(before) - len(after)
    if removed:
        db.commit()
        logger.info("push_tokens_pruned", extra={"removed": removed, "users": len(invalid_by_user)})
    return removed
