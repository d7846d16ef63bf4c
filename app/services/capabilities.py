from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any

from app.errors import UnknownRoleError


class Resource(str, enum.Enum):
    ATTENDANCE = "attendance"
    LEAVE = "leave"
    VISIT = "visit"
    CLAIM = "claim"
    PROJECT = "project"


class RoleEffect(str, enum.Enum):
    ORG_WIDE = "ORG_WIDE"
    SUPERVISORY = "SUPERVISORY"
    NONE = "NONE"


def _effects(default: RoleEffect, **overrides: RoleEffect) -> dict[Resource, RoleEffect]:
    effects = {resource: default for resource in Resource}
    for key, value in overrides.items():
        effects[Resource(key)] = value
    return effects


# Every recognised role label and its effect per resource.
ROLE_POLICY: dict[str, dict[Resource, RoleEffect]] = {
    "Super Admin": _effects(RoleEffect.ORG_WIDE),
    "Admin": _effects(RoleEffect.ORG_WIDE),
    "HR": _effects(RoleEffect.ORG_WIDE),
    "Accounts": _effects(RoleEffect.NONE, claim=RoleEffect.ORG_WIDE),
    "Supervisor": _effects(RoleEffect.SUPERVISORY),
    "Manager": _effects(RoleEffect.SUPERVISORY),
    "DemoManager": _effects(RoleEffect.SUPERVISORY),
    "Employee": _effects(RoleEffect.NONE),
    "Commercial": _effects(RoleEffect.NONE),
    "Service": _effects(RoleEffect.NONE),
    "Viewer": _effects(RoleEffect.NONE),
}

# Claims are a financial control point: supervisors see the team but never approve.
ORG_WIDE_ONLY_APPROVAL: frozenset[Resource] = frozenset({Resource.CLAIM})

REVIEWER_ROLES: tuple[str, ...] = ("Admin", "HR", "Super Admin")


def normalize_role_key(value: str) -> str:
    return " ".join(value.strip().lower().split())


_ROLE_LOOKUP: dict[str, str] = {normalize_role_key(name): name for name in ROLE_POLICY}


def canonical_role(value: str) -> str:
    canonical = _ROLE_LOOKUP.get(normalize_role_key(value or ""))
    if canonical is None:
        raise UnknownRoleError(value)
    return canonical


def canonical_roles(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        role = canonical_role(value)
        if role not in seen:
            seen.append(role)
    return seen


def validate_role_policy(policy: dict[str, dict[Resource, RoleEffect]] | None = None) -> None:
    policy = ROLE_POLICY if policy is None else policy
    problems: list[str] = []
    for role, effects in policy.items():
        missing = [resource.value for resource in Resource if resource not in effects]
        if missing:
            problems.append(f"{role}: missing {','.join(missing)}")
        for resource, effect in effects.items():
            if not isinstance(effect, RoleEffect):
                problems.append(f"{role}: invalid effect for {resource}")
    if problems:
        raise RuntimeError("Role policy is incomplete: " + "; ".join(problems))


@dataclass(frozen=True, slots=True)
class ResourceCapability:
    view_all: bool
    view_team: bool
    view_self: bool
    approve: bool


@dataclass(frozen=True, slots=True)
class CapabilityMatrix:
    attendance: ResourceCapability
    leave: ResourceCapability
    visit: ResourceCapability
    claim: ResourceCapability
    project: ResourceCapability

    def for_resource(self, resource: Resource | str) -> ResourceCapability:
        return getattr(self, Resource(resource).value)

    def to_dict(self) -> dict[str, Any]:
        return {resource.value: asdict(self.for_resource(resource)) for resource in Resource}


def _resource_capability(
    resource: Resource,
    roles: list[str],
    has_subordinates: bool,
) -> ResourceCapability:
    effects = {ROLE_POLICY[role][resource] for role in roles}
    view_all = RoleEffect.ORG_WIDE in effects
    view_team = view_all or RoleEffect.SUPERVISORY in effects or has_subordinates
    if resource in ORG_WIDE_ONLY_APPROVAL:
        approve = view_all
    else:
        approve = view_all or view_team
    return ResourceCapability(view_all=view_all, view_team=view_team, view_self=True, approve=approve)


def compute_capabilities(roles: Iterable[str], *, has_subordinates: bool) -> CapabilityMatrix:
    """Derive the per-resource capability matrix for a role set.

    Recomputed on every call; nothing is cached so role changes apply to the
    next request. Raises ``UnknownRoleError`` for a label outside ``ROLE_POLICY``.
    """
    resolved = canonical_roles(roles)
    return CapabilityMatrix(
        **{
            resource.value: _resource_capability(resource, resolved, has_subordinates)
            for resource in Resource
        }
    )
