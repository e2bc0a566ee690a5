"""Claims access and policy-based authorization.

This module provides fail-closed extraction of roles and permissions from
verified access token claims and a pure policy evaluator on top of it.

Model
-----
- Roles form a hierarchy (``Guest < Resident < CommitteeMember <
  BoardMember < Administrator``). A required role is satisfied by that role
  or any higher one.
- Each role grants a default permission set, inherited upward.
- Explicit ``permissions`` claims are additive overrides independent of role.
- Resource policies compare a supplied resource owner id with ``sub`` for
  self-service rules (a Resident may edit only their own profile).
- ``AllOf`` / ``AnyOf`` compose the above.

Security Notes
--------------
All claim extraction is fail-closed: malformed or unexpected claim formats
result in empty sets, unknown role names are ignored, and a resource policy
with no resource owner denies.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import cast

from .errors import PermissionDenied
from .models import Role
from .protocols import Authorizer, Claims


class Decision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


# ============================================================================
# Permission catalogue
# ============================================================================

_VIEWER = frozenset(
    {
        "public.view",
        "announcements.view",
        "calendar.view",
        "documents.view",
        "directory.view",
        "board.view",
        "minutes.view",
        "feedback.submit",
        "vendors.view",
        "vendors.suggest",
        "profile.edit_own",
    }
)

_COMMITTEE = frozenset({"announcements.create", "calendar.create", "documents.upload"})

_BOARD = frozenset(
    {
        "users.view",
        "announcements.update",
        "announcements.delete",
        "calendar.update",
        "calendar.delete",
        "documents.update",
        "documents.delete",
        "directory.create",
        "directory.update",
        "minutes.create",
        "minutes.update",
        "feedback.view",
        "feedback.respond",
        "vendors.approve",
        "financial.view",
        "property.edit",
    }
)

_ADMIN = frozenset(
    {
        "users.create",
        "users.update",
        "users.delete",
        "users.manage_roles",
        "directory.delete",
        "minutes.delete",
        "feedback.delete",
        "vendors.delete",
        "board.manage",
        "financial.manage",
        "payments.process",
        "system.settings",
        "system.audit_logs",
        "system.api_access",
    }
)

DEFAULT_ROLE_PERMISSIONS: Mapping[Role, frozenset[str]] = {
    Role.GUEST: frozenset({"public.view"}),
    Role.RESIDENT: _VIEWER,
    Role.COMMITTEE_MEMBER: _COMMITTEE,
    Role.BOARD_MEMBER: _BOARD,
    Role.ADMINISTRATOR: _ADMIN,
}
"""Permissions each role adds on top of every lower role."""


# ============================================================================
# Claims access
# ============================================================================


@dataclass(frozen=True, slots=True)
class ClaimsMapping:
    """Where authorization data lives in the token claims.

    Attributes:
        permissions_claim: The claim key containing explicit permissions.
        roles_claim: The claim key containing user roles as a list.
        subject_claim: The claim key identifying the subject.
    """

    permissions_claim: str = "permissions"
    roles_claim: str = "roles"
    subject_claim: str = "sub"


class ClaimAccess:
    """Extracts and normalizes role and permission data from verified claims.

    Examples:
        >>> accessor = ClaimAccess(ClaimsMapping())
        >>> accessor.permissions({"permissions": ["property.edit", 3]})
        frozenset({'property.edit'})
    """

    def __init__(self, mapping: ClaimsMapping | None = None) -> None:
        self._m = mapping or ClaimsMapping()

    def subject(self, claims: Claims) -> str | None:
        sub = claims.get(self._m.subject_claim)
        return sub if isinstance(sub, str) and sub else None

    def permissions(self, claims: Claims) -> frozenset[str]:
        """Extract explicit permissions.

        Supports a list/tuple/set of strings or a space-separated string.
        Non-string items are ignored; unexpected types yield an empty set.
        """
        return self._strings(claims.get(self._m.permissions_claim, []))

    def role_names(self, claims: Claims) -> frozenset[str]:
        return self._strings(claims.get(self._m.roles_claim, []))

    def roles(self, claims: Claims) -> frozenset[Role]:
        """Known roles present in the claims. Unknown names are dropped."""
        parsed = (Role.parse(name) for name in self.role_names(claims))
        return frozenset(role for role in parsed if role is not None)

    @staticmethod
    def _strings(raw: object) -> frozenset[str]:
        if isinstance(raw, str):
            return frozenset(raw.split())
        if isinstance(raw, (list, tuple, set, frozenset)):
            raw_seq = cast(Sequence[object], raw)
            return frozenset(item for item in raw_seq if isinstance(item, str))
        return frozenset()


# ============================================================================
# Policies
# ============================================================================


@dataclass(frozen=True, slots=True)
class RequireRole:
    """Satisfied by ``role`` or any higher role."""

    role: Role


@dataclass(frozen=True, slots=True)
class RequirePermission:
    """Satisfied by an explicit permission claim or a role-derived permission."""

    permission: str


@dataclass(frozen=True, slots=True)
class RequireOwner:
    """Satisfied when the resource owner is the subject.

    ``override`` lets a sufficiently senior role act on anyone's resource.
    """

    override: Role | None = None


@dataclass(frozen=True, slots=True)
class AllOf:
    policies: tuple[Policy, ...]

    def __init__(self, *policies: Policy) -> None:
        object.__setattr__(self, "policies", tuple(policies))


@dataclass(frozen=True, slots=True)
class AnyOf:
    policies: tuple[Policy, ...]

    def __init__(self, *policies: Policy) -> None:
        object.__setattr__(self, "policies", tuple(policies))


type Policy = RequireRole | RequirePermission | RequireOwner | AllOf | AnyOf


# ============================================================================
# Evaluator
# ============================================================================


class PermissionEvaluator(Authorizer):
    """Pure, side-effect-free policy evaluation.

    Safe to call from any number of threads: it holds only immutable
    configuration.

    Examples:
        >>> evaluator = PermissionEvaluator()
        >>> claims = {"sub": "u1", "roles": ["Resident"], "permissions": []}
        >>> evaluator.evaluate(claims, RequireRole(Role.RESIDENT))
        <Decision.ALLOW: 'allow'>
        >>> evaluator.evaluate(claims, RequireOwner(), resource_owner="u2")
        <Decision.DENY: 'deny'>
    """

    def __init__(
        self,
        claims: ClaimAccess | None = None,
        role_permissions: Mapping[Role, frozenset[str]] = DEFAULT_ROLE_PERMISSIONS,
    ) -> None:
        self._claims = claims or ClaimAccess()
        # Flatten inheritance once: each role maps to its full permission set.
        granted: dict[Role, frozenset[str]] = {}
        acc: frozenset[str] = frozenset()
        for role in sorted(Role):
            acc = acc | role_permissions.get(role, frozenset())
            granted[role] = acc
        self._granted = granted

    def highest_role(self, claims: Claims) -> Role | None:
        roles = self._claims.roles(claims)
        return max(roles) if roles else None

    def effective_permissions(self, claims: Claims) -> frozenset[str]:
        """Explicit permission claims plus everything the highest role grants."""
        role = self.highest_role(claims)
        derived = self._granted[role] if role is not None else frozenset()
        return derived | self._claims.permissions(claims)

    def evaluate(
        self, claims: Claims, policy: Policy, *, resource_owner: str | None = None
    ) -> Decision:
        allowed = self._check(claims, policy, resource_owner)
        return Decision.ALLOW if allowed else Decision.DENY

    def authorize(
        self, claims: Claims, policy: Policy, *, resource_owner: str | None = None
    ) -> None:
        """Raise PermissionDenied unless ``policy`` allows ``claims``."""
        if not self._check(claims, policy, resource_owner):
            raise PermissionDenied()

    def _check(self, claims: Claims, policy: Policy, owner: str | None) -> bool:
        if isinstance(policy, RequireRole):
            role = self.highest_role(claims)
            return role is not None and role >= policy.role

        if isinstance(policy, RequirePermission):
            return policy.permission in self.effective_permissions(claims)

        if isinstance(policy, RequireOwner):
            if policy.override is not None:
                role = self.highest_role(claims)
                if role is not None and role >= policy.override:
                    return True
            subject = self._claims.subject(claims)
            return owner is not None and subject is not None and owner == subject

        if isinstance(policy, AllOf):
            return all(self._check(claims, p, owner) for p in policy.policies)

        if isinstance(policy, AnyOf):
            return any(self._check(claims, p, owner) for p in policy.policies)

        # Unknown policy types deny.
        return False
