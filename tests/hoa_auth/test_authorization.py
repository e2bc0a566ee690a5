import pytest

import hoa_auth as m
from hoa_auth import AllOf, AnyOf, RequireOwner, RequirePermission, RequireRole, Role

ALLOW = m.Decision.ALLOW
DENY = m.Decision.DENY


def claims(*roles, sub="u1", permissions=()):
    return {"sub": sub, "roles": list(roles), "permissions": list(permissions)}


@pytest.fixture
def evaluator() -> m.PermissionEvaluator:
    return m.PermissionEvaluator()


class TestClaimAccess:
    def test_permissions_list_and_string(self):
        access = m.ClaimAccess()
        assert access.permissions({"permissions": ["a", 3, "b"]}) == frozenset({"a", "b"})
        assert access.permissions({"permissions": "a b"}) == frozenset({"a", "b"})
        assert access.permissions({"permissions": {"not": "a list"}}) == frozenset()
        assert access.permissions({}) == frozenset()

    def test_unknown_roles_are_dropped(self):
        access = m.ClaimAccess()
        assert access.roles({"roles": ["Resident", "Overlord"]}) == frozenset({Role.RESIDENT})

    def test_custom_mapping(self):
        access = m.ClaimAccess(m.ClaimsMapping(roles_claim="hoa/roles", subject_claim="uid"))
        data = {"hoa/roles": ["board_member"], "uid": "u9"}
        assert access.roles(data) == frozenset({Role.BOARD_MEMBER})
        assert access.subject(data) == "u9"


class TestRoleHierarchy:
    @pytest.mark.parametrize(
        ("held", "required", "expected"),
        [
            ("Guest", Role.RESIDENT, DENY),
            ("Resident", Role.RESIDENT, ALLOW),
            ("Resident", Role.COMMITTEE_MEMBER, DENY),
            ("CommitteeMember", Role.RESIDENT, ALLOW),
            ("CommitteeMember", Role.BOARD_MEMBER, DENY),
            ("BoardMember", Role.RESIDENT, ALLOW),
            ("Administrator", Role.BOARD_MEMBER, ALLOW),
        ],
    )
    def test_higher_role_satisfies_lower(self, evaluator, held, required, expected):
        assert evaluator.evaluate(claims(held), RequireRole(required)) is expected

    def test_no_roles_denies(self, evaluator):
        assert evaluator.evaluate(claims(), RequireRole(Role.GUEST)) is DENY

    def test_multiple_roles_use_the_highest(self, evaluator):
        assert evaluator.evaluate(claims("Guest", "BoardMember"), RequireRole(Role.BOARD_MEMBER)) is ALLOW


class TestPermissions:
    def test_role_derived_permissions_are_inherited(self, evaluator):
        assert evaluator.evaluate(claims("BoardMember"), RequirePermission("property.edit")) is ALLOW
        assert evaluator.evaluate(claims("Administrator"), RequirePermission("calendar.view")) is ALLOW
        assert evaluator.evaluate(claims("Resident"), RequirePermission("property.edit")) is DENY

    def test_committee_members_can_post_announcements(self, evaluator):
        policy = RequirePermission("announcements.create")
        assert evaluator.evaluate(claims("CommitteeMember"), policy) is ALLOW
        assert evaluator.evaluate(claims("Resident"), policy) is DENY

    def test_explicit_permission_is_an_additive_override(self, evaluator):
        resident = claims("Resident", permissions=["property.edit"])
        assert evaluator.evaluate(resident, RequirePermission("property.edit")) is ALLOW
        # Independent of role: no role at all still counts.
        assert evaluator.evaluate(claims(permissions=["property.edit"]), RequirePermission("property.edit")) is ALLOW

    def test_custom_role_permissions(self):
        evaluator = m.PermissionEvaluator(role_permissions={Role.RESIDENT: frozenset({"pool.use"})})
        assert evaluator.evaluate(claims("BoardMember"), RequirePermission("pool.use")) is ALLOW
        assert evaluator.evaluate(claims("Guest"), RequirePermission("pool.use")) is DENY


class TestOwnership:
    def test_resident_edits_only_own_profile(self, evaluator):
        assert evaluator.evaluate(claims("Resident"), RequireOwner(), resource_owner="u1") is ALLOW
        assert evaluator.evaluate(claims("Resident"), RequireOwner(), resource_owner="u2") is DENY

    def test_missing_owner_denies(self, evaluator):
        assert evaluator.evaluate(claims("Resident"), RequireOwner()) is DENY

    def test_override_role(self, evaluator):
        policy = RequireOwner(override=Role.BOARD_MEMBER)
        assert evaluator.evaluate(claims("BoardMember"), policy, resource_owner="u2") is ALLOW
        assert evaluator.evaluate(claims("Resident"), policy, resource_owner="u2") is DENY


class TestComposites:
    def test_all_of(self, evaluator):
        policy = AllOf(RequireRole(Role.RESIDENT), RequireOwner())
        assert evaluator.evaluate(claims("Resident"), policy, resource_owner="u1") is ALLOW
        assert evaluator.evaluate(claims("Guest"), policy, resource_owner="u1") is DENY

    def test_any_of(self, evaluator):
        policy = AnyOf(RequirePermission("users.update"), RequireOwner())
        assert evaluator.evaluate(claims("Resident"), policy, resource_owner="u1") is ALLOW
        assert evaluator.evaluate(claims("Administrator"), policy, resource_owner="u2") is ALLOW
        assert evaluator.evaluate(claims("Resident"), policy, resource_owner="u2") is DENY

    def test_nested(self, evaluator):
        policy = AnyOf(RequireRole(Role.ADMINISTRATOR), AllOf(RequireRole(Role.RESIDENT), RequireOwner()))
        assert evaluator.evaluate(claims("Resident"), policy, resource_owner="u1") is ALLOW
        assert evaluator.evaluate(claims("Resident"), policy, resource_owner="u2") is DENY

    def test_empty_composites(self, evaluator):
        assert evaluator.evaluate(claims(), AllOf()) is ALLOW
        assert evaluator.evaluate(claims("Administrator"), AnyOf()) is DENY


class TestAuthorize:
    def test_raises_permission_denied(self, evaluator):
        with pytest.raises(m.PermissionDenied) as exc:
            evaluator.authorize(claims("Guest"), RequireRole(Role.RESIDENT))
        assert exc.value.error_code == 403

    def test_returns_none_when_allowed(self, evaluator):
        assert evaluator.authorize(claims("Resident"), RequireRole(Role.RESIDENT)) is None

    def test_unknown_policy_type_denies(self, evaluator):
        assert evaluator.evaluate(claims("Administrator"), "admin") is DENY
