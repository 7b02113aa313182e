import types

import pytest

from watcher.config import RolesConfig
from watcher.permissions import (
    DENIAL_MESSAGES,
    Tier,
    configured_roles,
    has_tier,
    require_tier,
)

ROLES = RolesConfig(owner=1, admin=2, mod=3, staff=4, mute=5)


def _member(*role_ids: int, administrator: bool = False):
    return types.SimpleNamespace(
        id=99,
        roles=[types.SimpleNamespace(id=role_id) for role_id in role_ids],
        guild_permissions=types.SimpleNamespace(administrator=administrator),
    )


@pytest.mark.parametrize(
    "role_ids, tier, expected",
    [
        ((4,), Tier.STAFF, True),
        ((3,), Tier.STAFF, True),
        ((2,), Tier.STAFF, True),
        ((4,), Tier.MOD, False),
        ((3,), Tier.MOD, True),
        ((3,), Tier.ADMIN, False),
        ((2,), Tier.ADMIN, True),
        ((1,), Tier.OWNER, True),
        ((2,), Tier.OWNER, False),
        ((), Tier.STAFF, False),
    ],
)
def test_tiers_nest(role_ids, tier, expected):
    assert has_tier(_member(*role_ids), tier, ROLES) is expected


def test_administrator_permission_grants_admin_and_below():
    member = _member(administrator=True)
    assert has_tier(member, Tier.ADMIN, ROLES)
    assert has_tier(member, Tier.STAFF, ROLES)
    assert not has_tier(member, Tier.OWNER, ROLES)


def test_uncached_member_falls_back_to_raw_role_ids():
    member = types.SimpleNamespace(
        id=5, roles=[], _roles=["4"], guild_permissions=None
    )
    assert has_tier(member, Tier.STAFF, ROLES)


def test_require_tier_returns_denial_message():
    assert require_tier(_member(4), Tier.MOD, ROLES, command_name="warn") == DENIAL_MESSAGES[Tier.MOD]
    assert require_tier(_member(3), Tier.MOD, ROLES, command_name="warn") is None
    assert require_tier(None, Tier.STAFF, ROLES) == DENIAL_MESSAGES[Tier.STAFF]


def test_unconfigured_roles_grant_nothing():
    member = _member(4)
    assert not has_tier(member, Tier.STAFF, RolesConfig())
    assert list(configured_roles(RolesConfig(staff=4))) == [(Tier.STAFF, 4)]
