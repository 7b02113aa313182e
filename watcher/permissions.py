"""Role based permission tiers: owner, admin, mod and staff."""

from __future__ import annotations

import enum
import logging
from typing import Iterable, Optional

import discord

from .config import RolesConfig

PERMISSION_LOG = logging.getLogger("watcher.permissions")


class Tier(enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MOD = "mod"
    STAFF = "staff"


DENIAL_MESSAGES = {
    Tier.OWNER: "❌ Owner only",
    Tier.ADMIN: "❌ Admins only",
    Tier.MOD: "❌ Mods only",
    Tier.STAFF: "❌ Staff only",
}


def _member_role_ids(member: discord.Member) -> set[int]:
    role_ids: set[int] = set()
    try:
        for role in member.roles:
            role_ids.add(role.id)
    except AttributeError:
        pass
    if not role_ids:
        # uncached members only carry raw snowflakes
        for role_id in getattr(member, "_roles", None) or ():
            try:
                role_ids.add(int(role_id))
            except (TypeError, ValueError):
                continue
    return role_ids


def _has_role(member: discord.Member, role_id: Optional[int]) -> bool:
    return role_id is not None and role_id in _member_role_ids(member)


def is_owner(member: Optional[discord.Member], roles: RolesConfig) -> bool:
    return member is not None and _has_role(member, roles.owner)


def is_admin(member: Optional[discord.Member], roles: RolesConfig) -> bool:
    if member is None:
        return False
    permissions = getattr(member, "guild_permissions", None)
    if permissions is not None and permissions.administrator:
        return True
    return _has_role(member, roles.admin)


def is_mod(member: Optional[discord.Member], roles: RolesConfig) -> bool:
    return member is not None and (is_admin(member, roles) or _has_role(member, roles.mod))


def is_staff(member: Optional[discord.Member], roles: RolesConfig) -> bool:
    return member is not None and (is_mod(member, roles) or _has_role(member, roles.staff))


_CHECKS = {
    Tier.OWNER: is_owner,
    Tier.ADMIN: is_admin,
    Tier.MOD: is_mod,
    Tier.STAFF: is_staff,
}


def has_tier(member: Optional[discord.Member], tier: Tier, roles: RolesConfig) -> bool:
    return _CHECKS[tier](member, roles)


def require_tier(
    member: Optional[discord.Member],
    tier: Tier,
    roles: RolesConfig,
    *,
    command_name: str = "unknown",
) -> Optional[str]:
    """Return a denial message when ``member`` lacks ``tier``, otherwise None."""
    if member is None:
        PERMISSION_LOG.debug(
            "Denied command %s: no guild member in context.", command_name
        )
        return DENIAL_MESSAGES[tier]

    if not has_tier(member, tier, roles):
        PERMISSION_LOG.warning(
            "Denied command %s for user %s: missing %s tier (roles=%s).",
            command_name,
            member.id,
            tier.value,
            sorted(_member_role_ids(member)),
        )
        return DENIAL_MESSAGES[tier]

    PERMISSION_LOG.debug(
        "Authorized command %s for user %s at %s tier.", command_name, member.id, tier.value
    )
    return None


def configured_roles(roles: RolesConfig) -> Iterable[tuple[Tier, int]]:
    for tier in Tier:
        role_id = getattr(roles, tier.value)
        if role_id is not None:
            yield tier, role_id
