from __future__ import annotations

import asyncio
import types
from datetime import UTC, datetime, timedelta

import discord
import pytest

from watcher.config import Config, LoggingConfig, RolesConfig
from watcher.models import WarningRecord
from watcher.moderation import (
    ModerationError,
    ModerationService,
    build_infractions_embed,
    parse_color,
)
from watcher.storage import StoreFailure

MUTE_ROLE_ID = 5
BAN_LOG_ID = 700
MESSAGE_LOG_ID = 701


def _not_found() -> discord.NotFound:
    return discord.NotFound(types.SimpleNamespace(status=404, reason="Not Found"), "Unknown Member")


class FakeRole:
    def __init__(self, role_id: int, name: str, managed: bool = False) -> None:
        self.id = role_id
        self.name = name
        self.managed = managed
        self.deleted = False

    async def delete(self) -> None:
        self.deleted = True


class FakeMember:
    def __init__(self, guild: "FakeGuild", member_id: int, name: str) -> None:
        self.guild = guild
        self.id = member_id
        self.name = name
        self.roles: list[FakeRole] = []
        self.banned_for = None
        self.kicked_for = None

    def __str__(self) -> str:
        return self.name

    async def add_roles(self, *roles, reason=None) -> None:
        self.roles.extend(roles)

    async def remove_roles(self, *roles, reason=None) -> None:
        self.roles = [role for role in self.roles if role not in roles]

    async def ban(self, *, reason=None) -> None:
        self.banned_for = reason

    async def kick(self, *, reason=None) -> None:
        self.kicked_for = reason


class FakeGuild:
    def __init__(self) -> None:
        self.id = 1
        self.members: dict[int, FakeMember] = {}
        self.roles = {MUTE_ROLE_ID: FakeRole(MUTE_ROLE_ID, "Muted")}
        self.created: list[dict] = []

    def add_member(self, member_id: int, name: str) -> FakeMember:
        member = FakeMember(self, member_id, name)
        self.members[member_id] = member
        return member

    def get_member(self, member_id: int):
        return self.members.get(member_id)

    async def fetch_member(self, member_id: int):
        raise _not_found()

    def get_role(self, role_id: int):
        return self.roles.get(role_id)

    async def create_role(self, **kwargs):
        self.created.append(kwargs)
        return FakeRole(999, kwargs["name"])


class FakeLogChannel:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, content: str) -> None:
        self.messages.append(content)


class FakeBot:
    def __init__(self) -> None:
        self.channels = {BAN_LOG_ID: FakeLogChannel(), MESSAGE_LOG_ID: FakeLogChannel()}

    def get_channel(self, channel_id: int):
        return self.channels.get(channel_id)

    async def fetch_channel(self, channel_id: int):
        raise _not_found()


class FakeWarnings:
    def __init__(self) -> None:
        self.records: list[WarningRecord] = []
        self.fail = False

    async def add(self, record: WarningRecord) -> None:
        if self.fail:
            raise StoreFailure("disk full")
        self.records.append(record)

    async def list_for(self, guild_id: int, user_id: int):
        return [r for r in self.records if r.guild_id == guild_id and r.user_id == user_id]


class Sleeper:
    def __init__(self) -> None:
        self.delays: list[float] = []
        self.release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self.release.wait()


def make_service(mute_role: bool = True):
    config = Config(
        token="token",
        application_id=1,
        logging=LoggingConfig(ban_log_channel_id=BAN_LOG_ID, message_log_channel_id=MESSAGE_LOG_ID),
        roles=RolesConfig(mute=MUTE_ROLE_ID if mute_role else None),
    )
    bot = FakeBot()
    warnings = FakeWarnings()
    sleeper = Sleeper()
    service = ModerationService(bot, config, warnings, sleep=sleeper)
    guild = FakeGuild()
    moderator = guild.add_member(10, "mod#0001")
    target = guild.add_member(20, "user#0002")
    return service, bot, warnings, sleeper, guild, moderator, target


def test_ban_reports_to_ban_log():
    async def runner() -> None:
        service, bot, _, _, guild, moderator, target = make_service()
        reply = await service.ban(guild, moderator, target, None)

        assert reply == "✅ Banned user#0002"
        assert target.banned_for == "No reason"
        assert bot.channels[BAN_LOG_ID].messages == ["🔨 mod#0001 banned user#0002 • No reason"]

    asyncio.run(runner())


def test_kick_unknown_member_fails():
    async def runner() -> None:
        service, _, _, _, guild, moderator, _ = make_service()
        stranger = types.SimpleNamespace(id=404)
        with pytest.raises(ModerationError, match="Member not found"):
            await service.kick(guild, moderator, stranger, "bye")

    asyncio.run(runner())


def test_timed_mute_is_lifted_after_duration():
    async def runner() -> None:
        service, bot, _, sleeper, guild, moderator, target = make_service()
        reply = await service.mute(guild, moderator, target, "10m", "spam")

        assert reply == "🔇 Muted user#0002 • spam"
        assert guild.roles[MUTE_ROLE_ID] in target.roles
        assert bot.channels[MESSAGE_LOG_ID].messages == ["🔇 mod#0001 muted user#0002 • spam"]

        await asyncio.sleep(0)
        assert sleeper.delays == [600.0]
        sleeper.release.set()
        for _ in range(3):
            await asyncio.sleep(0)
        assert target.roles == []
        await service.close()

    asyncio.run(runner())


def test_mute_with_bad_duration_changes_nothing():
    async def runner() -> None:
        service, _, _, _, guild, moderator, target = make_service()
        with pytest.raises(ModerationError, match="Invalid duration"):
            await service.mute(guild, moderator, target, "forever")
        assert target.roles == []

    asyncio.run(runner())


def test_mute_with_oversized_duration_changes_nothing():
    async def runner() -> None:
        service, _, _, _, guild, moderator, target = make_service()
        with pytest.raises(ModerationError, match="Invalid duration"):
            await service.mute(guild, moderator, target, "99999999999d")
        assert target.roles == []
        assert service._unmute_tasks == {}

    asyncio.run(runner())


def test_mute_requires_configured_role():
    async def runner() -> None:
        service, _, _, _, guild, moderator, target = make_service(mute_role=False)
        with pytest.raises(ModerationError, match="Mute role not found"):
            await service.mute(guild, moderator, target)

    asyncio.run(runner())


def test_unmute_cancels_pending_timer():
    async def runner() -> None:
        service, _, _, sleeper, guild, moderator, target = make_service()
        await service.mute(guild, moderator, target, "1h")
        await asyncio.sleep(0)

        reply = await service.unmute(guild, moderator, target)
        assert reply == "🔊 Unmuted user#0002"
        assert target.roles == []
        assert service._unmute_tasks == {}
        await service.close()

    asyncio.run(runner())


def test_warnings_are_recorded_and_listed_oldest_first():
    async def runner() -> None:
        service, _, warnings, _, guild, moderator, target = make_service()
        assert await service.warn(guild, moderator, target, "caps") == "⚠️ Warned user#0002"
        older = WarningRecord(guild.id, target.id, moderator.id, "spam", datetime(2020, 1, 1, tzinfo=UTC))
        warnings.records.append(older)

        listed = await service.infractions(guild, target)
        assert [record.reason for record in listed] == ["spam", "caps"]

        embed = build_infractions_embed(target, listed)
        assert embed.title == "user#0002 — Warnings"
        assert embed.description.splitlines()[0].startswith("1. <@10> • spam")

    asyncio.run(runner())


def test_warn_still_replies_when_store_fails():
    async def runner() -> None:
        service, _, warnings, _, guild, moderator, target = make_service()
        warnings.fail = True
        assert await service.warn(guild, moderator, target) == "⚠️ Warned user#0002"

    asyncio.run(runner())


def test_role_management():
    async def runner() -> None:
        service, _, _, _, guild, moderator, target = make_service()
        role = FakeRole(30, "Helper")
        assert await service.role_add(guild, moderator, target, role) == "✅ Added Helper to user#0002"
        assert role in target.roles
        assert await service.role_remove(guild, moderator, target, role) == "✅ Removed Helper from user#0002"
        assert role not in target.roles

        assert await service.role_create(guild, moderator, "VIP", "#ff0000") == "✅ Created role VIP"
        assert guild.created == [{"name": "VIP", "colour": discord.Color(0xFF0000)}]

        assert await service.role_delete(guild, moderator, role) == "✅ Deleted role Helper"
        assert role.deleted
        with pytest.raises(ModerationError, match="managed"):
            await service.role_delete(guild, moderator, FakeRole(31, "Bot", managed=True))

    asyncio.run(runner())


class FakeHistoryChannel:
    def __init__(self, ages_in_days) -> None:
        now = datetime.now(tz=UTC)
        self.messages = [
            types.SimpleNamespace(created_at=now - timedelta(days=age)) for age in ages_in_days
        ]
        self.limits: list[int] = []

    async def purge(self, *, limit, check):
        self.limits.append(limit)
        return [message for message in self.messages[:limit] if check(message)]


def test_clear_caps_amount_and_skips_old_messages():
    async def runner() -> None:
        service = make_service()[0]
        channel = FakeHistoryChannel([0, 1, 2, 20, 30])
        assert await service.clear(channel, 500) == 3
        assert await service.clear(channel, None) == 3
        assert channel.limits == [100, 10]

    asyncio.run(runner())


def test_parse_color():
    assert parse_color(None) is None
    assert parse_color("#00ff00") == discord.Color(0x00FF00)
    assert parse_color("gold") == discord.Color.gold()
    with pytest.raises(ModerationError):
        parse_color("not a colour")
