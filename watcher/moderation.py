from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import discord

from .config import Config
from .durations import InvalidDuration, parse_duration
from .models import WarningRecord
from .storage import StoreFailure, WarningStore

log = logging.getLogger(__name__)

DEFAULT_REASON = "No reason"
MAX_CLEAR = 100
BULK_DELETE_MAX_AGE = timedelta(days=14)


class ModerationError(RuntimeError):
    """Raised with a user-facing message when a moderation action fails."""


def _tag(user: discord.abc.User) -> str:
    return str(user)


def parse_color(value: Optional[str]) -> Optional[discord.Color]:
    """Parse ``#rrggbb``, ``0x..``, ``rgb(...)`` or a named colour like ``gold``."""
    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        return discord.Color.from_str(text)
    except ValueError:
        pass
    factory = getattr(discord.Color, text.lower().replace(" ", "_"), None)
    if callable(factory):
        try:
            color = factory()
        except TypeError:
            color = None
        if isinstance(color, discord.Color):
            return color
    raise ModerationError(f"Unknown color: {value}")


class ModerationService:
    """Moderation actions shared by the slash and prefix commands."""

    def __init__(
        self,
        bot: discord.Client,
        config: Config,
        warnings: WarningStore,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.bot = bot
        self.config = config
        self.warnings = warnings
        self._sleep = sleep
        self._unmute_tasks: Dict[tuple[int, int], asyncio.Task] = {}

    async def log_to(self, channel_id: Optional[int], content: str) -> None:
        if not channel_id:
            return
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
                log.warning("Log channel %s unavailable: %s", channel_id, exc)
                return
        try:
            await channel.send(content)
        except discord.HTTPException as exc:
            log.warning("Failed to send log message to %s: %s", channel_id, exc)

    async def ban(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
        reason: Optional[str] = None,
    ) -> str:
        reason = reason or DEFAULT_REASON
        member = await self._fetch_member(guild, user.id)
        try:
            await member.ban(reason=reason)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        log.info("%s banned %s in guild %s: %s", moderator.id, user.id, guild.id, reason)
        await self.log_to(
            self.config.logging.ban_log_channel_id,
            f"🔨 {_tag(moderator)} banned {_tag(user)} • {reason}",
        )
        return f"✅ Banned {_tag(user)}"

    async def kick(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
        reason: Optional[str] = None,
    ) -> str:
        reason = reason or DEFAULT_REASON
        member = await self._fetch_member(guild, user.id)
        try:
            await member.kick(reason=reason)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        log.info("%s kicked %s in guild %s: %s", moderator.id, user.id, guild.id, reason)
        await self.log_to(
            self.config.logging.ban_log_channel_id,
            f"👢 {_tag(moderator)} kicked {_tag(user)} • {reason}",
        )
        return f"✅ Kicked {_tag(user)}"

    async def mute(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
        duration_spec: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> str:
        reason = reason or DEFAULT_REASON
        duration: Optional[timedelta] = None
        if duration_spec:
            try:
                duration = parse_duration(duration_spec)
            except InvalidDuration as exc:
                raise ModerationError("Invalid duration format.") from exc
        member = await self._fetch_member(guild, user.id)
        mute_role = self._mute_role(guild)
        try:
            await member.add_roles(mute_role, reason=reason)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        if duration is not None:
            self._schedule_unmute(member, mute_role, duration.total_seconds())
        await self.log_to(
            self.config.logging.message_log_channel_id,
            f"🔇 {_tag(moderator)} muted {_tag(user)} • {reason}",
        )
        return f"🔇 Muted {_tag(user)} • {reason}"

    async def unmute(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
    ) -> str:
        member = await self._fetch_member(guild, user.id)
        mute_role = self._mute_role(guild)
        try:
            await member.remove_roles(mute_role)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        task = self._unmute_tasks.pop((guild.id, member.id), None)
        if task:
            task.cancel()
        log.info("%s unmuted %s in guild %s", moderator.id, user.id, guild.id)
        return f"🔊 Unmuted {_tag(user)}"

    async def warn(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
        reason: Optional[str] = None,
    ) -> str:
        record = WarningRecord(
            guild_id=guild.id,
            user_id=user.id,
            by_id=moderator.id,
            reason=reason or DEFAULT_REASON,
            at=datetime.now(tz=UTC),
        )
        try:
            await self.warnings.add(record)
        except StoreFailure:
            log.exception("Failed to persist warning for %s", user.id)
        await self.log_to(
            self.config.logging.message_log_channel_id,
            f"⚠️ {_tag(moderator)} warned {_tag(user)} • {record.reason}",
        )
        return f"⚠️ Warned {_tag(user)}"

    async def infractions(
        self, guild: discord.Guild, user: discord.abc.User
    ) -> List[WarningRecord]:
        try:
            warnings = await self.warnings.list_for(guild.id, user.id)
        except StoreFailure:
            log.exception("Failed to load warnings for %s", user.id)
            return []
        return sorted(warnings, key=lambda record: record.at)

    async def role_add(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
        role: discord.Role,
    ) -> str:
        member = await self._fetch_member(guild, user.id)
        try:
            await member.add_roles(role)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        await self.log_to(
            self.config.logging.message_log_channel_id,
            f"🟢 {_tag(moderator)} added {role.name} to {_tag(user)}",
        )
        return f"✅ Added {role.name} to {_tag(user)}"

    async def role_remove(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        user: discord.abc.User,
        role: discord.Role,
    ) -> str:
        member = await self._fetch_member(guild, user.id)
        try:
            await member.remove_roles(role)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        await self.log_to(
            self.config.logging.message_log_channel_id,
            f"🔴 {_tag(moderator)} removed {role.name} from {_tag(user)}",
        )
        return f"✅ Removed {role.name} from {_tag(user)}"

    async def role_create(
        self,
        guild: discord.Guild,
        moderator: discord.abc.User,
        name: str,
        color: Optional[str] = None,
    ) -> str:
        colour = parse_color(color)
        kwargs = {"name": name}
        if colour is not None:
            kwargs["colour"] = colour
        try:
            role = await guild.create_role(**kwargs)
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        await self.log_to(
            self.config.logging.message_log_channel_id,
            f"🔧 {_tag(moderator)} created role {role.name}",
        )
        return f"✅ Created role {role.name}"

    async def role_delete(
        self, guild: discord.Guild, moderator: discord.abc.User, role: discord.Role
    ) -> str:
        if role.managed:
            raise ModerationError("Cannot delete managed role")
        try:
            await role.delete()
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        await self.log_to(
            self.config.logging.message_log_channel_id,
            f"🗑️ {_tag(moderator)} deleted role {role.name}",
        )
        return f"✅ Deleted role {role.name}"

    async def clear(self, channel: discord.TextChannel, amount: Optional[int]) -> int:
        """Bulk delete recent messages; messages older than 14 days are skipped."""
        limit = min(MAX_CLEAR, amount or 10)
        if limit < 1:
            raise ModerationError("Amount must be at least 1.")
        cutoff = datetime.now(tz=UTC) - BULK_DELETE_MAX_AGE
        try:
            deleted: Sequence[discord.Message] = await channel.purge(
                limit=limit, check=lambda message: message.created_at > cutoff
            )
        except discord.HTTPException as exc:
            raise ModerationError(f"Failed: {exc}") from exc
        return len(deleted)

    async def close(self) -> None:
        tasks = list(self._unmute_tasks.values())
        self._unmute_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _mute_role(self, guild: discord.Guild) -> discord.Role:
        role_id = self.config.roles.mute
        role = guild.get_role(role_id) if role_id else None
        if role is None:
            raise ModerationError("Mute role not found (set roles.mute)")
        return role

    async def _fetch_member(self, guild: discord.Guild, user_id: int) -> discord.Member:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            raise ModerationError("Member not found") from exc

    def _schedule_unmute(
        self, member: discord.Member, role: discord.Role, delay: float
    ) -> None:
        key = (member.guild.id, member.id)
        previous = self._unmute_tasks.pop(key, None)
        if previous:
            previous.cancel()

        async def runner() -> None:
            try:
                await self._sleep(delay)
                await member.remove_roles(role, reason="Mute expired")
                log.info("Mute expired for %s in guild %s", member.id, member.guild.id)
            except asyncio.CancelledError:
                raise
            except discord.HTTPException as exc:
                log.warning("Failed to lift mute for %s: %s", member.id, exc)
            finally:
                if self._unmute_tasks.get(key) is task:
                    del self._unmute_tasks[key]

        task = asyncio.create_task(runner())
        self._unmute_tasks[key] = task


def build_infractions_embed(
    user: discord.abc.User, warnings: Sequence[WarningRecord]
) -> discord.Embed:
    lines = [
        f"{index}. <@{warning.by_id}> • {warning.reason} • <t:{int(warning.at.timestamp())}:R>"
        for index, warning in enumerate(warnings, start=1)
    ]
    return discord.Embed(
        title=f"{_tag(user)} — Warnings",
        description="\n".join(lines),
        color=discord.Color.orange(),
    )


def build_userinfo_embed(
    user: discord.abc.User, member: Optional[discord.Member]
) -> discord.Embed:
    embed = discord.Embed(title=_tag(user))
    embed.set_thumbnail(url=user.display_avatar.url)
    embed.add_field(name="ID", value=str(user.id), inline=True)
    joined = (
        f"<t:{int(member.joined_at.timestamp())}:R>"
        if member is not None and member.joined_at
        else "N/A"
    )
    embed.add_field(name="Joined", value=joined, inline=True)
    return embed
