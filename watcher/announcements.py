"""Discord side of giveaways: posting announcements and reading entries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

import discord


log = logging.getLogger(__name__)


class ChannelUnavailable(RuntimeError):
    """Raised when the destination channel cannot be fetched."""


class PublishFailure(RuntimeError):
    """Raised when the announcement or its entry reaction cannot be posted."""


class ConclusionFetchFailure(RuntimeError):
    """Raised when the announcement or its reactions are gone at draw time."""


class AnnouncementChannel(Protocol):
    async def ensure_channel(self, channel_id: int) -> str: ...

    async def publish(self, channel_id: int, embed: discord.Embed) -> int: ...

    async def attach_entry_affordance(self, channel_id: int, message_id: int) -> None: ...

    async def fetch_participants(self, channel_id: int, message_id: int) -> List[int]: ...

    async def send(
        self,
        channel_id: int,
        content: Optional[str] = None,
        *,
        embed: Optional[discord.Embed] = None,
    ) -> None: ...

    async def retract(self, channel_id: int, message_id: int) -> None: ...


class DiscordAnnouncementChannel:
    """AnnouncementChannel backed by a discord.py client."""

    def __init__(self, bot: discord.Client, entry_emoji: str = "🎉") -> None:
        self.bot = bot
        self.entry_emoji = entry_emoji

    async def ensure_channel(self, channel_id: int) -> str:
        """Return the channel mention, raising ChannelUnavailable if it is gone."""
        channel = await self._fetch_channel(channel_id)
        return channel.mention

    async def publish(self, channel_id: int, embed: discord.Embed) -> int:
        channel = await self._fetch_channel(channel_id)
        try:
            message = await channel.send(embed=embed)
        except discord.HTTPException as exc:
            raise PublishFailure(f"Could not post the giveaway in {channel.mention}: {exc}") from exc
        return message.id

    async def attach_entry_affordance(self, channel_id: int, message_id: int) -> None:
        channel = await self._fetch_channel(channel_id)
        try:
            await channel.get_partial_message(message_id).add_reaction(self.entry_emoji)
        except discord.HTTPException as exc:
            raise PublishFailure(f"Could not add the entry reaction: {exc}") from exc

    async def fetch_participants(self, channel_id: int, message_id: int) -> List[int]:
        try:
            channel = await self._fetch_channel(channel_id)
        except ChannelUnavailable as exc:
            raise ConclusionFetchFailure(str(exc)) from exc
        try:
            message = await channel.fetch_message(message_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            raise ConclusionFetchFailure(
                f"Giveaway message {message_id} is unavailable: {exc}"
            ) from exc

        reaction = discord.utils.find(
            lambda r: str(r.emoji) == self.entry_emoji, message.reactions
        )
        if reaction is None:
            return []

        entrants: List[int] = []
        seen: set[int] = set()
        try:
            async for user in reaction.users():
                if user.bot or user.id in seen:
                    continue
                seen.add(user.id)
                entrants.append(user.id)
        except discord.HTTPException as exc:
            raise ConclusionFetchFailure(
                f"Could not read entries for giveaway {message_id}: {exc}"
            ) from exc
        return entrants

    async def send(
        self,
        channel_id: int,
        content: Optional[str] = None,
        *,
        embed: Optional[discord.Embed] = None,
    ) -> None:
        channel = await self._fetch_channel(channel_id)
        await channel.send(content=content, embed=embed)

    async def retract(self, channel_id: int, message_id: int) -> None:
        try:
            channel = await self._fetch_channel(channel_id)
            await channel.get_partial_message(message_id).delete()
        except (ChannelUnavailable, discord.HTTPException) as exc:
            log.warning("Unable to retract giveaway message %s: %s", message_id, exc)

    async def _fetch_channel(self, channel_id: int) -> discord.abc.Messageable:
        channel = self.bot.get_channel(channel_id)
        if isinstance(channel, discord.abc.Messageable):
            return channel
        try:
            fetched = await self.bot.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            raise ChannelUnavailable(f"Giveaway channel {channel_id} not found") from exc
        if not isinstance(fetched, discord.abc.Messageable):
            raise ChannelUnavailable(f"Channel {channel_id} cannot receive messages")
        return fetched


def build_announcement_embed(
    *,
    prize: str,
    winner_count: int,
    ends_at: datetime,
    host_name: str,
    entry_emoji: str = "🎉",
) -> discord.Embed:
    ends_ts = int(ends_at.timestamp())
    embed = discord.Embed(
        title="🎉 New Giveaway!",
        description=(
            f"**Prize:** {prize}\n"
            f"**Winners:** {winner_count}\n"
            f"**Ends:** <t:{ends_ts}:F> (<t:{ends_ts}:R>)\n"
            f"React with {entry_emoji} to enter!"
        ),
        color=discord.Color.gold(),
        timestamp=ends_at,
    )
    embed.set_footer(text=f"Hosted by {host_name}")
    return embed


def build_result_embed(*, prize: str, winner_ids: Iterable[int]) -> discord.Embed:
    mentions = ", ".join(f"<@{winner_id}>" for winner_id in winner_ids)
    return discord.Embed(
        title="🎉 Giveaway Ended",
        description=f"Prize: {prize}\nWinners: {mentions}",
        color=discord.Color.green(),
    )
