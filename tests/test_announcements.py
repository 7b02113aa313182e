from __future__ import annotations

import asyncio
import types
from datetime import UTC, datetime

import discord
import pytest

from watcher.announcements import (
    ChannelUnavailable,
    ConclusionFetchFailure,
    DiscordAnnouncementChannel,
    PublishFailure,
    build_announcement_embed,
)


def _http_error(status: int = 500) -> discord.HTTPException:
    return discord.HTTPException(types.SimpleNamespace(status=status, reason="Error"), "boom")


def _not_found() -> discord.NotFound:
    return discord.NotFound(types.SimpleNamespace(status=404, reason="Not Found"), "Unknown")


class FakeReaction:
    def __init__(self, emoji: str, users) -> None:
        self.emoji = emoji
        self._users = users

    async def users(self):
        for user in self._users:
            yield user


class FakePartialMessage:
    def __init__(self, channel: "FakeChannel", message_id: int) -> None:
        self.channel = channel
        self.id = message_id

    async def add_reaction(self, emoji: str) -> None:
        if self.channel.fail_reaction:
            raise _http_error(403)
        self.channel.reactions.append((self.id, emoji))

    async def delete(self) -> None:
        if self.channel.fail_delete:
            raise _not_found()
        self.channel.deleted.append(self.id)


class FakeChannel(discord.abc.Messageable):
    def __init__(self, channel_id: int) -> None:
        self.id = channel_id
        self.mention = f"<#{channel_id}>"
        self.sent: list[dict] = []
        self.messages: dict[int, object] = {}
        self.reactions: list[tuple[int, str]] = []
        self.deleted: list[int] = []
        self.fail_send = False
        self.fail_reaction = False
        self.fail_delete = False

    async def send(self, content=None, *, embed=None):
        if self.fail_send:
            raise _http_error()
        self.sent.append({"content": content, "embed": embed})
        return types.SimpleNamespace(id=5000 + len(self.sent))

    async def fetch_message(self, message_id: int):
        try:
            return self.messages[message_id]
        except KeyError:
            raise _not_found() from None

    def get_partial_message(self, message_id: int) -> FakePartialMessage:
        return FakePartialMessage(self, message_id)


class FakeBot:
    def __init__(self, *channels: FakeChannel) -> None:
        self.channels = {channel.id: channel for channel in channels}

    def get_channel(self, channel_id: int):
        return None

    async def fetch_channel(self, channel_id: int):
        try:
            return self.channels[channel_id]
        except KeyError:
            raise _not_found() from None


def _user(user_id: int, bot: bool = False):
    return types.SimpleNamespace(id=user_id, bot=bot)


def test_publish_and_react():
    async def runner() -> None:
        channel = FakeChannel(100)
        announcements = DiscordAnnouncementChannel(FakeBot(channel))

        assert await announcements.ensure_channel(100) == "<#100>"
        message_id = await announcements.publish(100, discord.Embed(title="x"))
        await announcements.attach_entry_affordance(100, message_id)

        assert channel.reactions == [(message_id, "🎉")]

    asyncio.run(runner())


def test_missing_channel_is_unavailable():
    async def runner() -> None:
        announcements = DiscordAnnouncementChannel(FakeBot())
        with pytest.raises(ChannelUnavailable):
            await announcements.ensure_channel(1)

    asyncio.run(runner())


def test_publish_failures_are_wrapped():
    async def runner() -> None:
        channel = FakeChannel(100)
        announcements = DiscordAnnouncementChannel(FakeBot(channel))
        channel.fail_reaction = True
        with pytest.raises(PublishFailure):
            await announcements.attach_entry_affordance(100, 1)
        channel.fail_send = True
        with pytest.raises(PublishFailure):
            await announcements.publish(100, discord.Embed(title="x"))

    asyncio.run(runner())


def test_participants_exclude_bots_and_duplicates():
    async def runner() -> None:
        channel = FakeChannel(100)
        channel.messages[1] = types.SimpleNamespace(
            reactions=[
                FakeReaction("👍", [_user(9)]),
                FakeReaction("🎉", [_user(1), _user(2, bot=True), _user(3), _user(1)]),
            ]
        )
        channel.messages[2] = types.SimpleNamespace(reactions=[])
        announcements = DiscordAnnouncementChannel(FakeBot(channel))

        assert await announcements.fetch_participants(100, 1) == [1, 3]
        assert await announcements.fetch_participants(100, 2) == []

    asyncio.run(runner())


def test_deleted_announcement_fails_fetch():
    async def runner() -> None:
        announcements = DiscordAnnouncementChannel(FakeBot(FakeChannel(100)))
        with pytest.raises(ConclusionFetchFailure):
            await announcements.fetch_participants(100, 404)
        with pytest.raises(ConclusionFetchFailure):
            await announcements.fetch_participants(200, 1)

    asyncio.run(runner())


def test_retract_is_best_effort():
    async def runner() -> None:
        channel = FakeChannel(100)
        announcements = DiscordAnnouncementChannel(FakeBot(channel))
        await announcements.retract(100, 7)
        assert channel.deleted == [7]

        channel.fail_delete = True
        await announcements.retract(100, 8)
        await announcements.retract(200, 9)

    asyncio.run(runner())


def test_announcement_embed_lists_details():
    ends_at = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    embed = build_announcement_embed(
        prize="Nitro", winner_count=2, ends_at=ends_at, host_name="host#0001"
    )
    ts = int(ends_at.timestamp())
    assert embed.title == "🎉 New Giveaway!"
    assert "**Prize:** Nitro" in embed.description
    assert "**Winners:** 2" in embed.description
    assert f"<t:{ts}:R>" in embed.description
    assert embed.footer.text == "Hosted by host#0001"
