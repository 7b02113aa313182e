"""Data models used for giveaway and warning persistence."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _field(payload: dict, *keys: str):
    """Return the first of ``keys`` present in ``payload``; older files use camelCase names."""
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    raise KeyError(keys[0])


def _parse_timestamp(value) -> datetime:
    """Accept ISO strings, datetimes (Mongo) and epoch milliseconds (legacy files)."""
    if isinstance(value, datetime):
        return _aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    return _aware(datetime.fromisoformat(str(value)))


@dataclass(slots=True, frozen=True)
class GiveawayRecord:
    """An active giveaway, keyed by the id of its announcement message."""
    announcement_id: int
    channel_id: int
    prize: str
    winner_count: int
    ends_at: datetime
    host_id: int

    def __post_init__(self) -> None:
        if self.winner_count < 1:
            raise ValueError("winner_count must be at least 1")
        object.__setattr__(self, "ends_at", _aware(self.ends_at))

    def remaining(self, now: datetime) -> float:
        """Seconds left until the draw, never negative."""
        return max((self.ends_at - now).total_seconds(), 0.0)

    def to_payload(self) -> dict:
        """Serialize the record to a JSON-serialisable structure."""
        return {
            "announcement_id": self.announcement_id,
            "channel_id": self.channel_id,
            "prize": self.prize,
            "winner_count": self.winner_count,
            "ends_at": self.ends_at.isoformat(),
            "host_id": self.host_id,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "GiveawayRecord":
        """Reconstruct a GiveawayRecord from serialized payload data."""
        return cls(
            announcement_id=int(_field(payload, "announcement_id", "messageId")),
            channel_id=int(_field(payload, "channel_id", "channelId", "channel")),
            prize=str(payload["prize"]),
            winner_count=int(_field(payload, "winner_count", "winners")),
            ends_at=_parse_timestamp(_field(payload, "ends_at", "endsAt")),
            host_id=int(_field(payload, "host_id", "hostId")),
        )


@dataclass(slots=True, frozen=True)
class WarningRecord:
    """A warning issued to a guild member by a moderator."""
    guild_id: int
    user_id: int
    by_id: int
    reason: str
    at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "at", _aware(self.at))

    def to_payload(self) -> dict:
        return {
            "guild_id": self.guild_id,
            "user_id": self.user_id,
            "by_id": self.by_id,
            "reason": self.reason,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "WarningRecord":
        return cls(
            guild_id=int(_field(payload, "guild_id", "guildId")),
            user_id=int(_field(payload, "user_id", "userId")),
            by_id=int(_field(payload, "by_id", "byId", "by")),
            reason=str(payload.get("reason", "No reason")),
            at=_parse_timestamp(payload["at"]),
        )
