from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import UTC, datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .announcements import (
    AnnouncementChannel,
    ChannelUnavailable,
    ConclusionFetchFailure,
    PublishFailure,
    build_announcement_embed,
    build_result_embed,
)
from .config import Config
from .durations import InvalidDuration, parse_duration
from .models import GiveawayRecord
from .storage import GiveawayStore, StoreFailure

log = logging.getLogger(__name__)

__all__ = [
    "ChannelUnavailable",
    "GiveawayError",
    "GiveawayManager",
    "InvalidDuration",
    "InvalidWinnerCount",
    "PublishFailure",
    "StoreFailure",
    "pick_winners",
]

T = TypeVar("T")

NO_ENTRIES_MESSAGE = "No valid entries."


class GiveawayError(RuntimeError):
    """Raised when a giveaway cannot be started from the given input."""


class InvalidWinnerCount(GiveawayError):
    """Raised when fewer than one winner is requested."""


def pick_winners(
    entrants: Sequence[T], count: int, rng: Optional[secrets.SystemRandom] = None
) -> List[T]:
    """Draw up to ``count`` distinct entrants uniformly without replacement."""
    rng = rng or secrets.SystemRandom()
    pool = list(entrants)
    winners: List[T] = []
    while len(winners) < count and pool:
        winners.append(pool.pop(rng.randrange(len(pool))))
    return winners


class GiveawayManager:
    """Coordinates giveaway lifecycle, persistence, and Discord announcements.

    Every stored record has exactly one pending conclusion task in
    ``_conclude_tasks``; the task deletes the record when it runs. Conclusion
    is best-effort: failures are logged and never raised to the event loop.
    """

    def __init__(
        self,
        config: Config,
        channels: AnnouncementChannel,
        store: GiveawayStore,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        rng: Optional[secrets.SystemRandom] = None,
    ) -> None:
        self.config = config
        self.channels = channels
        self.store = store
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()
        self._conclude_tasks: Dict[int, asyncio.Task] = {}

    @property
    def pending_ids(self) -> List[int]:
        return sorted(self._conclude_tasks)

    def resolve_channel_id(self, origin_channel_id: int) -> int:
        return self.config.giveaways.default_channel_id or origin_channel_id

    async def start(
        self,
        origin_channel_id: int,
        duration_spec: str,
        winner_count: int,
        prize: str,
        host_id: int,
        host_name: str,
    ) -> GiveawayRecord:
        duration = parse_duration(duration_spec)
        if winner_count < 1:
            raise InvalidWinnerCount("Winners must be at least 1.")
        prize = (prize or "").strip()
        if not prize:
            raise GiveawayError("A prize description is required.")

        channel_id = self.resolve_channel_id(origin_channel_id)
        await self.channels.ensure_channel(channel_id)

        try:
            ends_at = self._clock() + duration
        except OverflowError as exc:
            raise InvalidDuration(f"Duration is too long: {duration_spec!r}") from exc
        embed = build_announcement_embed(
            prize=prize,
            winner_count=winner_count,
            ends_at=ends_at,
            host_name=host_name,
            entry_emoji=self.config.giveaways.entry_emoji,
        )
        announcement_id = await self.channels.publish(channel_id, embed)
        try:
            await self.channels.attach_entry_affordance(channel_id, announcement_id)
        except PublishFailure:
            await self.channels.retract(channel_id, announcement_id)
            raise

        record = GiveawayRecord(
            announcement_id=announcement_id,
            channel_id=channel_id,
            prize=prize,
            winner_count=winner_count,
            ends_at=ends_at,
            host_id=host_id,
        )
        try:
            await self.store.put(record)
        except StoreFailure:
            log.exception(
                "Failed to persist giveaway %s; retracting announcement.", announcement_id
            )
            await self.channels.retract(channel_id, announcement_id)
            raise

        self._schedule_conclusion(record, duration.total_seconds())
        log.info(
            "Giveaway %s started in channel %s by %s: %r, %d winner(s), ends %s.",
            announcement_id,
            channel_id,
            host_id,
            prize,
            winner_count,
            ends_at.isoformat(),
        )
        return record

    async def restore(self) -> int:
        """Reschedule every stored giveaway; overdue ones conclude right away."""
        try:
            records = await self.store.list_all()
        except StoreFailure:
            log.exception("Failed to load persisted giveaways; nothing restored.")
            return 0

        now = self._clock()
        restored = 0
        for record in records:
            if record.announcement_id in self._conclude_tasks:
                continue
            delay = record.remaining(now)
            if delay == 0:
                log.info("Giveaway %s is overdue; concluding now.", record.announcement_id)
            self._schedule_conclusion(record, delay)
            restored += 1
        if restored:
            log.info("Restored %d pending giveaway(s).", restored)
        return restored

    async def conclude(self, announcement_id: int) -> None:
        try:
            await self._conclude(announcement_id)
        except Exception:
            log.exception("Conclusion of giveaway %s failed.", announcement_id)

    async def close(self) -> None:
        tasks = list(self._conclude_tasks.values())
        self._conclude_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _conclude(self, announcement_id: int) -> None:
        try:
            record = await self.store.get(announcement_id)
        except StoreFailure:
            log.exception("Unable to read giveaway %s; skipping conclusion.", announcement_id)
            return
        if record is None:
            log.debug("Giveaway %s already concluded.", announcement_id)
            return

        # shutdown keeps the record for the next boot; any other outcome removes it
        try:
            await self._announce_result(record)
        except asyncio.CancelledError:
            log.info("Conclusion of giveaway %s interrupted; record kept.", announcement_id)
            raise
        except Exception:
            await self._delete_record(announcement_id)
            raise
        await self._delete_record(announcement_id)

    async def _announce_result(self, record: GiveawayRecord) -> None:
        announcement_id = record.announcement_id
        try:
            entrants = await self.channels.fetch_participants(
                record.channel_id, announcement_id
            )
        except ConclusionFetchFailure as exc:
            log.warning("Giveaway %s aborted: %s", announcement_id, exc)
            return

        if not entrants:
            await self.channels.send(record.channel_id, NO_ENTRIES_MESSAGE)
            log.info("Giveaway %s ended with no valid entries.", announcement_id)
            return

        winners = pick_winners(entrants, record.winner_count, self._rng)
        await self.channels.send(
            record.channel_id,
            embed=build_result_embed(prize=record.prize, winner_ids=winners),
        )
        log.info(
            "Giveaway %s ended with %d winner(s) from %d entrant(s): %s",
            announcement_id,
            len(winners),
            len(entrants),
            winners,
        )

    async def _delete_record(self, announcement_id: int) -> None:
        try:
            await self.store.delete(announcement_id)
        except StoreFailure:
            log.exception("Unable to delete giveaway record %s.", announcement_id)

    def _schedule_conclusion(self, record: GiveawayRecord, delay: float) -> None:
        announcement_id = record.announcement_id

        async def waiter() -> None:
            try:
                if delay > 0:
                    await self._sleep(delay)
                await self.conclude(announcement_id)
            except asyncio.CancelledError:
                log.debug("Conclusion task for giveaway %s cancelled", announcement_id)
                raise
            finally:
                if self._conclude_tasks.get(announcement_id) is task:
                    del self._conclude_tasks[announcement_id]

        task = asyncio.create_task(waiter(), name=f"giveaway-conclude-{announcement_id}")
        self._conclude_tasks[announcement_id] = task
