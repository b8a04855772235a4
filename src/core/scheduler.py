"""
Waste Reminder Bot — Reminder Service.

Minute tick: match the pickup events of the target date against the users
whose reminder time has been reached and who were not yet reminded about
that date, then dispatch the digests. A user missed by an earlier tick
(failed send, restart, store outage) is picked up by the next one.

Daily refresh: re-download the pickup calendar for every location users
are registered at.

The ReminderService owns the store, notifier and dispatcher and is
handed explicitly to the Telegram application; it registers its jobs on
`start(job_queue)` and removes them on `stop()`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time as dt_time, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable
from zoneinfo import ZoneInfo

from src.config import settings
from src.core.dispatcher import NotificationDispatcher
from src.core.errors import StoreUnavailable
from src.core.matching import compute_digests

if TYPE_CHECKING:
    from telegram.ext import ContextTypes, Job, JobQueue

    from src.core.validator import LocationId
    from src.data.db import SubscriptionStore
    from src.data.models import DispatchResult, PickupEvent
    from src.ports.notification_port import NotificationPort

    PickupFetcher = Callable[[LocationId, date, date], Awaitable[list[PickupEvent]]]

logger = logging.getLogger(__name__)

_FETCH_PAUSE_SECONDS = 1.0
_TICK_INTERVAL = timedelta(minutes=1)


def due_time(now: datetime) -> str:
    """The "HH:MM" cutoff a tick at `now` serves: every reminder time up to it is due."""
    return f"{now.hour:02d}:{now.minute:02d}"


def target_date_for(now: datetime, day_offset: int | None = None) -> date:
    """Pickup date reminders sent at `now` are about."""
    if day_offset is None:
        day_offset = settings.NOTIFY_DAY_OFFSET
    return now.date() + timedelta(days=day_offset)


class ReminderService:
    """Explicitly owned scheduler state: run-lock, dispatcher and jobs."""

    def __init__(
        self,
        store: SubscriptionStore,
        notifier: NotificationPort,
        fetcher: PickupFetcher | None = None,
    ) -> None:
        if fetcher is None:
            from src.integrations.waste_calendar import fetch_pickup_events
            fetcher = fetch_pickup_events

        self._store = store
        self._fetcher = fetcher
        self._dispatcher = NotificationDispatcher(store, notifier)
        self._running: set[date] = set()
        self._jobs: list[Job] = []

    @property
    def is_started(self) -> bool:
        return bool(self._jobs)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self, now: datetime | None = None) -> list[DispatchResult] | None:
        """Match and dispatch every reminder due at `now` and not yet sent.

        Returns the dispatch results, or None if the tick was skipped
        because a tick for the same target date is still running or the
        store is unavailable.
        """
        now = now or datetime.now(ZoneInfo(settings.TIMEZONE))
        cutoff = due_time(now)
        target = target_date_for(now)

        # Run-lock: the check and the add happen without an await in between.
        if target in self._running:
            logger.warning("Tick for %s still running at %s, skipping", target, cutoff)
            return None
        self._running.add(target)
        try:
            digests = compute_digests(self._store, target, due_by=cutoff, pending_only=True)
            return await self._dispatcher.dispatch(digests, target, today=now.date())
        except StoreUnavailable as exc:
            logger.error("Tick for %s at %s aborted, store unavailable: %s", target, cutoff, exc)
            return None
        finally:
            self._running.discard(target)

    # ------------------------------------------------------------------
    # Pickup calendar refresh
    # ------------------------------------------------------------------

    async def refresh_pickup_events(self, today: date | None = None) -> dict[str, int]:
        """Re-fetch the pickup calendar of every registered location.

        A failing location is logged and skipped. Returns the number of
        events stored per location.
        """
        today = today or datetime.now(ZoneInfo(settings.TIMEZONE)).date()
        end = today + timedelta(days=settings.PICKUP_FETCH_DAYS)
        logger.info("Starting pickup calendar refresh...")

        try:
            locations = self._store.distinct_locations()
        except StoreUnavailable as exc:
            logger.error("Pickup refresh aborted, store unavailable: %s", exc)
            return {}

        stored: dict[str, int] = {}
        for index, location in enumerate(locations):
            if index:
                await asyncio.sleep(_FETCH_PAUSE_SECONDS)
            try:
                events = await self._fetcher(location, today, end)
                stored[location.value] = self._store.replace_events(location, events, today)
            except Exception as exc:
                logger.error("Failed to refresh pickups for %s: %s", location, exc)

        logger.info("Pickup calendar refresh finished for %d/%d locations", len(stored), len(locations))
        return stored

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, job_queue: JobQueue) -> None:
        """Register the minute tick, the daily refresh and a startup refresh."""
        if self.is_started:
            return
        tz = ZoneInfo(settings.TIMEZONE)
        now = datetime.now(tz)
        next_minute = now.replace(second=0, microsecond=0) + _TICK_INTERVAL

        async def _tick_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
            await self.run_tick()

        async def _refresh_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
            await self.refresh_pickup_events()

        self._jobs = [
            job_queue.run_repeating(
                _tick_callback, interval=_TICK_INTERVAL, first=next_minute,
                name="reminder_tick",
            ),
            job_queue.run_daily(
                _refresh_callback,
                time=dt_time(hour=settings.PICKUP_REFRESH_HOUR, minute=0, tzinfo=tz),
                name="pickup_refresh",
            ),
            job_queue.run_once(_refresh_callback, when=0, name="pickup_refresh_startup"),
        ]
        logger.info(
            "Reminder ticks scheduled every minute from %s, pickup refresh daily at %02d:00 %s",
            next_minute.isoformat(timespec="minutes"), settings.PICKUP_REFRESH_HOUR, settings.TIMEZONE,
        )

    def stop(self) -> None:
        """Remove every job registered by `start`."""
        for job in self._jobs:
            job.schedule_removal()
        self._jobs = []
        logger.info("Reminder service stopped")
