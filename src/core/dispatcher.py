"""
Waste Reminder Bot — Notification Dispatcher.

Sends one reminder per user and pickup date. Each (user, date) pair is
claimed twice before sending: in memory for the current and later pickup
dates, and through the store's persisted last-notified marker, so a
re-run of the same tick (even after a restart) does not send again.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import TYPE_CHECKING

from src.core.errors import DispatchFailure, StoreUnavailable
from src.data.models import DispatchResult
from src.ports.notification_port import NotificationError, RecipientUnavailable

if TYPE_CHECKING:
    from src.data.db import SubscriptionStore
    from src.data.models import PickupEvent
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"


def render_digest(
    events: list[PickupEvent],
    target_date: date,
    today: date | None = None,
    label: str | None = None,
) -> str:
    """Format a user's digest as a chat message.

    `label` (the user's alias for their location) replaces the location
    ids in the text when given.
    """
    today = today or date.today()
    if target_date == today:
        when = "Today"
    elif target_date == today + timedelta(days=1):
        when = "Tomorrow"
    else:
        when = f"On {target_date.strftime('%A')}"

    categories = ", ".join(ev.waste_type for ev in events)
    if label:
        where = f" at {label}"
    else:
        locations = sorted({ev.location_id for ev in events})
        where = f" at {', '.join(locations)}" if locations else ""
    return (
        f"📅 {when} ({target_date.strftime('%d.%m.%Y')}){where}: "
        f"{categories} collection."
    )


class NotificationDispatcher:
    """Sends digests through a NotificationPort, at most once per user and date."""

    def __init__(self, store: SubscriptionStore, notifier: NotificationPort) -> None:
        self._store = store
        self._notifier = notifier
        self._sent: set[tuple[int, date]] = set()

    async def dispatch(
        self,
        digests: dict[int, list[PickupEvent]],
        target_date: date,
        today: date | None = None,
    ) -> list[DispatchResult]:
        """Send every non-empty digest. One user's failure never stops the batch.

        Raises:
            StoreUnavailable: only if the store fails while claiming; results
                already produced are lost with the aborted tick, which is
                retried wholesale on the next schedule.
        """
        # Earlier dates are settled; the persisted marker covers them.
        self._sent = {key for key in self._sent if key[1] >= target_date}

        results: list[DispatchResult] = []
        for user_id, events in digests.items():
            if not events:
                continue
            results.append(await self._dispatch_one(user_id, events, target_date, today))

        if results:
            sent = sum(1 for r in results if r.status == SENT)
            failed = sum(1 for r in results if r.status == FAILED)
            logger.info(
                "Dispatch for %s finished: %d sent, %d skipped, %d failed",
                target_date.isoformat(), sent, len(results) - sent - failed, failed,
            )
        return results

    async def _dispatch_one(
        self,
        user_id: int,
        events: list[PickupEvent],
        target_date: date,
        today: date | None,
    ) -> DispatchResult:
        key = (user_id, target_date)
        if key in self._sent:
            return DispatchResult(user_id, target_date, SKIPPED, "already sent in this run")
        user = self._store.get_user(user_id)
        if user is None or not self._store.claim_notification(user_id, target_date):
            self._sent.add(key)
            return DispatchResult(user_id, target_date, SKIPPED, "already notified")
        self._sent.add(key)

        text = render_digest(events, target_date, today, label=user.alias)
        try:
            await self._notifier.send_message(user_id, text)
        except RecipientUnavailable as exc:
            logger.info("User %d blocked the bot or is gone, removing: %s", user_id, exc)
            self._forget_user(user_id)
            return self._failed(DispatchFailure(user_id, f"recipient unavailable: {exc}"), target_date)
        except NotificationError as exc:
            self._release(key)
            return self._failed(DispatchFailure(user_id, str(exc)), target_date)
        except Exception as exc:
            logger.exception("Unexpected error sending reminder to %d", user_id)
            self._release(key)
            return self._failed(DispatchFailure(user_id, f"unexpected error: {exc}"), target_date)

        logger.info("Reminder sent to %d for %s", user_id, target_date.isoformat())
        return DispatchResult(user_id, target_date, SENT)

    def _failed(self, failure: DispatchFailure, target_date: date) -> DispatchResult:
        logger.error("Failed to send reminder to %d: %s", failure.user_id, failure.reason)
        return DispatchResult(failure.user_id, target_date, FAILED, failure.reason)

    def _release(self, key: tuple[int, date]) -> None:
        user_id, target_date = key
        self._sent.discard(key)
        try:
            self._store.release_notification(user_id, target_date)
        except StoreUnavailable as exc:
            logger.error("Could not release reminder claim for %d: %s", user_id, exc)

    def _forget_user(self, user_id: int) -> None:
        try:
            self._store.delete_user(user_id)
        except StoreUnavailable as exc:
            logger.error("Could not remove unreachable user %d: %s", user_id, exc)
