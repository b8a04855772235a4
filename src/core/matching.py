"""
Waste Reminder Bot — Matching Engine.

Joins the day's pickup events with the subscribers of each location. The
join is driven by locations that actually have events, so its cost
follows (events x subscribers per location) instead of scanning every
user against every event.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import TYPE_CHECKING

from src.core.errors import InvalidIdentifier

if TYPE_CHECKING:
    from src.data.db import SubscriptionStore
    from src.data.models import PickupEvent

logger = logging.getLogger(__name__)


def compute_digests(
    store: SubscriptionStore,
    target_date: date,
    due_by: str | None = None,
    pending_only: bool = False,
) -> dict[int, list[PickupEvent]]:
    """Compute which users must be reminded about which events on a date.

    Args:
        store: Subscription store to read events and subscribers from.
        target_date: Pickup date the reminders are about.
        due_by: Optional "HH:MM"; only users whose reminder time is at or
            before it are considered.
        pending_only: Leave out users already reminded about `target_date`.

    Returns:
        Mapping of user id to that user's matching events, ordered by
        category name. Keys are in ascending user id order. Users without
        a match are absent.
    """
    events_by_location: dict[str, dict[str, PickupEvent]] = defaultdict(dict)
    for event in store.events_on(target_date):
        events_by_location[event.location_id][event.waste_type] = event

    matched: dict[int, list[PickupEvent]] = defaultdict(list)
    for location_id in sorted(events_by_location):
        by_category = events_by_location[location_id]
        try:
            subscribers = store.list_subscriptions_by_location(
                location_id,
                due_by=due_by,
                pending_for=target_date if pending_only else None,
            )
        except InvalidIdentifier:
            logger.warning("Skipping events with invalid location id %r", location_id)
            continue
        for sub in subscribers:
            event = by_category.get(sub.waste_type)
            if event is not None:
                matched[sub.user_id].append(event)

    digests = {
        user_id: sorted(matched[user_id], key=lambda ev: ev.waste_type)
        for user_id in sorted(matched)
    }
    logger.debug(
        "Matched %d users for %s (due by %s)",
        len(digests), target_date.isoformat(), due_by or "any time",
    )
    return digests
