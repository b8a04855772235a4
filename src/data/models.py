"""
Waste Reminder Bot — Data Models.

Users, their category subscriptions, and the pickup events published by
the city. All three persist in SQLite across restarts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date


@dataclass
class User:
    """A registered chat with one collection location."""

    id: int                              # Telegram chat id
    location_id: str
    notify_time: str = "18:00"           # HH:MM, 24h
    created_at: str = ""
    last_notified_on: str | None = None  # ISO date of the last reminded pickup
    alias: str | None = None             # e.g. "Home", shown instead of the id


@dataclass(frozen=True)
class Subscription:
    """A user wants reminders for this category."""

    user_id: int
    waste_type: str


@dataclass(frozen=True, order=True)
class PickupEvent:
    """A single collection of one category at one location on one day.

    Field order makes the natural sort (date, waste_type, location_id).
    """

    date: date
    waste_type: str
    location_id: str


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one reminder within a tick."""

    user_id: int
    target_date: date
    status: str        # "sent" | "skipped" | "failed"
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status != "failed"
