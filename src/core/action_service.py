"""
Waste Reminder Bot — UI-Agnostic Action Service.

Applies the typed actions produced by the CallbackStateMachine to the
SubscriptionStore and returns structured response objects.

Each UI adapter (Telegram today) calls this service and renders the
response objects in its own way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from src.core.callback_actions import (
    AddCategory,
    CancelDelete,
    ConfirmDelete,
    CycleNotifyTime,
    DeleteLocation,
    PromptField,
    RemoveCategory,
    SetAlias,
    SetLocation,
    SetNotifyTime,
    ShowMenu,
)
from src.core.errors import NotFound
from src.core.waste import DEFAULT_SUBSCRIPTIONS

if TYPE_CHECKING:
    from src.core.callback_actions import Action
    from src.data.db import SubscriptionStore
    from src.data.models import User

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class ResponseKind(Enum):
    MENU = "menu"
    PROMPT = "prompt"
    CONFIRM_DELETE = "confirm_delete"
    DELETED = "deleted"
    NOT_REGISTERED = "not_registered"


@dataclass
class SettingsView:
    """Everything the settings menu shows for one user."""

    location_id: str
    notify_time: str
    subscriptions: list[str] = field(default_factory=list)
    alias: str | None = None

    @property
    def label(self) -> str:
        if self.alias:
            return f"{self.alias} ({self.location_id})"
        return self.location_id


@dataclass
class ServiceResponse:
    kind: ResponseKind
    message: str
    settings: SettingsView | None = None   # set when the menu should be shown


PROMPTS = {
    "location": (
        "Please enter your Location ID (Standort-ID). You can find it on the "
        "Dresden waste management website."
    ),
    "time": "At what time should I remind you? Send a time like 18:00.",
    "alias": "Please give this location a short alias (e.g. Home, Office).",
}

NOT_REGISTERED_MESSAGE = "You have no location set up yet. Use /start to add one."


def next_full_hour(notify_time: str) -> str:
    """Advance to the next full hour: "18:30" -> "19:00", "23:00" -> "00:00"."""
    try:
        hour = int(notify_time.split(":", 1)[0])
    except ValueError:
        return "18:00"
    return f"{(hour + 1) % 24:02d}:00"


# ---------------------------------------------------------------------------
# ActionService
# ---------------------------------------------------------------------------


class ActionService:
    """Stateless service that maps actions to store mutations.

    Returns structured response objects — never sends messages directly.
    StoreUnavailable propagates so the caller can answer with a
    transient-error message.
    """

    def __init__(self, store: SubscriptionStore) -> None:
        self._store = store

    def settings_view(self, user_id: int) -> SettingsView | None:
        user = self._store.get_user(user_id)
        if user is None:
            return None
        return self._view(user)

    def _view(self, user: User) -> SettingsView:
        return SettingsView(
            location_id=user.location_id,
            notify_time=user.notify_time,
            subscriptions=self._store.get_subscriptions(user.id),
            alias=user.alias,
        )

    def _menu(self, user_id: int, message: str | None = None) -> ServiceResponse:
        view = self.settings_view(user_id)
        if view is None:
            return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
        if message is None:
            message = f"Settings for {view.label}:"
        return ServiceResponse(ResponseKind.MENU, message, settings=view)

    def apply(self, user_id: int, action: Action) -> ServiceResponse:
        """Apply one action for a user and describe the outcome."""
        if isinstance(action, (ShowMenu, CancelDelete)):
            return self._menu(user_id)

        if isinstance(action, PromptField):
            return ServiceResponse(ResponseKind.PROMPT, PROMPTS[action.field])

        if isinstance(action, AddCategory):
            try:
                added = self._store.add_subscription(user_id, action.category, require_user=True)
            except NotFound:
                return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
            if added:
                logger.info("User %d subscribed to %s", user_id, action.category)
            return self._menu(user_id, f"Subscribed to {action.category}.")

        if isinstance(action, RemoveCategory):
            if self._store.get_user(user_id) is None:
                return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
            if self._store.remove_subscription(user_id, action.category):
                logger.info("User %d unsubscribed from %s", user_id, action.category)
            return self._menu(user_id, f"Unsubscribed from {action.category}.")

        if isinstance(action, CycleNotifyTime):
            user = self._store.get_user(user_id)
            if user is None:
                return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
            return self._set_time(user_id, next_full_hour(user.notify_time))

        if isinstance(action, SetNotifyTime):
            return self._set_time(user_id, action.notify_time)

        if isinstance(action, ConfirmDelete):
            if self._store.get_user(user_id) is None:
                return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
            return ServiceResponse(
                ResponseKind.CONFIRM_DELETE,
                "Delete your location and all subscriptions?",
            )

        if isinstance(action, DeleteLocation):
            return self.unsubscribe(user_id)

        if isinstance(action, SetLocation):
            return self._set_location(user_id, action)

        if isinstance(action, SetAlias):
            try:
                user = self._store.update_alias(user_id, action.alias)
            except NotFound:
                return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
            view = self._view(user)
            return ServiceResponse(ResponseKind.MENU, f"Location renamed to {view.label}.", settings=view)

        raise TypeError(f"Unsupported action: {action!r}")

    def unsubscribe(self, user_id: int) -> ServiceResponse:
        """Delete the user and everything attached to them. Idempotent."""
        self._store.delete_user(user_id)
        return ServiceResponse(
            ResponseKind.DELETED,
            "Your location was deleted and you won't get any more reminders. "
            "Use /start to set up a new one.",
        )

    def _set_time(self, user_id: int, notify_time: str) -> ServiceResponse:
        try:
            user = self._store.update_notify_time(user_id, notify_time)
        except NotFound:
            return ServiceResponse(ResponseKind.NOT_REGISTERED, NOT_REGISTERED_MESSAGE)
        return ServiceResponse(
            ResponseKind.MENU,
            f"Reminders will arrive at {user.notify_time}.",
            settings=self._view(user),
        )

    def _set_location(self, user_id: int, action: SetLocation) -> ServiceResponse:
        is_new = self._store.get_user(user_id) is None
        user = self._store.upsert_user(
            user_id,
            action.location_id,
            default_categories=DEFAULT_SUBSCRIPTIONS if is_new else (),
            alias=action.alias,
        )
        view = self._view(user)
        if is_new:
            message = (
                f"Location {view.label} added with default subscriptions. "
                f"I'll remind you at {user.notify_time}."
            )
        else:
            message = f"Location changed to {view.label}."
        return ServiceResponse(ResponseKind.MENU, message, settings=view)
