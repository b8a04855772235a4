"""
Waste Reminder Bot — Callback Action State Machine.

Turns inline-button payloads ("addcat:Bio", "delloc:yes", ...) and the
free-text replies that complete a multi-step edit into typed actions.
Nothing here touches storage: the ActionService applies the actions.

Payload grammar: ``action[:arg]``. The number of parts is checked against
the action's arity before any argument is read, so a short payload is a
MalformedPayload and never an IndexError.

Conversation states, one per chat:

    Idle --edit:time--> AwaitingFieldValue(time) --valid text--> Idle
    Idle --edit:alias--> AwaitingFieldValue(alias) --valid text--> Idle
    Idle --edit:location--> AwaitingFieldValue(location)
         --valid id--> AwaitingFieldValue(alias, id) --valid alias--> Idle

Every other button leaves the chat in Idle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from src.core.errors import MalformedPayload, UnknownAction
from src.core.validator import (
    LocationId,
    validate_alias,
    validate_location_id,
    validate_notify_time,
)
from src.core.waste import is_supported

logger = logging.getLogger(__name__)

SEPARATOR = ":"
MAX_PAYLOAD_LENGTH = 64  # Telegram's callback_data limit in bytes

EDITABLE_FIELDS = ("location", "time", "alias")
DELETE_CONFIRM = "yes"
DELETE_CANCEL = "no"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ShowMenu:
    pass


@dataclass(frozen=True)
class PromptField:
    field: str            # "location" | "time" | "alias"


@dataclass(frozen=True)
class AddCategory:
    category: str


@dataclass(frozen=True)
class RemoveCategory:
    category: str


@dataclass(frozen=True)
class CycleNotifyTime:
    pass


@dataclass(frozen=True)
class ConfirmDelete:
    pass


@dataclass(frozen=True)
class DeleteLocation:
    pass


@dataclass(frozen=True)
class CancelDelete:
    pass


@dataclass(frozen=True)
class SetLocation:
    location_id: LocationId
    alias: str | None = None


@dataclass(frozen=True)
class SetAlias:
    alias: str


@dataclass(frozen=True)
class SetNotifyTime:
    notify_time: str      # "HH:MM"


Action = Union[
    ShowMenu, PromptField, AddCategory, RemoveCategory, CycleNotifyTime,
    ConfirmDelete, DeleteLocation, CancelDelete, SetLocation, SetAlias, SetNotifyTime,
]


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationState:
    """Idle when `awaiting` is None, else AwaitingFieldValue(awaiting).

    While the alias for a new location is awaited, `pending_location`
    holds the already validated id.
    """

    awaiting: str | None = None
    pending_location: LocationId | None = None

    @property
    def is_idle(self) -> bool:
        return self.awaiting is None


IDLE = ConversationState()


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

# action -> (min args, max args)
ARITY: dict[str, tuple[int, int]] = {
    "menu": (0, 0),
    "edit": (1, 1),
    "addcat": (1, 1),
    "delcat": (1, 1),
    "time": (0, 0),
    "delloc": (0, 1),
}


def build_payload(action: str, *args: str) -> str:
    """Encode a button payload; the inverse of `parse_payload`."""
    return SEPARATOR.join((action, *args))


def parse_payload(raw: str) -> Action:
    """Parse a callback payload into an Action.

    Raises:
        UnknownAction: the action token is not known.
        MalformedPayload: empty/oversized payload, wrong number of
            arguments, or an argument the action does not accept.
    """
    if not isinstance(raw, str) or not raw:
        raise MalformedPayload("empty payload")
    if len(raw.encode("utf-8")) > MAX_PAYLOAD_LENGTH:
        raise MalformedPayload("payload too long")

    action, *args = raw.split(SEPARATOR)
    if action not in ARITY:
        raise UnknownAction(f"unknown action {action!r}")

    low, high = ARITY[action]
    if not low <= len(args) <= high:
        raise MalformedPayload(
            f"{action!r} takes {low}-{high} arguments, got {len(args)}"
        )

    # From here on len(args) is within the action's arity.
    if action == "menu":
        return ShowMenu()
    if action == "time":
        return CycleNotifyTime()
    if action == "edit":
        field = args[0]
        if field not in EDITABLE_FIELDS:
            raise MalformedPayload(f"cannot edit {field!r}")
        return PromptField(field)
    if action == "addcat":
        return AddCategory(_known_category(args[0]))
    if action == "delcat":
        return RemoveCategory(_known_category(args[0]))

    # delloc
    if not args:
        return ConfirmDelete()
    if args[0] == DELETE_CONFIRM:
        return DeleteLocation()
    if args[0] == DELETE_CANCEL:
        return CancelDelete()
    raise MalformedPayload(f"bad confirmation token {args[0]!r} for 'delloc'")


def _known_category(category: str) -> str:
    if not is_supported(category):
        raise MalformedPayload(f"unknown category {category!r}")
    return category


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class CallbackStateMachine:
    """Validates user input against per-chat conversation state."""

    def __init__(self) -> None:
        self._states: dict[int, ConversationState] = {}

    def state_of(self, user_id: int) -> ConversationState:
        return self._states.get(user_id, IDLE)

    def handle(self, raw_payload: str, user_id: int) -> Action:
        """Interpret a button press.

        `edit:<field>` moves the chat to AwaitingFieldValue(field); every
        other action returns it to Idle. A rejected payload leaves the
        state untouched.

        Raises:
            MalformedPayload, UnknownAction: see `parse_payload`.
        """
        try:
            action = parse_payload(raw_payload)
        except MalformedPayload as exc:
            logger.warning("Rejected callback from %d: %s", user_id, exc)
            raise

        if isinstance(action, PromptField):
            self._states[user_id] = ConversationState(awaiting=action.field)
        else:
            self._states.pop(user_id, None)
        return action

    def begin_edit(self, user_id: int, field: str) -> PromptField:
        """Start a field edit without a button, e.g. from /start."""
        if field not in EDITABLE_FIELDS:
            raise MalformedPayload(f"cannot edit {field!r}")
        self._states[user_id] = ConversationState(awaiting=field)
        return PromptField(field)

    def handle_text(self, text: str, user_id: int) -> Action | None:
        """Complete a pending edit with a free-text reply.

        Returns None when the chat is Idle (the text is not for us). A
        valid location id does not finish the edit: it returns
        PromptField("alias") and waits for the alias, which yields the
        SetLocation.

        Raises:
            ValidationError: the text is not a valid value; the chat stays
                in AwaitingFieldValue so the user can try again.
        """
        state = self.state_of(user_id)
        if state.is_idle:
            return None

        if state.awaiting == "location":
            location = validate_location_id(text)
            self._states[user_id] = ConversationState(awaiting="alias", pending_location=location)
            return PromptField("alias")

        if state.awaiting == "alias":
            alias = validate_alias(text)
            if state.pending_location is not None:
                action: Action = SetLocation(state.pending_location, alias)
            else:
                action = SetAlias(alias)
        else:
            action = SetNotifyTime(validate_notify_time(text))

        self._states.pop(user_id, None)
        return action

    def reset(self, user_id: int) -> None:
        self._states.pop(user_id, None)
