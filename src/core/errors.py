"""Error taxonomy shared by the store, the matching pipeline and the bot.

Every error a handler may need to turn into a user-facing reply derives
from WasteBotError, so the Telegram layer can catch the family at once.
"""

from __future__ import annotations


class WasteBotError(Exception):
    """Base class for all domain errors."""


class ValidationError(WasteBotError):
    """User-correctable bad input (identifier, time of day, ...)."""


class InvalidIdentifier(ValidationError):
    """A location identifier failed the allowlist check."""


class MalformedPayload(WasteBotError):
    """A callback payload could not be parsed for its action."""


class UnknownAction(MalformedPayload):
    """A callback payload names an action the bot does not know."""


class NotFound(WasteBotError):
    """A referenced record does not exist."""


class DispatchFailure(WasteBotError):
    """Sending a reminder to one user failed."""

    def __init__(self, user_id: int, reason: str) -> None:
        super().__init__(f"dispatch to {user_id} failed: {reason}")
        self.user_id = user_id
        self.reason = reason


class StoreUnavailable(WasteBotError):
    """The database could not be reached or timed out."""
