"""
Waste Reminder Bot — Location identifier, alias and time validation.

Location ids come from users typing them into the chat, then end up as a
query parameter on the city's calendar feed and as a lookup key in
SQLite. Only a `LocationId` produced here may be used for either.
"""

from __future__ import annotations

import re
import string
from dataclasses import dataclass

from src.core.errors import InvalidIdentifier, ValidationError

ALLOWED_CHARACTERS = frozenset(string.ascii_letters + string.digits + "-_")


@dataclass(frozen=True, order=True)
class LocationId:
    """A location identifier that passed `validate_location_id`."""

    value: str

    def __post_init__(self) -> None:
        # Direct construction must still respect the allowlist and length bound.
        from src.config import settings

        if (
            not isinstance(self.value, str)
            or not self.value
            or len(self.value) > settings.LOCATION_ID_MAX_LENGTH
            or not _only_allowed(self.value)
        ):
            raise InvalidIdentifier(f"Not a valid location ID: {self.value!r}")

    def __str__(self) -> str:
        return self.value


def _only_allowed(text: str) -> bool:
    return all(ch in ALLOWED_CHARACTERS for ch in text)


def normalize_location_id(raw: str) -> str:
    """Normalization applied before every check and comparison."""
    return raw.strip()


def validate_location_id(raw: str, max_length: int | None = None) -> LocationId:
    """Validate a raw location id against the allowlist.

    Raises:
        InvalidIdentifier: if the id is empty, too long, or contains any
            character outside ASCII letters, digits, '-' and '_'.
    """
    if not isinstance(raw, str):
        raise InvalidIdentifier("Location ID must be text.")

    if max_length is None:
        from src.config import settings
        max_length = settings.LOCATION_ID_MAX_LENGTH

    candidate = normalize_location_id(raw)
    if not candidate:
        raise InvalidIdentifier("Location ID must not be empty.")
    if len(candidate) > max_length:
        raise InvalidIdentifier(f"Location ID must be at most {max_length} characters.")
    if not _only_allowed(candidate):
        raise InvalidIdentifier(
            "Location ID may only contain letters, digits, '-' and '_'."
        )
    return LocationId(candidate)


def ensure_location_id(value: LocationId | str) -> LocationId:
    """Return `value` as a LocationId, validating it if it is a raw string."""
    if isinstance(value, LocationId):
        return value
    return validate_location_id(value)


_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?$")


def validate_notify_time(raw: str) -> str:
    """Parse a time of day like "7", "07:00" or "18:30" into "HH:MM".

    Raises:
        ValidationError: if the text is not a valid 24h time.
    """
    match = _TIME_RE.match(raw.strip()) if isinstance(raw, str) else None
    if match is None:
        raise ValidationError("Time must look like HH:MM, e.g. 18:00.")
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    if hour > 23 or minute > 59:
        raise ValidationError("Time must be between 00:00 and 23:59.")
    return f"{hour:02d}:{minute:02d}"


ALIAS_MAX_LENGTH = 30


def validate_alias(raw: str) -> str:
    """Trim a location alias like "Home" and check it is short and printable.

    Raises:
        ValidationError: if the alias is empty, too long or contains
            control characters.
    """
    alias = raw.strip() if isinstance(raw, str) else ""
    if not alias:
        raise ValidationError("Alias must not be empty.")
    if len(alias) > ALIAS_MAX_LENGTH:
        raise ValidationError(f"Alias must be at most {ALIAS_MAX_LENGTH} characters.")
    if not alias.isprintable():
        raise ValidationError("Alias may not contain control characters.")
    return alias
