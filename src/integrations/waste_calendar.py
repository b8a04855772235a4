"""Dresden waste calendar integration — pickup event ingestion.

Downloads the city's iCal export for one collection location and turns
each VEVENT into one PickupEvent per waste category listed in its
SUMMARY ("Bio, Rest" -> two events).

The location is always sent as a structured query parameter, and only a
validated LocationId is accepted.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

import httpx
from icalendar import Calendar as iCalendar

from src.core.validator import LocationId
from src.core.waste import split_summary
from src.data.models import PickupEvent

logger = logging.getLogger(__name__)

_DATE_PARAM_FORMAT = "%d.%m.%Y"


class PickupCalendarError(Exception):
    """Raised when the pickup calendar can't be fetched or parsed."""


def build_query_params(location: LocationId, start: date, end: date) -> dict[str, str]:
    """Query parameters for the iCal export of one location."""
    if not isinstance(location, LocationId):
        raise TypeError("location must be a validated LocationId")
    return {
        "STANDORT": location.value,
        "DATUM_VON": start.strftime(_DATE_PARAM_FORMAT),
        "DATUM_BIS": end.strftime(_DATE_PARAM_FORMAT),
    }


async def fetch_pickup_events(
    location: LocationId,
    start: date | None = None,
    end: date | None = None,
) -> list[PickupEvent]:
    """Fetch and parse the pickup calendar for one location.

    Args:
        location: Validated location id.
        start: First day to fetch (default: today).
        end: Last day to fetch (default: start + PICKUP_FETCH_DAYS).

    Raises:
        PickupCalendarError: on any HTTP or parse failure.
    """
    from src.config import settings

    start = start or date.today()
    end = end or start + timedelta(days=settings.PICKUP_FETCH_DAYS)
    params = build_query_params(location, start, end)

    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            resp = await client.get(settings.PICKUP_CALENDAR_URL, params=params)
            resp.raise_for_status()
            text = resp.text
    except httpx.HTTPError as exc:
        raise PickupCalendarError(f"Failed to fetch calendar for {location}: {exc}") from exc

    return parse_pickup_calendar(text, location)


def parse_pickup_calendar(text: str, location: LocationId) -> list[PickupEvent]:
    """Parse an iCal document into pickup events for `location`."""
    if "BEGIN:VCALENDAR" not in text:
        raise PickupCalendarError(f"Invalid iCal response for location {location}")

    try:
        cal = iCalendar.from_ical(text)
    except ValueError as exc:
        raise PickupCalendarError(f"Failed to parse iCal for {location}: {exc}") from exc

    events: set[PickupEvent] = set()
    for component in cal.walk("VEVENT"):
        dtstart = component.get("dtstart")
        summary = component.get("summary")
        if dtstart is None:
            raise PickupCalendarError("Missing DTSTART in event")
        if summary is None:
            raise PickupCalendarError("Missing SUMMARY in event")

        day = dtstart.dt
        if isinstance(day, datetime):
            day = day.date()

        for category in split_summary(str(summary)):
            events.add(PickupEvent(date=day, waste_type=category, location_id=location.value))

    logger.debug("Parsed %d pickup events for %s", len(events), location)
    return sorted(events)
