"""Waste categories published by the city calendar.

The calendar uses several spellings for the same bin ("Biotonne", "Bio");
`normalize_category` folds them into the canonical names the bot stores.
"""

from __future__ import annotations

BIO = "Bio"
REST = "Rest"
PAPER = "Papier"
YELLOW = "Gelb"
CHRISTMAS_TREE = "Weihnachtsbaum"

SUPPORTED_CATEGORIES: tuple[str, ...] = (BIO, REST, PAPER, YELLOW, CHRISTMAS_TREE)

# Subscribed automatically when a user registers a location.
DEFAULT_SUBSCRIPTIONS: tuple[str, ...] = (BIO, REST, PAPER, YELLOW)

_ALIASES: dict[str, str] = {
    "bio": BIO,
    "biotonne": BIO,
    "rest": REST,
    "restmüll": REST,
    "restabfall": REST,
    "papier": PAPER,
    "pappe": PAPER,
    "blaue tonne": PAPER,
    "gelb": YELLOW,
    "gelbe tonne": YELLOW,
    "gelber sack": YELLOW,
    "weihnachtsbaum": CHRISTMAS_TREE,
    "weihnachtsbäume": CHRISTMAS_TREE,
}


def normalize_category(label: str) -> str:
    """Map a calendar label to its canonical category.

    Unknown labels are returned trimmed but otherwise unchanged.
    """
    cleaned = label.strip()
    return _ALIASES.get(cleaned.lower(), cleaned)


def split_summary(summary: str) -> list[str]:
    """Split a calendar SUMMARY like "Bio, Rest" into canonical categories."""
    return [
        normalize_category(part)
        for part in summary.split(",")
        if part.strip()
    ]


def is_supported(category: str) -> bool:
    return category in SUPPORTED_CATEGORIES
