"""
MarketRelay Parsing Helpers
Text helpers shared by extractors and the listings pipeline.
"""

import re
from typing import Optional

YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")
LEADING_YEAR_PATTERN = re.compile(r"^\s*\b(?:19|20)\d{2}\b\s*")
PRICE_PATTERN = re.compile(r"\d[\d,\s.]*")

MINUTES_PER_UNIT = {
    "minute": 1,
    "hour": 60,
    "day": 1440,
    "week": 10080,
}

# (regex on the lowercased label, unit). Order matters: "мин" before "м" style prefixes
AGE_UNITS = [
    (re.compile(r"\b(min|mins|minute|minutes|m)\b|мин"), "minute"),
    (re.compile(r"\b(h|hr|hrs|hour|hours)\b|ч\.|час|\bч\b"), "hour"),
    (re.compile(r"\b(d|day|days|yesterday)\b|дн|день|дня|вчера"), "day"),
    (re.compile(r"\b(w|wk|wks|week|weeks)\b|нед"), "week"),
]

# "a day ago", "an hour ago", "неделю назад" carry no number
IMPLICIT_ONE = re.compile(r"^(a|an|one)\s|^(день|неделю|час|минуту|вчера|yesterday)")


def extract_year(title: str) -> Optional[int]:
    """Return the first 19xx/20xx year in a title, or None."""
    match = YEAR_PATTERN.search(title or "")
    if match:
        return int(match.group(0))
    return None


def model_name(title: str) -> str:
    """Title with a leading model year stripped ("2015 Honda Civic" -> "Honda Civic")."""
    title = title or ""
    match = LEADING_YEAR_PATTERN.match(title)
    if not match:
        return title
    stripped = title[match.end():].strip()
    return stripped or title


def parse_age_to_minutes(text: str) -> Optional[int]:
    """
    Convert a relative listing age into minutes.

    Handles English and Russian labels such as "5 minutes ago", "2 h",
    "a day ago", "1 week ago" and "17 ч. назад".

    Returns:
        Minutes, or None if the text can't be read
    """
    if not text:
        return None
    raw = re.sub(r"\s+", " ", text.lower().strip())
    raw = re.sub(r"^(listed|опубликовано)\s+", "", raw)

    if raw in ("just now", "только что"):
        return 0

    unit = None
    for pattern, name in AGE_UNITS:
        if pattern.search(raw):
            unit = name
            break
    if unit is None:
        return None

    number = re.search(r"\d+", raw)
    if number:
        value = int(number.group(0))
    elif IMPLICIT_ONE.search(raw):
        value = 1
    else:
        return None

    if value <= 0:
        return None
    return value * MINUTES_PER_UNIT[unit]


def parse_price(text: str) -> Optional[int]:
    """Parse "$1,200" / "1 200 ₽" style prices into whole units. "Free" is 0."""
    if not text:
        return None
    lowered = text.lower()
    if "free" in lowered or "бесплатно" in lowered:
        return 0
    match = PRICE_PATTERN.search(text)
    if not match:
        return None
    # Drop cents, then thousands separators
    whole = re.split(r"[.,]\d{2}$", match.group(0).strip())[0]
    digits = re.sub(r"\D", "", whole)
    return int(digits) if digits else None
