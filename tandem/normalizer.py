"""Pure helpers that turn remote provider values into local display values."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3498DB"
MAX_DESCRIPTION_LENGTH = 2000
TRUNCATION_MARKER = "..."

CATEGORY_COLOR_MAP = {
    "preset0": "#E74C3C",
    "preset1": "#E67E22",
    "preset2": "#F39C12",
    "preset3": "#F1C40F",
    "preset4": "#27AE60",
    "preset5": "#16A085",
    "preset6": "#3498DB",
    "preset7": "#2980B9",
    "preset8": "#9B59B6",
    "preset9": "#E91E63",
    "preset10": "#607D8B",
    "preset11": "#795548",
    "preset12": "#9E9E9E",
    "preset13": "#455A64",
    "preset14": "#000000",
    "preset15": "#C0392B",
    "preset16": "#D35400",
    "preset17": "#8E44AD",
    "preset18": "#B8860B",
    "preset19": "#1E8449",
    "preset20": "#117A65",
    "preset21": "#2E86AB",
    "preset22": "#1A5276",
    "preset23": "#6C3483",
    "preset24": "#AD1457",
}

_LINE_BREAK_PATTERN = re.compile(r"<br\s*/?>|</p\s*>|</div\s*>|</li\s*>", re.IGNORECASE)
_TAG_PATTERN = re.compile(r"<[A-Za-z/!?][^<>]*>")
_EXTRA_NEWLINES_PATTERN = re.compile(r"\n{3,}")
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")
_ENTITIES = (
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&amp;", "&"),
)
_UTC_ALIASES = {"", "utc", "z", "gmt", "etc/utc", "coordinated universal time", "tzone://microsoft/utc"}


def map_color(token: str | None) -> str:
    if token is None:
        return DEFAULT_COLOR
    return CATEGORY_COLOR_MAP.get(str(token).strip().lower(), DEFAULT_COLOR)


def strip_markup(rich_text: str | None) -> str:
    """Convert an HTML body into capped plain text.

    Line-level tags become newlines, every other tag is dropped and a fixed set of
    entities is decoded. Unbalanced or broken markup is passed through as text.
    """
    if not rich_text:
        return ""
    text = str(rich_text).replace("\r\n", "\n")
    text = _LINE_BREAK_PATTERN.sub("\n", text)
    text = _TAG_PATTERN.sub("", text)
    for entity, replacement in _ENTITIES:
        text = text.replace(entity, replacement)
    text = _EXTRA_NEWLINES_PATTERN.sub("\n\n", text)
    text = text.strip()
    if len(text) > MAX_DESCRIPTION_LENGTH:
        text = text[:MAX_DESCRIPTION_LENGTH] + TRUNCATION_MARKER
    return text


def _resolve_zone(timezone_name: str | None) -> timezone | ZoneInfo:
    name = str(timezone_name or "").strip()
    if name.lower() in _UTC_ALIASES:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, treating timestamp as UTC", name)
        return timezone.utc


def to_instant(timestamp: str | None, timezone_name: str | None = "UTC") -> datetime | None:
    """Resolve a remote wall-clock timestamp in its declared zone to an aware UTC instant."""
    if timestamp is None or not str(timestamp).strip():
        return None
    text = _FRACTION_PATTERN.sub(r"\1", str(timestamp).strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_resolve_zone(timezone_name))
    return parsed.astimezone(timezone.utc)
