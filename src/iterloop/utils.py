from __future__ import annotations

from datetime import datetime, timezone


def _utc_datetime() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_utc(text: str) -> datetime | None:
    """Parse a timestamp written by ``_format_utc``; ``None`` if unreadable."""
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def _clip(text: str, limit: int) -> str:
    """Shorten *text* for display, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _seconds(milliseconds: int | float) -> str:
    return f"{milliseconds / 1000:.1f}s"
