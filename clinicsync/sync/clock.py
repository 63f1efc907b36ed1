"""
Wall-clock helpers for the sync stack.

Records carry ``last_modified`` as epoch milliseconds; snapshots, keys and
backup names carry timezone-aware UTC datetimes. Values arriving from other
devices may use either form, so parsing here is lenient.
"""

import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]

_FILENAME_TIME = re.compile(
    r"^(?P<h>\d{2})-(?P<m>\d{2})-(?P<s>\d{2})(?P<frac>\.\d+)?"
    r"(?:(?P<sign>[+-])(?P<oh>\d{2})-(?P<om>\d{2})|Z)?$"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return to_epoch_ms(utc_now())


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def parse_iso(value: str) -> Optional[datetime]:
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_epoch_ms(value: Any) -> Optional[int]:
    """Epoch millis from an int, float, numeric string, ISO-8601 string or datetime.

    Returns None when the value cannot be interpreted as a point in time.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, datetime):
        return int(ensure_utc(value).timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"-?\d+", text):
            return int(text)
        parsed = parse_iso(text)
        if parsed is not None:
            return int(parsed.timestamp() * 1000)
    return None


# ── Filesystem-safe timestamps ──────────────────────────────────────────

def filename_timestamp(dt: datetime) -> str:
    """ISO-8601 with colons replaced so the value is safe in object names."""
    return ensure_utc(dt).isoformat(timespec="microseconds").replace(":", "-")


def parse_filename_timestamp(value: str) -> Optional[datetime]:
    date_part, sep, time_part = value.partition("T")
    if not sep:
        return None
    m = _FILENAME_TIME.match(time_part)
    if not m:
        return None
    text = f"{date_part}T{m['h']}:{m['m']}:{m['s']}{m['frac'] or ''}"
    if m["sign"]:
        text += f"{m['sign']}{m['oh']}:{m['om']}"
    return parse_iso(text)
