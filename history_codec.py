"""
history_codec.py — Bounded movement-history encoding.

A history is a ':'-terminated list of ``location,minute`` records, e.g.
``"3,05:7,05:2,06:"``. Cohort matching compares the last six records by exact
string equality, so the format (trailing separator included) must not drift.
"""
from datetime import datetime, timezone
from typing import Optional, Union

from config import MAX_LIST_LENGTH, RECORD_SEPARATOR, FIELD_SEPARATOR


def _records(history: str) -> list:
    # Trailing empty fields are dropped, leading and inner ones kept
    parts = history.split(RECORD_SEPARATOR)
    while parts and parts[-1] == "":
        parts.pop()
    return parts


def _minute_of(event_time: Union[datetime, float, int]) -> str:
    if isinstance(event_time, datetime):
        return event_time.strftime("%M")
    return datetime.fromtimestamp(event_time, tz=timezone.utc).strftime("%M")


def last_n(history: Optional[str], n: int) -> str:
    """Return the last ``n`` records of ``history`` in their original order."""
    if not history or not isinstance(history, str):
        return ""

    records = _records(history)
    if len(records) <= n:
        return history

    keep = records[len(records) - max(0, n):]
    return "".join(record + RECORD_SEPARATOR for record in keep)


def append(history: Optional[str], location_id: int,
           event_time: Union[datetime, float, int],
           max_length: int = MAX_LIST_LENGTH) -> str:
    """Append a move to ``location_id`` at ``event_time``, dropping the oldest records past ``max_length``."""
    current = history if isinstance(history, str) else ""

    if len(_records(current)) + 1 > max_length:
        current = last_n(current, max_length - 1)

    return f"{current}{location_id}{FIELD_SEPARATOR}{_minute_of(event_time)}{RECORD_SEPARATOR}"


def record_count(history: Optional[str]) -> int:
    if not history or not isinstance(history, str):
        return 0
    return len(_records(history))
