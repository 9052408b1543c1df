from __future__ import annotations

import logging
from datetime import datetime, timezone

from dateutil import parser as date_parser
from dateutil.rrule import rrulestr

logger = logging.getLogger(__name__)


def as_utc(value: datetime | str) -> datetime:
    """Parse ISO text if needed and normalise to an aware UTC datetime."""
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def advance(
    starts_at: datetime | str,
    rrule: str | None,
    anchor: datetime | str | None = None,
) -> datetime | None:
    """Return the next nominal occurrence strictly after ``starts_at``.

    ``anchor`` is the rule's DTSTART (the plan's first occurrence) so that
    COUNT and UNTIL hold across runs. Absent or unparsable rules mean a
    one-shot plan and yield ``None``. Whether the result is already in the
    past is not considered here.
    """
    if not rrule or not rrule.strip():
        return None

    current = as_utc(starts_at)
    dtstart = as_utc(anchor) if anchor is not None else current
    try:
        rule = rrulestr(rrule.strip(), dtstart=dtstart, forceset=True)
        return rule.after(current, inc=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning("Ignoring unparsable recurrence rule %r: %s", rrule, exc)
        return None
