"""Recurring-series expansion.

A master session carries a :class:`RecurrenceDescriptor`; concrete instances are
derived from it on every read and never stored. Everything here is a pure
function of its arguments.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule

from studysync.models import (
    FREQUENCIES,
    WEEKDAY_CODES,
    RecurrenceRule,
    Session,
    SessionValidationError,
    instance_id,
    parse_date,
    parse_int,
)

logger = logging.getLogger(__name__)

_FREQ_MAP = {"DAILY": DAILY, "WEEKLY": WEEKLY, "MONTHLY": MONTHLY}
_WEEKDAY_MAP = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}


def parse_rrule(text: str) -> RecurrenceRule:
    """Parse an RFC 5545 RRULE value such as ``FREQ=WEEKLY;BYDAY=MO,WE``."""
    raw = str(text or "").strip()
    if raw.upper().startswith("RRULE:"):
        raw = raw[6:]
    parts: dict[str, str] = {}
    for chunk in raw.split(";"):
        if not chunk.strip():
            continue
        key, sep, value = chunk.partition("=")
        if not sep:
            raise SessionValidationError(f"malformed RRULE part {chunk!r}")
        parts[key.strip().upper()] = value.strip()
    frequency = parts.get("FREQ", "").upper()
    if frequency not in FREQUENCIES:
        raise SessionValidationError(f"unsupported RRULE frequency {frequency!r}")
    weekdays = tuple(x.strip().upper()[-2:] for x in parts.get("BYDAY", "").split(",") if x.strip())
    if any(x not in WEEKDAY_CODES for x in weekdays):
        raise SessionValidationError(f"unsupported BYDAY in {text!r}")
    until_raw = parts.get("UNTIL")
    until = None
    if until_raw:
        digits = until_raw[:8]
        until = parse_date(f"{digits[:4]}-{digits[4:6]}-{digits[6:8]}", "RRULE UNTIL")
    count = parts.get("COUNT")
    return RecurrenceRule(
        frequency=frequency,
        interval=max(1, parse_int(parts.get("INTERVAL"), "RRULE INTERVAL", 1)),
        by_weekday=weekdays,
        count=parse_int(count, "RRULE COUNT"),
        until=until,
    )


def format_rrule(rule: RecurrenceRule) -> str:
    parts = [f"FREQ={rule.frequency}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.by_weekday:
        parts.append(f"BYDAY={','.join(rule.by_weekday)}")
    if rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    if rule.until is not None:
        parts.append(f"UNTIL={rule.until.strftime('%Y%m%d')}")
    return ";".join(parts)


def _build_rrule(rule: RecurrenceRule, series_start: date, start_time: time) -> rrule:
    kwargs = {
        "dtstart": datetime.combine(series_start, start_time),
        "interval": rule.interval,
    }
    if rule.by_weekday:
        kwargs["byweekday"] = [_WEEKDAY_MAP[code] for code in rule.by_weekday]
    # RFC 5545 forbids COUNT together with UNTIL; COUNT wins.
    if rule.count is not None:
        kwargs["count"] = rule.count
    elif rule.until is not None:
        kwargs["until"] = datetime.combine(rule.until, time.max)
    return rrule(_FREQ_MAP[rule.frequency], **kwargs)


def occurrence_dates(master: Session, window_start: date, window_end: date) -> list[date]:
    """Rule dates whose span touches ``[window_start, window_end]``, exclusions not applied."""
    if master.recurrence is None:
        return []
    span_days = ((master.end_date or master.start_date) - master.start_date).days
    descriptor = master.recurrence
    generator = _build_rrule(descriptor.rule, descriptor.series_start, master.start_time)
    after = datetime.combine(window_start - timedelta(days=span_days), time.min)
    before = datetime.combine(window_end, time.max)
    return [item.date() for item in generator.between(after, before, inc=True)]


def _make_instance(master: Session, occurrence: date, span_days: int) -> Session:
    return Session(
        id=instance_id(master.id, occurrence),
        course_id=master.course_id,
        start_date=occurrence,
        start_time=master.start_time,
        end_date=occurrence + timedelta(days=span_days) if span_days else None,
        end_time=master.end_time,
        duration_minutes=master.duration_minutes,
        attended=False,
        completion_percentage=0,
        notes=master.notes,
        last_modified=master.last_modified,
        master_id=master.id,
        original_title=master.original_title,
    )


def expand_master(
    master: Session,
    window_start: date,
    window_end: date,
    include_shifted: bool = False,
) -> list[Session]:
    """Concrete instances of ``master`` intersecting the closed window.

    Excluded dates and cancelled overrides are dropped. Time-shifted dates are
    dropped from the rule output; with ``include_shifted`` the moved occurrence
    is emitted at its overridden times instead. Completion overrides set the
    instance's attendance without touching the master.
    """
    if master.recurrence is None:
        raise ValueError(f"session {master.id} is not a recurring master")
    if window_end < window_start:
        return []
    descriptor = master.recurrence
    span_days = ((master.end_date or master.start_date) - master.start_date).days
    excluded = set(descriptor.excluded_dates)
    instances: list[Session] = []
    for occurrence in occurrence_dates(master, window_start, window_end):
        if occurrence in excluded:
            continue
        instance = _make_instance(master, occurrence, span_days)
        override = descriptor.overrides.get(occurrence)
        if override is not None:
            if override.cancelled:
                continue
            if override.is_time_shift:
                if not include_shifted:
                    continue
                instance.start_time = override.start_time or instance.start_time
                instance.end_time = override.end_time or instance.end_time
                if instance.span_minutes() <= 0:
                    logger.warning("Skipping override %s of %s: non-positive duration", occurrence, master.id)
                    continue
                instance.duration_minutes = instance.span_minutes()
                if not instance.overlaps(
                    datetime.combine(window_start, time.min), datetime.combine(window_end, time.max)
                ):
                    continue
            if override.attended is not None:
                instance.attended = override.attended
            if override.completion_percentage is not None:
                instance.completion_percentage = override.completion_percentage
            if override.notes is not None:
                instance.notes = override.notes
        instances.append(instance)
    instances.sort(key=lambda item: (item.start_at, item.id))
    return instances


def expand_sessions(
    sessions: Iterable[Session],
    window_start: date,
    window_end: date,
    include_shifted: bool = True,
) -> list[Session]:
    """Concrete view of a session collection over a date window."""
    lower = datetime.combine(window_start, time.min)
    upper = datetime.combine(window_end, time.max)
    output: list[Session] = []
    for session in sessions:
        if session.is_master:
            output.extend(expand_master(session, window_start, window_end, include_shifted=include_shifted))
        elif session.overlaps(lower, upper):
            output.append(session.clone())
    output.sort(key=lambda item: (item.start_at, item.id))
    return output
