from __future__ import annotations

import hashlib
import re
from datetime import datetime, tzinfo
from typing import Any

import yaml

from studysync.models import (
    RecurrenceDescriptor,
    RecurrenceOverride,
    RemoteEvent,
    Session,
    SessionValidationError,
    parse_int,
    serialize_datetime,
    validate_session,
)
from studysync.recurrence import format_rrule, parse_rrule

APP_SOURCE = "studysync"
METADATA_VERSION = 1
METADATA_START = "[Study Session]"
METADATA_END = "[/Study Session]"
METADATA_PATTERN = re.compile(r"\[Study Session\]\s*\n(.*?)\n\[/Study Session\]", re.DOTALL)
UNASSIGNED_TITLE = "Study session"


def parse_metadata_block(description: str) -> dict[str, Any] | None:
    if not description:
        return None
    match = METADATA_PATTERN.search(description)
    if not match:
        return None
    try:
        payload = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def strip_metadata_block(description: str) -> str:
    if not description:
        return ""
    return METADATA_PATTERN.sub("", description).strip()


def upsert_metadata_block(description: str, payload: dict[str, Any]) -> str:
    yaml_content = yaml.safe_dump(
        payload,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    ).strip()
    block = f"{METADATA_START}\n{yaml_content}\n{METADATA_END}"
    if not description:
        return block
    if METADATA_PATTERN.search(description):
        return METADATA_PATTERN.sub(lambda _match: block, description).strip()
    return f"{description.rstrip()}\n\n{block}".strip()


def build_metadata(session: Session) -> dict[str, Any]:
    # last_modified stays out: stamping a record must not change its payload.
    payload: dict[str, Any] = {
        "app_source": APP_SOURCE,
        "version": METADATA_VERSION,
        "session_id": session.id,
        "course_id": session.course_id,
        "attended": session.attended,
        "completion_percentage": session.completion_percentage,
    }
    if session.original_title:
        payload["original_title"] = session.original_title
    if session.recurrence is not None and session.recurrence.overrides:
        payload["overrides"] = [
            session.recurrence.overrides[key].to_dict() for key in sorted(session.recurrence.overrides)
        ]
    return payload


def is_managed(event: RemoteEvent) -> bool:
    metadata = parse_metadata_block(event.description)
    if metadata is None:
        return False
    return metadata.get("app_source") == APP_SOURCE and bool(str(metadata.get("session_id") or "").strip())


def session_title(session: Session, course_titles: dict[str, str] | None = None) -> str:
    if session.course_id:
        return (course_titles or {}).get(session.course_id, session.course_id)
    return session.original_title or UNASSIGNED_TITLE


def session_to_event(
    session: Session,
    calendar_id: str,
    zone: tzinfo,
    course_titles: dict[str, str] | None = None,
) -> RemoteEvent:
    if session.is_instance:
        raise ValueError(f"instance {session.id} cannot be pushed; push its master {session.master_id}")
    start = datetime.combine(session.start_date, session.start_time, tzinfo=zone)
    end = datetime.combine(session.end_date or session.start_date, session.end_time, tzinfo=zone)
    rrule_text = ""
    exdates = []
    if session.recurrence is not None:
        rrule_text = format_rrule(session.recurrence.rule)
        exdates = sorted(session.recurrence.excluded_dates)
    return RemoteEvent(
        calendar_id=calendar_id,
        uid=session.external_event_id or "",
        summary=session_title(session, course_titles),
        description=upsert_metadata_block(session.notes, build_metadata(session)),
        start=start,
        end=end,
        rrule=rrule_text,
        exdates=exdates,
    )


def event_to_session(event: RemoteEvent, zone: tzinfo) -> Session | None:
    """Translate a planner-owned event back into session shape.

    Returns None for events without the ownership block. Raises
    :class:`SessionValidationError` for owned events with unusable data.
    """
    metadata = parse_metadata_block(event.description)
    if metadata is None or metadata.get("app_source") != APP_SOURCE:
        return None
    session_id = str(metadata.get("session_id") or "").strip()
    if not session_id:
        return None
    if event.start is None or event.end is None:
        raise SessionValidationError(f"event {event.uid}: missing start or end")
    start = event.start.astimezone(zone).replace(tzinfo=None)
    end = event.end.astimezone(zone).replace(tzinfo=None)

    recurrence = None
    if event.rrule:
        overrides: dict[Any, RecurrenceOverride] = {}
        for item in metadata.get("overrides") or []:
            if isinstance(item, dict):
                override = RecurrenceOverride.from_dict(item)
                overrides[override.date] = override
        recurrence = RecurrenceDescriptor(
            rule=parse_rrule(event.rrule),
            series_start=start.date(),
            excluded_dates=sorted(set(event.exdates)),
            overrides=overrides,
        )

    course_id = str(metadata.get("course_id") or "").strip() or None
    completion = parse_int(metadata.get("completion_percentage"), f"event {event.uid}: completion_percentage", 0)
    session = Session(
        id=session_id,
        course_id=course_id,
        start_date=start.date(),
        start_time=start.time().replace(second=0, microsecond=0),
        end_date=end.date() if end.date() != start.date() else None,
        end_time=end.time().replace(second=0, microsecond=0),
        attended=bool(metadata.get("attended", False)),
        completion_percentage=completion,
        notes=strip_metadata_block(event.description),
        external_event_id=event.uid,
        external_calendar_id=event.calendar_id,
        recurrence=recurrence,
        original_title=str(metadata.get("original_title") or ""),
    )
    return validate_session(session)


def event_fingerprint(event: RemoteEvent) -> str:
    raw = "|".join(
        [
            event.summary,
            event.description,
            serialize_datetime(event.start) or "",
            serialize_datetime(event.end) or "",
            event.rrule,
            ",".join(x.isoformat() for x in sorted(event.exdates)),
        ]
    )
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()  # nosec B324
