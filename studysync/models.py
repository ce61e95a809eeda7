from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY")
INSTANCE_SEPARATOR = "::"


class SessionValidationError(ValueError):
    """Raised when session data cannot enter the engine."""


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_int(value: Any, field_name: str, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise SessionValidationError(f"{field_name}: expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SessionValidationError(f"{field_name}: expected an integer, got {value!r}") from exc


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_date(value: str | date | None, field_name: str = "date") -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise SessionValidationError(f"{field_name}: unparseable date {value!r}") from exc


def parse_time(value: str | time | None, field_name: str = "time") -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    text = str(value).strip()
    try:
        parsed = time.fromisoformat(text)
    except ValueError as exc:
        raise SessionValidationError(f"{field_name}: unparseable time {value!r}") from exc
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


def format_time(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")


def format_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def instance_id(master_id: str, occurrence: date) -> str:
    return f"{master_id}{INSTANCE_SEPARATOR}{occurrence.isoformat()}"


def split_instance_id(session_id: str) -> tuple[str, date] | None:
    """Return ``(master_id, date)`` for a synthetic instance id, else None."""
    if INSTANCE_SEPARATOR not in session_id:
        return None
    master_id, _, raw_date = session_id.rpartition(INSTANCE_SEPARATOR)
    try:
        return master_id, date.fromisoformat(raw_date)
    except ValueError:
        return None


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: int = 30
    connected: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            connected=bool(data.get("connected", True)),
        )

    def is_complete(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class CalendarConfig:
    calendar_id: str = ""
    calendar_name: str = "Study Planner"
    timezone: str = "UTC"
    course_titles: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        raw_titles = data.get("course_titles", {})
        titles: dict[str, str] = {}
        if isinstance(raw_titles, dict):
            for key, value in raw_titles.items():
                course_id = str(key).strip()
                if course_id and value is not None and str(value).strip():
                    titles[course_id] = str(value).strip()
        return cls(
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", "Study Planner")).strip() or "Study Planner",
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            course_titles=titles,
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    cooldown_seconds: float = 2.0
    deletion_grace_seconds: float = 120.0
    window_days: int = 28

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            cooldown_seconds=max(0.0, float(data.get("cooldown_seconds", 2.0))),
            deletion_grace_seconds=max(0.0, float(data.get("deletion_grace_seconds", 120.0))),
            window_days=max(1, int(data.get("window_days", 28))),
        )


@dataclass
class ReplanConfig:
    default_confirm: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReplanConfig":
        data = data or {}
        return cls(default_confirm=bool(data.get("default_confirm", False)))


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    replan: ReplanConfig = field(default_factory=ReplanConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            sync=SyncConfig.from_dict(data.get("sync")),
            replan=ReplanConfig.from_dict(data.get("replan")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RemoteEvent:
    calendar_id: str
    uid: str
    summary: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    rrule: str = ""
    exdates: list[date] = field(default_factory=list)
    href: str = ""
    etag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["exdates"] = [x.isoformat() for x in self.exdates]
        return payload

    def clone(self) -> "RemoteEvent":
        return RemoteEvent(
            calendar_id=self.calendar_id,
            uid=self.uid,
            summary=self.summary,
            description=self.description,
            start=self.start,
            end=self.end,
            rrule=self.rrule,
            exdates=list(self.exdates),
            href=self.href,
            etag=self.etag,
        )

    def with_updates(self, **kwargs: Any) -> "RemoteEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: str = "WEEKLY"
    interval: int = 1
    by_weekday: tuple[str, ...] = ()
    count: int | None = None
    until: date | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "interval": self.interval,
            "by_weekday": list(self.by_weekday),
            "count": self.count,
            "until": format_date(self.until),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecurrenceRule":
        frequency = str(data.get("frequency", "WEEKLY")).strip().upper()
        if frequency not in FREQUENCIES:
            raise SessionValidationError(f"recurrence: unsupported frequency {frequency!r}")
        weekdays = tuple(str(x).strip().upper() for x in data.get("by_weekday") or [] if str(x).strip())
        unknown = [x for x in weekdays if x not in WEEKDAY_CODES]
        if unknown:
            raise SessionValidationError(f"recurrence: unknown weekday codes {unknown}")
        interval = parse_int(data.get("interval"), "recurrence.interval", 1)
        count = parse_int(data.get("count"), "recurrence.count")
        if interval < 1:
            raise SessionValidationError(f"recurrence.interval must be positive, got {interval}")
        if count is not None and count < 1:
            raise SessionValidationError(f"recurrence.count must be positive, got {count}")
        return cls(
            frequency=frequency,
            interval=interval,
            by_weekday=weekdays,
            count=count,
            until=parse_date(data.get("until"), "recurrence.until"),
        )


@dataclass(frozen=True)
class RecurrenceOverride:
    date: date
    start_time: time | None = None
    end_time: time | None = None
    cancelled: bool = False
    attended: bool | None = None
    completion_percentage: int | None = None
    notes: str | None = None

    @property
    def is_time_shift(self) -> bool:
        return self.start_time is not None or self.end_time is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"date": self.date.isoformat()}
        if self.start_time is not None:
            payload["start_time"] = format_time(self.start_time)
        if self.end_time is not None:
            payload["end_time"] = format_time(self.end_time)
        if self.cancelled:
            payload["cancelled"] = True
        if self.attended is not None:
            payload["attended"] = self.attended
        if self.completion_percentage is not None:
            payload["completion_percentage"] = self.completion_percentage
        if self.notes is not None:
            payload["notes"] = self.notes
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecurrenceOverride":
        occurrence = parse_date(data.get("date"), "override.date")
        if occurrence is None:
            raise SessionValidationError("override.date is required")
        attended = data.get("attended")
        notes = data.get("notes")
        return cls(
            date=occurrence,
            start_time=parse_time(data.get("start_time"), "override.start_time"),
            end_time=parse_time(data.get("end_time"), "override.end_time"),
            cancelled=bool(data.get("cancelled", False)),
            attended=bool(attended) if attended is not None else None,
            completion_percentage=parse_int(data.get("completion_percentage"), "override.completion_percentage"),
            notes=str(notes) if notes is not None else None,
        )


@dataclass
class RecurrenceDescriptor:
    rule: RecurrenceRule
    series_start: date
    excluded_dates: list[date] = field(default_factory=list)
    overrides: dict[date, RecurrenceOverride] = field(default_factory=dict)

    def clone(self) -> "RecurrenceDescriptor":
        return RecurrenceDescriptor(
            rule=self.rule,
            series_start=self.series_start,
            excluded_dates=list(self.excluded_dates),
            overrides=dict(self.overrides),
        )

    def exclude(self, occurrence: date) -> bool:
        if occurrence in self.excluded_dates:
            return False
        self.excluded_dates = sorted([*self.excluded_dates, occurrence])
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule.to_dict(),
            "series_start": self.series_start.isoformat(),
            "excluded_dates": [x.isoformat() for x in sorted(self.excluded_dates)],
            "overrides": [self.overrides[key].to_dict() for key in sorted(self.overrides)],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecurrenceDescriptor":
        series_start = parse_date(data.get("series_start"), "recurrence.series_start")
        if series_start is None:
            raise SessionValidationError("recurrence.series_start is required")
        parsed_excluded = (parse_date(x, "recurrence.excluded_dates") for x in data.get("excluded_dates") or [])
        excluded = sorted({x for x in parsed_excluded if x is not None})
        raw_overrides = data.get("overrides") or []
        if isinstance(raw_overrides, dict):
            raw_overrides = [{"date": key, **(value or {})} for key, value in raw_overrides.items()]
        overrides: dict[date, RecurrenceOverride] = {}
        for item in raw_overrides:
            override = RecurrenceOverride.from_dict(item)
            overrides[override.date] = override
        return cls(
            rule=RecurrenceRule.from_dict(data.get("rule") or {}),
            series_start=series_start,
            excluded_dates=excluded,
            overrides=overrides,
        )


@dataclass
class Session:
    id: str
    start_date: date
    start_time: time
    end_time: time
    course_id: str | None = None
    end_date: date | None = None
    duration_minutes: int = 0
    attended: bool = False
    completion_percentage: int = 0
    notes: str = ""
    external_event_id: str | None = None
    external_calendar_id: str | None = None
    last_modified: int = 0
    recurrence: RecurrenceDescriptor | None = None
    master_id: str | None = None
    original_title: str = ""

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end_date or self.start_date, self.end_time)

    @property
    def is_master(self) -> bool:
        return self.recurrence is not None

    @property
    def is_instance(self) -> bool:
        return self.master_id is not None

    @property
    def is_unassigned(self) -> bool:
        return not self.course_id

    def span_minutes(self) -> int:
        return int((self.end_at - self.start_at).total_seconds() // 60)

    def overlaps(self, window_start: datetime, window_end: datetime) -> bool:
        return self.start_at <= window_end and self.end_at >= window_start

    def clone(self) -> "Session":
        return Session(
            id=self.id,
            start_date=self.start_date,
            start_time=self.start_time,
            end_time=self.end_time,
            course_id=self.course_id,
            end_date=self.end_date,
            duration_minutes=self.duration_minutes,
            attended=self.attended,
            completion_percentage=self.completion_percentage,
            notes=self.notes,
            external_event_id=self.external_event_id,
            external_calendar_id=self.external_calendar_id,
            last_modified=self.last_modified,
            recurrence=self.recurrence.clone() if self.recurrence is not None else None,
            master_id=self.master_id,
            original_title=self.original_title,
        )

    def with_updates(self, **kwargs: Any) -> "Session":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    def content_key(self) -> tuple[Any, ...]:
        """Everything a merge can change, minus the logical clock."""
        return (
            self.course_id,
            self.start_date,
            self.start_time,
            self.end_date,
            self.end_time,
            self.duration_minutes,
            self.attended,
            self.completion_percentage,
            self.notes,
            self.external_event_id,
            self.external_calendar_id,
            repr(self.recurrence.to_dict()) if self.recurrence is not None else None,
            self.original_title,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "course_id": self.course_id,
            "start_date": format_date(self.start_date),
            "start_time": format_time(self.start_time),
            "end_date": format_date(self.end_date),
            "end_time": format_time(self.end_time),
            "duration_minutes": self.duration_minutes,
            "attended": self.attended,
            "completion_percentage": self.completion_percentage,
            "notes": self.notes,
            "external_event_id": self.external_event_id,
            "external_calendar_id": self.external_calendar_id,
            "last_modified": self.last_modified,
            "recurrence": self.recurrence.to_dict() if self.recurrence is not None else None,
            "master_id": self.master_id,
            "original_title": self.original_title,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Session":
        session_id = str(payload.get("id", "") or "").strip()
        if not session_id:
            raise SessionValidationError("id is required")
        start_date = parse_date(payload.get("start_date"), "start_date")
        start_time = parse_time(payload.get("start_time"), "start_time")
        end_time = parse_time(payload.get("end_time"), "end_time")
        if start_date is None or start_time is None or end_time is None:
            raise SessionValidationError("start_date, start_time and end_time are required")
        end_date = parse_date(payload.get("end_date"), "end_date")
        recurrence_payload = payload.get("recurrence")
        course_id = str(payload.get("course_id") or "").strip() or None
        session = cls(
            id=session_id,
            course_id=course_id,
            start_date=start_date,
            start_time=start_time,
            end_date=end_date if end_date != start_date else None,
            end_time=end_time,
            attended=bool(payload.get("attended", False)),
            completion_percentage=parse_int(payload.get("completion_percentage"), "completion_percentage", 0),
            notes=str(payload.get("notes", "") or ""),
            external_event_id=str(payload.get("external_event_id") or "").strip() or None,
            external_calendar_id=str(payload.get("external_calendar_id") or "").strip() or None,
            last_modified=parse_int(payload.get("last_modified"), "last_modified", 0),
            recurrence=RecurrenceDescriptor.from_dict(recurrence_payload) if recurrence_payload else None,
            master_id=str(payload.get("master_id") or "").strip() or None,
            original_title=str(payload.get("original_title", "") or ""),
        )
        return validate_session(session)


def _validate_overrides(master: Session) -> None:
    span_days = ((master.end_date or master.start_date) - master.start_date).days
    for occurrence, override in master.recurrence.overrides.items():
        completion = override.completion_percentage
        if completion is not None and not 0 <= completion <= 100:
            raise SessionValidationError(
                f"session {master.id}: override {occurrence} completion_percentage must be within 0..100"
            )
        if override.is_time_shift:
            start = datetime.combine(occurrence, override.start_time or master.start_time)
            end = datetime.combine(occurrence + timedelta(days=span_days), override.end_time or master.end_time)
            if end <= start:
                raise SessionValidationError(f"session {master.id}: override {occurrence} must end after it starts")


def validate_session(session: Session) -> Session:
    """Reject malformed sessions and refresh the derived duration in place."""
    if not session.id:
        raise SessionValidationError("id is required")
    minutes = session.span_minutes()
    if minutes <= 0:
        raise SessionValidationError(
            f"session {session.id}: end must be after start (got {minutes} minutes)"
        )
    if not 0 <= session.completion_percentage <= 100:
        raise SessionValidationError(
            f"session {session.id}: completion_percentage must be within 0..100"
        )
    if session.recurrence is not None:
        if session.master_id is not None:
            raise SessionValidationError(f"session {session.id}: an instance cannot carry a recurrence")
        if session.recurrence.series_start != session.start_date:
            raise SessionValidationError(
                f"session {session.id}: series_start must equal the master's start_date"
            )
        _validate_overrides(session)
    session.notes = (session.notes or "").strip()
    if session.end_date is not None and session.end_date == session.start_date:
        session.end_date = None
    session.duration_minutes = minutes
    return session


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    deleted_remote: int = 0
    deleted_local: int = 0
    imported: int = 0
    refreshed: int = 0
    conflicts: int = 0
    unchanged: int = 0
    failed: int = 0
    follow_up_required: bool = False
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def network_writes(self) -> int:
        return self.created + self.updated + self.deleted_remote

    @property
    def changes_applied(self) -> int:
        return self.network_writes + self.deleted_local + self.imported + self.refreshed

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "deleted_remote": self.deleted_remote,
            "deleted_local": self.deleted_local,
            "imported": self.imported,
            "refreshed": self.refreshed,
            "conflicts": self.conflicts,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "follow_up_required": self.follow_up_required,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def view_window(today: date, window_days: int) -> tuple[date, date]:
    end = today + timedelta(days=max(1, window_days) - 1)
    return today, end
