from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Generic, Protocol, TypeVar

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vRecur

import caldav
from caldav.lib import error as caldav_error

from studysync.models import CalDAVConfig, CalendarInfo, RemoteEvent
from studysync.event_codec import is_managed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdapterStatus(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    INVALID_CREDENTIAL = "invalid_credential"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class AdapterResult(Generic[T]):
    status: AdapterStatus
    value: T | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status is AdapterStatus.SUCCESS

    @classmethod
    def success(cls, value: T | None = None) -> "AdapterResult[T]":
        return cls(status=AdapterStatus.SUCCESS, value=value)

    @classmethod
    def not_found(cls, error: str = "") -> "AdapterResult[T]":
        return cls(status=AdapterStatus.NOT_FOUND, error=error)

    @classmethod
    def invalid_credential(cls, error: str = "") -> "AdapterResult[T]":
        return cls(status=AdapterStatus.INVALID_CREDENTIAL, error=error)

    @classmethod
    def transient(cls, error: str = "") -> "AdapterResult[T]":
        return cls(status=AdapterStatus.TRANSIENT_ERROR, error=error)


class RemoteCalendarAdapter(Protocol):
    async def validate_credential(self, credential: CalDAVConfig) -> AdapterResult[bool]: ...

    async def list_calendars(self, credential: CalDAVConfig) -> AdapterResult[list[CalendarInfo]]: ...

    async def ensure_calendar(
        self, credential: CalDAVConfig, calendar_id: str, calendar_name: str
    ) -> AdapterResult[CalendarInfo]: ...

    async def list_managed_events(
        self, credential: CalDAVConfig, calendar_id: str
    ) -> AdapterResult[list[RemoteEvent]]: ...

    async def create_event(
        self, credential: CalDAVConfig, calendar_id: str, event: RemoteEvent
    ) -> AdapterResult[str]: ...

    async def update_event(
        self, credential: CalDAVConfig, calendar_id: str, external_id: str, event: RemoteEvent
    ) -> AdapterResult[None]: ...

    async def delete_event(
        self, credential: CalDAVConfig, calendar_id: str, external_id: str
    ) -> AdapterResult[None]: ...


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _master_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT" and component.get("RECURRENCE-ID") is None:
            return component
    return None


def _extract_uid_from_raw_ical(raw_data: Any) -> str:
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    except ValueError:
        return ""
    vevent = _master_vevent(calendar_obj)
    if vevent is None:
        return ""
    return str(vevent.get("UID", "")).strip()


def _exdates_of(vevent: ICEvent, start: datetime | None) -> list[date]:
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    dates: set[date] = set()
    for entry in entries:
        for item in getattr(entry, "dts", []):
            value = item.dt
            if isinstance(value, datetime):
                if value.tzinfo is not None and start is not None and start.tzinfo is not None:
                    value = value.astimezone(start.tzinfo)
                dates.add(value.date())
            elif isinstance(value, date):
                dates.add(value)
    return sorted(dates)


def managed_uid(session_id: str) -> str:
    """Deterministic remote UID so a retried create lands on the same event."""
    return f"studysync-{session_id}"


def build_ical(event: RemoteEvent) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//StudySync//Session Sync//EN")
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", event.uid)
    vevent.add("SUMMARY", event.summary or "")
    vevent.add("DESCRIPTION", event.description or "")
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    if event.start is not None:
        vevent.add("DTSTART", event.start)
    if event.end is not None:
        vevent.add("DTEND", event.end)
    if event.rrule:
        vevent.add("RRULE", vRecur.from_ical(event.rrule))
        if event.exdates and event.start is not None:
            vevent.add(
                "EXDATE",
                [event.start.replace(year=x.year, month=x.month, day=x.day) for x in sorted(event.exdates)],
            )
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def parse_ical(calendar_id: str, raw_data: Any, href: str = "") -> RemoteEvent:
    raw_ical = _decode_raw_ical(raw_data)
    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _master_vevent(calendar_obj)
    if vevent is None:
        raise ValueError("VEVENT missing in calendar resource.")
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    start = _coerce_datetime(dtstart_raw)
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    end = _coerce_datetime(dtend_raw)
    if start is not None and end is None:
        end = start + timedelta(hours=1)
    rrule_raw = vevent.get("RRULE")
    rrule_text = rrule_raw.to_ical().decode("utf-8") if rrule_raw is not None else ""
    return RemoteEvent(
        calendar_id=calendar_id,
        uid=str(vevent.get("UID", "")).strip(),
        summary=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        start=start,
        end=end,
        rrule=rrule_text,
        exdates=_exdates_of(vevent, start),
        href=href,
        etag=_data_hash(raw_ical),
    )


class CalDAVCalendarAdapter:
    """Remote calendar contract over a CalDAV collection.

    The ``caldav`` library is blocking; every call runs in a worker thread so the
    event loop only suspends at these boundaries. Failures come back as
    :class:`AdapterResult` values, never as exceptions.
    """

    def __init__(self) -> None:
        self._clients: dict[tuple[str, str, str], Any] = {}
        self._calendar_cache: dict[str, Any] = {}

    @staticmethod
    def _credential_key(credential: CalDAVConfig) -> tuple[str, str, str]:
        return (credential.base_url, credential.username, credential.password)

    def _forget(self, credential: CalDAVConfig) -> None:
        self._clients.pop(self._credential_key(credential), None)
        self._calendar_cache = {}

    def _principal(self, credential: CalDAVConfig) -> Any:
        if not credential.is_complete():
            raise RuntimeError("CalDAV config is incomplete.")
        key = self._credential_key(credential)
        principal = self._clients.get(key)
        if principal is None:
            client = caldav.DAVClient(
                url=credential.base_url,
                username=credential.username,
                password=credential.password,
                timeout=credential.timeout_seconds,
            )
            principal = client.principal()
            self._clients[key] = principal
        return principal

    def _get_calendar(self, credential: CalDAVConfig, calendar_id: str) -> Any:
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        principal = self._principal(credential)
        for calendar in principal.calendars():
            self._calendar_cache[str(calendar.url)] = calendar
        if calendar_id not in self._calendar_cache:
            raise caldav_error.NotFoundError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    async def _call(
        self, credential: CalDAVConfig, operation: str, func: Callable[..., T], *args: Any
    ) -> AdapterResult[T]:
        try:
            value = await asyncio.to_thread(func, *args)
        except caldav_error.AuthorizationError as exc:
            self._forget(credential)
            logger.warning("CalDAV %s rejected credential: %s", operation, exc)
            return AdapterResult.invalid_credential(f"{type(exc).__name__}: {exc}")
        except caldav_error.NotFoundError as exc:
            return AdapterResult.not_found(f"{type(exc).__name__}: {exc}")
        except (caldav_error.DAVError, OSError, TimeoutError, ValueError) as exc:
            logger.warning("CalDAV %s failed: %s", operation, exc)
            return AdapterResult.transient(f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("CalDAV %s raised unexpectedly", operation)
            return AdapterResult.transient(f"{type(exc).__name__}: {exc}")
        return AdapterResult.success(value)

    def _validate_blocking(self, credential: CalDAVConfig) -> bool:
        self._forget(credential)
        self._principal(credential)
        return True

    async def validate_credential(self, credential: CalDAVConfig) -> AdapterResult[bool]:
        if not credential.is_complete():
            return AdapterResult.invalid_credential("CalDAV config missing base_url/username.")
        return await self._call(credential, "validate", self._validate_blocking, credential)

    def _list_calendars_blocking(self, credential: CalDAVConfig) -> list[CalendarInfo]:
        principal = self._principal(credential)
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        return calendars

    async def list_calendars(self, credential: CalDAVConfig) -> AdapterResult[list[CalendarInfo]]:
        return await self._call(credential, "list_calendars", self._list_calendars_blocking, credential)

    def _ensure_calendar_blocking(
        self, credential: CalDAVConfig, calendar_id: str, calendar_name: str
    ) -> CalendarInfo:
        calendars = self._list_calendars_blocking(credential)
        wanted_id = _normalize_calendar_id(calendar_id)
        if wanted_id:
            for info in calendars:
                if _normalize_calendar_id(info.calendar_id) == wanted_id:
                    return info
        wanted_name = _normalize_calendar_name(calendar_name)
        if wanted_name:
            same_name = [info for info in calendars if _normalize_calendar_name(info.name) == wanted_name]
            if same_name:
                same_name.sort(key=lambda item: item.calendar_id)
                return same_name[0]

        calendar = self._principal(credential).make_calendar(name=calendar_name)
        created_id = str(calendar.url)
        self._calendar_cache[created_id] = calendar
        logger.info("Created managed calendar %s (%s)", calendar_name, created_id)
        return CalendarInfo(
            calendar_id=created_id,
            name=getattr(calendar, "name", calendar_name) or calendar_name,
            url=created_id,
        )

    async def ensure_calendar(
        self, credential: CalDAVConfig, calendar_id: str, calendar_name: str
    ) -> AdapterResult[CalendarInfo]:
        return await self._call(
            credential, "ensure_calendar", self._ensure_calendar_blocking, credential, calendar_id, calendar_name
        )

    def _list_managed_blocking(self, credential: CalDAVConfig, calendar_id: str) -> list[RemoteEvent]:
        calendar = self._get_calendar(credential, calendar_id)
        events: list[RemoteEvent] = []
        for resource in calendar.events():
            href = str(getattr(resource, "url", "") or "")
            try:
                event = parse_ical(calendar_id, resource.data, href=href)
            except ValueError as exc:
                logger.warning("Skipping unparseable resource %s: %s", href, exc)
                continue
            if event.uid and is_managed(event):
                events.append(event)
        events.sort(key=lambda item: item.uid)
        return events

    async def list_managed_events(
        self, credential: CalDAVConfig, calendar_id: str
    ) -> AdapterResult[list[RemoteEvent]]:
        return await self._call(
            credential, "list_managed_events", self._list_managed_blocking, credential, calendar_id
        )

    def _find_resource_by_uid(self, calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            resource = calendar.event_by_uid(uid)
            if isinstance(resource, list):
                resource = resource[0] if resource else None
            if resource is not None:
                return resource
        except caldav_error.NotFoundError:
            return None
        except caldav_error.ReportError:
            # Some servers reject the UID REPORT query; fall back to a scan.
            for resource in calendar.events():
                if _extract_uid_from_raw_ical(getattr(resource, "data", "")) == uid:
                    return resource
        return None

    def _create_blocking(self, credential: CalDAVConfig, calendar_id: str, event: RemoteEvent) -> str:
        calendar = self._get_calendar(credential, calendar_id)
        raw_ical = build_ical(event)
        existing = self._find_resource_by_uid(calendar, event.uid)
        if existing is not None:
            existing.data = raw_ical
            existing.save()
        else:
            calendar.save_event(raw_ical)
        return event.uid

    async def create_event(
        self, credential: CalDAVConfig, calendar_id: str, event: RemoteEvent
    ) -> AdapterResult[str]:
        if not event.uid:
            raise ValueError("create_event requires a uid; use managed_uid(session_id)")
        return await self._call(credential, "create_event", self._create_blocking, credential, calendar_id, event)

    def _update_blocking(
        self, credential: CalDAVConfig, calendar_id: str, external_id: str, event: RemoteEvent
    ) -> None:
        calendar = self._get_calendar(credential, calendar_id)
        resource = self._find_resource_by_uid(calendar, external_id)
        if resource is None:
            raise caldav_error.NotFoundError(f"event {external_id} not found")
        resource.data = build_ical(event.with_updates(uid=external_id))
        resource.save()

    async def update_event(
        self, credential: CalDAVConfig, calendar_id: str, external_id: str, event: RemoteEvent
    ) -> AdapterResult[None]:
        return await self._call(
            credential, "update_event", self._update_blocking, credential, calendar_id, external_id, event
        )

    def _delete_blocking(self, credential: CalDAVConfig, calendar_id: str, external_id: str) -> None:
        calendar = self._get_calendar(credential, calendar_id)
        resource = self._find_resource_by_uid(calendar, external_id)
        if resource is None:
            raise caldav_error.NotFoundError(f"event {external_id} not found")
        resource.delete()

    async def delete_event(
        self, credential: CalDAVConfig, calendar_id: str, external_id: str
    ) -> AdapterResult[None]:
        result = await self._call(
            credential, "delete_event", self._delete_blocking, credential, calendar_id, external_id
        )
        if result.status is AdapterStatus.NOT_FOUND:
            # Already gone is the state a delete asks for.
            return AdapterResult.success()
        return result
