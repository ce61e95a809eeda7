from __future__ import annotations

import time as _time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable

from studysync.models import Session, SessionValidationError, split_instance_id, validate_session
from studysync.recurrence import expand_sessions

ORIGIN_LOCAL = "local"
ORIGIN_SYNC = "sync"

Listener = Callable[[str, list[str]], None]


class LogicalClock:
    """Monotonic integer clock stamped on every session write."""

    def __init__(self, start: int = 0) -> None:
        self._value = int(start)

    def current(self) -> int:
        return self._value

    def tick(self) -> int:
        self._value += 1
        return self._value

    def observe(self, value: int) -> None:
        if value > self._value:
            self._value = int(value)


@dataclass(frozen=True)
class PendingDeletion:
    session_id: str
    external_event_id: str
    external_calendar_id: str | None = None


class SessionStore:
    """In-memory working set of sessions between synchronization passes.

    Not lock protected: every caller runs on the same event loop.
    """

    def __init__(
        self,
        clock: LogicalClock | None = None,
        monotonic: Callable[[], float] = _time.monotonic,
    ) -> None:
        self.clock = clock or LogicalClock()
        self._monotonic = monotonic
        self._sessions: dict[str, Session] = {}
        self._pending_deletions: dict[str, PendingDeletion] = {}
        self._recently_deleted: dict[str, float] = {}
        self._interacting: set[str] = set()
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, origin: str, session_ids: list[str]) -> None:
        if not session_ids:
            return
        for listener in list(self._listeners):
            listener(origin, session_ids)

    def list(self) -> list[Session]:
        ordered = sorted(self._sessions.values(), key=lambda item: (item.start_at, item.id))
        return [item.clone() for item in ordered]

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.clone() if session is not None else None

    def upsert(self, session: Session, origin: str = ORIGIN_LOCAL) -> Session:
        if session.is_instance or split_instance_id(session.id) is not None:
            raise SessionValidationError(
                f"session {session.id} is a derived instance; edit its recurring master instead"
            )
        stored = validate_session(session.clone())
        previous = self._sessions.get(stored.id)
        if previous is not None:
            if stored.external_event_id is None:
                stored.external_event_id = previous.external_event_id
            if stored.external_calendar_id is None:
                stored.external_calendar_id = previous.external_calendar_id
        stored.last_modified = self.clock.tick()
        self._sessions[stored.id] = stored
        self._recently_deleted.pop(stored.id, None)
        self._notify(origin, [stored.id])
        return stored.clone()

    def remove(self, session_id: str, origin: str = ORIGIN_LOCAL) -> Session | None:
        removed = self._sessions.pop(session_id, None)
        if removed is None:
            return None
        if removed.external_event_id:
            self._pending_deletions[session_id] = PendingDeletion(
                session_id=session_id,
                external_event_id=removed.external_event_id,
                external_calendar_id=removed.external_calendar_id,
            )
        self._recently_deleted[session_id] = self._monotonic()
        self._interacting.discard(session_id)
        self._notify(origin, [session_id])
        return removed

    def load(self, sessions: Iterable[Session]) -> None:
        """Replace the working set from a durable snapshot without notifying."""
        self._sessions = {}
        for session in sessions:
            stored = validate_session(session.clone())
            self._sessions[stored.id] = stored
            self.clock.observe(stored.last_modified)

    def pending_deletions(self) -> list[PendingDeletion]:
        return [self._pending_deletions[key] for key in sorted(self._pending_deletions)]

    def is_pending_deletion(self, session_id: str) -> bool:
        return session_id in self._pending_deletions

    def resolve_deletion(self, session_id: str) -> None:
        self._pending_deletions.pop(session_id, None)

    def was_recently_deleted(self, session_id: str, grace_seconds: float) -> bool:
        now = self._monotonic()
        expired = [key for key, at in self._recently_deleted.items() if now - at > grace_seconds]
        for key in expired:
            del self._recently_deleted[key]
        return session_id in self._recently_deleted

    def begin_interaction(self, session_id: str) -> None:
        self._interacting.add(session_id)

    def end_interaction(self, session_id: str) -> None:
        self._interacting.discard(session_id)

    def is_interacting(self, session_id: str) -> bool:
        return session_id in self._interacting

    def attach_external_id(
        self,
        session_id: str,
        external_event_id: str,
        external_calendar_id: str | None,
        floor: int,
    ) -> Session | None:
        """Record the remote identity of a freshly pushed session."""
        current = self._sessions.get(session_id)
        if current is None:
            # Removed while the push was in flight: the remote copy must go too.
            if session_id in self._recently_deleted:
                self._pending_deletions[session_id] = PendingDeletion(
                    session_id=session_id,
                    external_event_id=external_event_id,
                    external_calendar_id=external_calendar_id,
                )
            return None
        if (
            current.external_event_id == external_event_id
            and current.external_calendar_id == external_calendar_id
        ):
            return current.clone()
        current.external_event_id = external_event_id
        current.external_calendar_id = external_calendar_id
        current.last_modified = max(current.last_modified, floor)
        self.clock.observe(current.last_modified)
        self._notify(ORIGIN_SYNC, [session_id])
        return current.clone()

    def commit_merge(self, merged: Iterable[Session], floor: int) -> list[str]:
        """Replace the working set with a merge result; return changed ids."""
        updated: dict[str, Session] = {}
        changed: list[str] = []
        for session in merged:
            previous = self._sessions.get(session.id)
            if previous is not None and previous.content_key() == session.content_key():
                updated[session.id] = previous
                continue
            stored = session.clone()
            if previous is not None:
                stored.last_modified = max(previous.last_modified, floor)
            else:
                stored.last_modified = max(stored.last_modified, floor)
            self.clock.observe(stored.last_modified)
            updated[stored.id] = stored
            changed.append(stored.id)
        dropped = [key for key in self._sessions if key not in updated]
        for key in dropped:
            self._interacting.discard(key)
        self._sessions = updated
        self._notify(ORIGIN_SYNC, sorted(changed + dropped))
        return sorted(changed)

    def instances_between(
        self,
        window_start: date,
        window_end: date,
        include_shifted: bool = True,
    ) -> list[Session]:
        return expand_sessions(
            self._sessions.values(), window_start, window_end, include_shifted=include_shifted
        )
