from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable

from studysync.models import RecurrenceOverride, Session, split_instance_id
from studysync.recurrence import expand_master
from studysync.session_store import ORIGIN_LOCAL, SessionStore

logger = logging.getLogger(__name__)

REPLANNED = "replanned"
RESOLVED_WITHOUT_REPLAN = "resolved_without_replan"
ALREADY_RESOLVED = "already_resolved"


@dataclass
class ReplanOutcome:
    status: str
    session_id: str
    course_id: str | None
    missed_minutes: int
    covered_minutes: int = 0
    shortfall_minutes: int = 0
    reassigned_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class Replanner:
    """Repairs the schedule after a session is reported as missed.

    Free time is taken from upcoming unassigned sessions, soonest first. Every
    write goes through the Session Store so the next sync pass propagates it.
    """

    def __init__(self, session_store: SessionStore, now: Callable[[], datetime] = datetime.now) -> None:
        self.session_store = session_store
        self._now = now

    def _resolve(self, session_id: str) -> tuple[Session, Session | None]:
        """Return ``(missed, master)``; ``master`` is set for recurring instances."""
        parts = split_instance_id(session_id)
        if parts is None:
            session = self.session_store.get(session_id)
            if session is None:
                raise KeyError(session_id)
            if session.is_master:
                raise ValueError(f"session {session_id} is a recurring series; report the missed occurrence")
            return session, None
        master_id, occurrence = parts
        master = self.session_store.get(master_id)
        if master is None or not master.is_master:
            raise KeyError(session_id)
        for instance in expand_master(master, occurrence, occurrence, include_shifted=True):
            if instance.id == session_id:
                return instance, master
        raise KeyError(session_id)

    def capacity_candidates(self, exclude_id: str) -> list[Session]:
        now = self._now()
        candidates = [
            item
            for item in self.session_store.list()
            if item.id != exclude_id
            and not item.is_master
            and not item.is_instance
            and item.is_unassigned
            and not item.attended
            and item.start_at > now
        ]
        candidates.sort(key=lambda item: (item.start_at, item.id))
        return candidates

    def handle_missed_session(self, session_id: str, user_confirmed_replan: bool) -> ReplanOutcome:
        missed, master = self._resolve(session_id)
        missed_minutes = missed.span_minutes()
        if missed.attended:
            return ReplanOutcome(
                status=ALREADY_RESOLVED,
                session_id=session_id,
                course_id=missed.course_id,
                missed_minutes=missed_minutes,
            )

        selected: list[Session] = []
        covered = 0
        for candidate in self.capacity_candidates(missed.id):
            if covered >= missed_minutes:
                break
            selected.append(candidate)
            covered += candidate.span_minutes()
        sufficient = covered >= missed_minutes

        if sufficient and user_confirmed_replan:
            reassigned: list[str] = []
            for candidate in selected:
                if candidate.course_id == missed.course_id:
                    continue
                self.session_store.upsert(candidate.with_updates(course_id=missed.course_id), origin=ORIGIN_LOCAL)
                reassigned.append(candidate.id)
            if master is not None:
                updated = master.clone()
                updated.recurrence.exclude(missed.start_date)
                updated.recurrence.overrides.pop(missed.start_date, None)
                self.session_store.upsert(updated, origin=ORIGIN_LOCAL)
            else:
                self.session_store.remove(missed.id, origin=ORIGIN_LOCAL)
            logger.info(
                "Replanned %s (%d min) onto %d sessions: %s",
                session_id,
                missed_minutes,
                len(reassigned),
                ", ".join(reassigned),
            )
            return ReplanOutcome(
                status=REPLANNED,
                session_id=session_id,
                course_id=missed.course_id,
                missed_minutes=missed_minutes,
                covered_minutes=covered,
                reassigned_ids=reassigned,
            )

        self._mark_resolved(missed, master)
        shortfall = 0 if sufficient else missed_minutes - covered
        logger.info(
            "Resolved %s without replanning (confirmed=%s, shortfall=%d min)",
            session_id,
            user_confirmed_replan,
            shortfall,
        )
        return ReplanOutcome(
            status=RESOLVED_WITHOUT_REPLAN,
            session_id=session_id,
            course_id=missed.course_id,
            missed_minutes=missed_minutes,
            covered_minutes=covered,
            shortfall_minutes=shortfall,
        )

    def _mark_resolved(self, missed: Session, master: Session | None) -> None:
        if master is None:
            self.session_store.upsert(
                missed.with_updates(attended=True, completion_percentage=0), origin=ORIGIN_LOCAL
            )
            return
        updated = master.clone()
        occurrence: date = missed.start_date
        existing = updated.recurrence.overrides.get(occurrence)
        if existing is None:
            override = RecurrenceOverride(date=occurrence, attended=True, completion_percentage=0)
        else:
            override = dataclasses.replace(existing, attended=True, completion_percentage=0)
        updated.recurrence.overrides[occurrence] = override
        self.session_store.upsert(updated, origin=ORIGIN_LOCAL)
