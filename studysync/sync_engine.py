from __future__ import annotations

import logging
import time as _time
import traceback
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from studysync.caldav_client import AdapterResult, AdapterStatus, RemoteCalendarAdapter, managed_uid
from studysync.config_manager import ConfigManager
from studysync.event_codec import event_fingerprint, event_to_session, parse_metadata_block, session_to_event
from studysync.models import AppConfig, CalDAVConfig, RemoteEvent, Session, SessionValidationError, SyncResult
from studysync.reconciler import (
    DROP_LOCAL,
    IMPORT,
    KEEP_LOCAL,
    LOCAL_WINS,
    SUPPRESS,
    TAKE_REMOTE,
    UNCHANGED,
    merge_session,
)
from studysync.session_store import SessionStore
from studysync.state_store import StateStore

logger = logging.getLogger(__name__)

FOLLOW_UP_TRIGGER = "follow_up"


class _Disconnected(Exception):
    def __init__(self, operation: str, error: str) -> None:
        super().__init__(f"{operation}: {error}")
        self.operation = operation
        self.error = error


def resolve_zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown calendar timezone {name!r}") from exc


class SyncEngine:
    """Runs reconciliation passes between the Session Store and the managed calendar.

    A pass only suspends at adapter calls. Edits made during those suspensions
    carry a logical-clock stamp above the pass's start tick, which is how the
    merge tells a concurrent local edit from a stale copy.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        session_store: SessionStore,
        adapter: RemoteCalendarAdapter,
        monotonic: Callable[[], float] = _time.monotonic,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.session_store = session_store
        self.adapter = adapter
        self._monotonic = monotonic
        self._running = False
        self._last_finished: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _audit(self, run_id: int | None, session_id: str, external_id: str | None, action: str, **details: Any) -> None:
        self.state_store.record_audit_event(
            session_id=session_id,
            external_id=external_id or "",
            action=action,
            details=details,
            run_id=run_id,
        )

    @staticmethod
    def _check(operation: str, outcome: AdapterResult[Any]) -> AdapterResult[Any]:
        if outcome.status is AdapterStatus.INVALID_CREDENTIAL:
            raise _Disconnected(operation, outcome.error)
        return outcome

    async def run_sync_pass(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        if self._running:
            logger.debug("Sync pass (%s) skipped: another pass is in flight", trigger)
            return SyncResult(
                status="skipped",
                message="A sync pass is already running.",
                duration_ms=0,
                trigger=trigger,
                run_at=started_at,
            )
        self._running = True
        try:
            return await self._run(trigger, started_at)
        finally:
            self._running = False

    def _in_cooldown(self, config: AppConfig, trigger: str) -> bool:
        if trigger == FOLLOW_UP_TRIGGER or self._last_finished is None:
            return False
        return self._monotonic() - self._last_finished < config.sync.cooldown_seconds

    def cooldown_remaining(self) -> float:
        if self._last_finished is None:
            return 0.0
        config = self.config_manager.load()
        return max(0.0, config.sync.cooldown_seconds - (self._monotonic() - self._last_finished))

    def _finish(self, result: SyncResult, run_id: int | None, started_at: datetime) -> SyncResult:
        result.duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        counters = result.to_dict()
        if run_id is None:
            self.state_store.record_sync_run(
                trigger=result.trigger,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                changes_applied=result.changes_applied,
                conflicts=result.conflicts,
            )
        else:
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                changes_applied=result.changes_applied,
                conflicts=result.conflicts,
                counters=counters,
            )
        if result.status == "success":
            self.state_store.set_meta("last_success_at", started_at.isoformat())
        logger.info(
            "Sync pass %s (%s): %s [created=%d updated=%d deleted_remote=%d deleted_local=%d "
            "imported=%d refreshed=%d conflicts=%d failed=%d]",
            result.status,
            result.trigger,
            result.message,
            result.created,
            result.updated,
            result.deleted_remote,
            result.deleted_local,
            result.imported,
            result.refreshed,
            result.conflicts,
            result.failed,
        )
        return result

    async def _run(self, trigger: str, started_at: datetime) -> SyncResult:
        result = SyncResult(status="success", message="", duration_ms=0, trigger=trigger, run_at=started_at)
        run_id: int | None = None
        try:
            config = self.config_manager.load()
            if self._in_cooldown(config, trigger):
                result.status = "skipped"
                result.message = "Last pass finished within the cooldown window."
                return result
            if not config.caldav.is_complete():
                result.status = "skipped"
                result.message = "CalDAV config missing base_url/username. Sync skipped."
                return self._finish(result, None, started_at)
            if not config.caldav.connected:
                result.status = "skipped"
                result.message = "Calendar integration is disconnected. Sync skipped."
                return self._finish(result, None, started_at)

            zone = resolve_zone(config.calendar.timezone)
            pass_start = self.session_store.clock.tick()
            run_id = self.state_store.start_sync_run(trigger=trigger)
            try:
                await self._pass(config, zone, pass_start, run_id, result)
            except _Disconnected as exc:
                self.config_manager.invalidate_credential()
                self._audit(run_id, "system", None, "credential_invalidated", trigger=trigger, operation=exc.operation, error=exc.error)
                logger.warning("CalDAV credential rejected during %s; integration disconnected", exc.operation)
                result.status = "disconnected"
                result.message = f"Credential rejected ({exc.error}). Reconnect to resume sync."
            self._last_finished = self._monotonic()
            return self._finish(result, run_id, started_at)
        except Exception as exc:
            self._last_finished = self._monotonic()
            error_message = f"{type(exc).__name__}: {exc}"
            self._audit(
                run_id,
                "system",
                "sync",
                "run_error",
                trigger=trigger,
                error=error_message,
                traceback=traceback.format_exc(limit=5),
            )
            logger.exception("Sync pass (%s) failed", trigger)
            result.status = "error"
            result.message = error_message
            return self._finish(result, run_id, started_at)

    async def _pass(
        self,
        config: AppConfig,
        zone: tzinfo,
        pass_start: int,
        run_id: int,
        result: SyncResult,
    ) -> None:
        credential = config.caldav
        validation = self._check("validate_credential", await self.adapter.validate_credential(credential))
        if not validation.ok:
            result.status = "error"
            result.message = f"Credential check failed: {validation.error}"
            return

        calendar_outcome = self._check(
            "ensure_calendar",
            await self.adapter.ensure_calendar(
                credential, config.calendar.calendar_id, config.calendar.calendar_name
            ),
        )
        if not calendar_outcome.ok or calendar_outcome.value is None:
            result.status = "error"
            result.message = f"Managed calendar unavailable: {calendar_outcome.error}"
            return
        calendar_id = calendar_outcome.value.calendar_id
        if calendar_id != config.calendar.calendar_id:
            config = self.config_manager.set_managed_calendar(calendar_id)
            self._audit(run_id, "system", calendar_id, "managed_calendar_resolved", name=config.calendar.calendar_name)

        push_failed = await self._push(config, credential, calendar_id, zone, pass_start, run_id, result)

        listing = self._check("list_managed_events", await self.adapter.list_managed_events(credential, calendar_id))
        if not listing.ok:
            result.status = "error"
            result.message = f"Listing managed events failed: {listing.error}"
            return
        remote_sessions, remote_unreadable = await self._pull(
            credential, calendar_id, zone, listing.value or [], run_id, result
        )

        # No suspension from here to the commit: the merge sees the store as committed.
        self._merge_and_commit(
            config, calendar_id, zone, pass_start, run_id, result, remote_sessions, remote_unreadable, push_failed
        )
        self.state_store.save_sessions(self.session_store.list())

        if result.failed:
            result.status = "partial"
        result.message = (
            f"Pushed {result.created + result.updated} sessions, deleted {result.deleted_remote} remote events, "
            f"pulled {len(remote_sessions)} managed events."
        )

    async def _push(
        self,
        config: AppConfig,
        credential: CalDAVConfig,
        calendar_id: str,
        zone: tzinfo,
        pass_start: int,
        run_id: int,
        result: SyncResult,
    ) -> set[str]:
        push_failed: set[str] = set()

        for pending in self.session_store.pending_deletions():
            outcome = self._check(
                "delete_event",
                await self.adapter.delete_event(
                    credential, pending.external_calendar_id or calendar_id, pending.external_event_id
                ),
            )
            if outcome.ok:
                self.session_store.resolve_deletion(pending.session_id)
                self.state_store.delete_push_stamp(pending.session_id)
                result.deleted_remote += 1
                self._audit(run_id, pending.session_id, pending.external_event_id, "delete_remote")
            else:
                result.failed += 1
                self._audit(run_id, pending.session_id, pending.external_event_id, "delete_remote_failed", error=outcome.error)

        titles = config.calendar.course_titles
        for session in self.session_store.list():
            event = session_to_event(session, calendar_id, zone, titles)
            payload_hash = event_fingerprint(event)
            needs_create = not session.external_event_id or session.external_calendar_id != calendar_id

            if needs_create:
                event = event.with_updates(uid=managed_uid(session.id))
                outcome = self._check("create_event", await self.adapter.create_event(credential, calendar_id, event))
                if not outcome.ok:
                    push_failed.add(session.id)
                    result.failed += 1
                    self._audit(run_id, session.id, event.uid, "push_failed", operation="create", error=outcome.error)
                    continue
                external_id = outcome.value or event.uid
                result.created += 1
                self._audit(run_id, session.id, external_id, "create_remote", title=event.summary)
                attached = self.session_store.attach_external_id(session.id, external_id, calendar_id, floor=pass_start)
                if attached is None:
                    # Removed while the create was in flight; the deletion goes out next pass.
                    result.follow_up_required = True
                    continue
                stamp_value = attached.last_modified if attached.last_modified <= pass_start else session.last_modified
                self.state_store.upsert_push_stamp(
                    session_id=session.id,
                    external_id=external_id,
                    pushed_last_modified=stamp_value,
                    payload_hash=payload_hash,
                )
                continue

            stamp = self.state_store.get_push_stamp(session.id)
            same_target = stamp is not None and stamp["external_id"] == session.external_event_id
            if same_target and int(stamp["pushed_last_modified"]) >= session.last_modified:
                continue
            if same_target and stamp["payload_hash"] == payload_hash:
                self.state_store.upsert_push_stamp(
                    session_id=session.id,
                    external_id=session.external_event_id,
                    pushed_last_modified=session.last_modified,
                    payload_hash=payload_hash,
                )
                continue

            external_id = session.external_event_id
            outcome = self._check(
                "update_event",
                await self.adapter.update_event(
                    credential, calendar_id, external_id, event.with_updates(uid=external_id)
                ),
            )
            if outcome.status is AdapterStatus.NOT_FOUND:
                self._audit(run_id, session.id, external_id, "update_remote_missing")
                continue
            if not outcome.ok:
                push_failed.add(session.id)
                result.failed += 1
                self._audit(run_id, session.id, external_id, "push_failed", operation="update", error=outcome.error)
                continue
            result.updated += 1
            self._audit(run_id, session.id, external_id, "update_remote", title=event.summary)
            self.state_store.upsert_push_stamp(
                session_id=session.id,
                external_id=external_id,
                pushed_last_modified=session.last_modified,
                payload_hash=payload_hash,
            )
        return push_failed

    async def _pull(
        self,
        credential: CalDAVConfig,
        calendar_id: str,
        zone: tzinfo,
        events: list[RemoteEvent],
        run_id: int,
        result: SyncResult,
    ) -> tuple[dict[str, Session], set[str]]:
        pending_uids = {item.external_event_id for item in self.session_store.pending_deletions()}
        unreadable: set[str] = set()
        candidates: dict[str, list[Session]] = {}
        for event in events:
            if event.uid in pending_uids:
                continue
            try:
                remote = event_to_session(event, zone)
            except (SessionValidationError, ValueError) as exc:
                session_id = str((parse_metadata_block(event.description) or {}).get("session_id") or "").strip()
                if session_id:
                    unreadable.add(session_id)
                self._audit(run_id, session_id or "unknown", event.uid, "skip_malformed_event", error=str(exc))
                continue
            if remote is None:
                continue
            candidates.setdefault(remote.id, []).append(remote)

        remote_sessions: dict[str, Session] = {}
        for session_id, found in candidates.items():
            keep = self._canonical(session_id, found)
            remote_sessions[session_id] = keep
            for duplicate in found:
                if duplicate is keep:
                    continue
                outcome = self._check(
                    "delete_event",
                    await self.adapter.delete_event(credential, calendar_id, duplicate.external_event_id or ""),
                )
                if outcome.ok:
                    result.deleted_remote += 1
                else:
                    result.failed += 1
                self._audit(
                    run_id,
                    session_id,
                    duplicate.external_event_id,
                    "purge_duplicate_remote",
                    kept=keep.external_event_id,
                    delete_ok=outcome.ok,
                )
        return remote_sessions, unreadable

    def _canonical(self, session_id: str, found: list[Session]) -> Session:
        if len(found) == 1:
            return found[0]
        local = self.session_store.get(session_id)
        preferred = [local.external_event_id] if local is not None and local.external_event_id else []
        preferred.append(managed_uid(session_id))
        for uid in preferred:
            for remote in found:
                if remote.external_event_id == uid:
                    return remote
        return sorted(found, key=lambda item: item.external_event_id or "")[0]

    def _merge_and_commit(
        self,
        config: AppConfig,
        calendar_id: str,
        zone: tzinfo,
        pass_start: int,
        run_id: int,
        result: SyncResult,
        remote_sessions: dict[str, Session],
        remote_unreadable: set[str],
        push_failed: set[str],
    ) -> None:
        store = self.session_store
        grace = config.sync.deletion_grace_seconds
        current = {item.id: item for item in store.list()}
        merged: list[Session] = []
        took_remote: list[str] = []

        for session_id in sorted(set(current) | set(remote_sessions)):
            local = current.get(session_id)
            remote = remote_sessions.get(session_id)
            suppressed = local is None and (
                store.is_pending_deletion(session_id) or store.was_recently_deleted(session_id, grace)
            )
            outcome = merge_session(
                local=local,
                remote=remote,
                pass_start=pass_start,
                push_failed=session_id in push_failed,
                remote_unreadable=session_id in remote_unreadable,
                interacting=store.is_interacting(session_id),
                suppressed=suppressed,
            )
            external_id = (remote or local).external_event_id
            if outcome.action in (KEEP_LOCAL, UNCHANGED):
                merged.append(outcome.session)
                if outcome.action == UNCHANGED:
                    result.unchanged += 1
            elif outcome.action == LOCAL_WINS:
                merged.append(outcome.session)
                result.follow_up_required = True
                if outcome.conflicted:
                    result.conflicts += 1
                    self._audit(run_id, session_id, external_id, "conflict_local_wins", reason=outcome.reason)
            elif outcome.action == TAKE_REMOTE:
                merged.append(outcome.session)
                took_remote.append(session_id)
                result.refreshed += 1
                self._audit(run_id, session_id, external_id, "pull_remote_change")
            elif outcome.action == IMPORT:
                merged.append(outcome.session)
                took_remote.append(session_id)
                result.imported += 1
                self._audit(run_id, session_id, external_id, "import_remote", course_id=outcome.session.course_id)
            elif outcome.action == DROP_LOCAL:
                result.deleted_local += 1
                self.state_store.delete_push_stamp(session_id)
                self._audit(run_id, session_id, external_id, "remote_deleted")
            elif outcome.action == SUPPRESS:
                self._audit(run_id, session_id, external_id, "suppress_resurrection", reason=outcome.reason)

        store.commit_merge(merged, floor=pass_start)

        # Records that took remote content already match the remote side.
        for session_id in took_remote:
            record = store.get(session_id)
            if record is None or not record.external_event_id:
                continue
            event = session_to_event(record, calendar_id, zone, config.calendar.course_titles)
            self.state_store.upsert_push_stamp(
                session_id=session_id,
                external_id=record.external_event_id,
                pushed_last_modified=record.last_modified,
                payload_hash=event_fingerprint(event),
            )
