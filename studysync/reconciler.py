from __future__ import annotations

from dataclasses import dataclass

from studysync.models import Session, validate_session

KEEP_LOCAL = "keep_local"
DROP_LOCAL = "drop_local"
LOCAL_WINS = "local_wins"
TAKE_REMOTE = "take_remote"
UNCHANGED = "unchanged"
IMPORT = "import"
SUPPRESS = "suppress"


@dataclass
class MergeOutcome:
    action: str
    reason: str
    session: Session | None
    conflicted: bool = False
    follow_up: bool = False


def merge_session(
    *,
    local: Session | None,
    remote: Session | None,
    pass_start: int,
    push_failed: bool = False,
    remote_unreadable: bool = False,
    interacting: bool = False,
    suppressed: bool = False,
) -> MergeOutcome:
    """Decide one session id's fate for a reconciliation pass.

    ``local`` is the Session Store record as it stands when the merge runs,
    ``remote`` the translation of the managed event carrying the same session id.
    Returns the record to keep, or ``session=None`` when the id leaves the
    working set.
    """
    if local is None and remote is None:
        raise ValueError("merge_session needs a local or a remote record")

    if remote is None:
        if not local.external_event_id:
            return MergeOutcome(action=KEEP_LOCAL, reason="pending_push", session=local)
        if push_failed:
            return MergeOutcome(action=KEEP_LOCAL, reason="push_failed", session=local)
        if remote_unreadable:
            return MergeOutcome(action=KEEP_LOCAL, reason="remote_unreadable", session=local)
        return MergeOutcome(action=DROP_LOCAL, reason="remote_deleted", session=None)

    if local is None:
        if suppressed:
            return MergeOutcome(action=SUPPRESS, reason="recently_deleted", session=None)
        imported = remote.clone()
        imported.last_modified = 0
        return MergeOutcome(action=IMPORT, reason="remote_only", session=imported)

    if local.last_modified > pass_start:
        kept = local.clone()
        if not kept.external_event_id:
            kept.external_event_id = remote.external_event_id
            kept.external_calendar_id = remote.external_calendar_id
        return MergeOutcome(
            action=LOCAL_WINS,
            reason="edited_during_pass",
            session=kept,
            conflicted=local.content_key() != _adopt_identity(remote, local).content_key(),
            follow_up=True,
        )

    if push_failed:
        return MergeOutcome(action=KEEP_LOCAL, reason="push_failed", session=local)

    merged = _adopt_identity(remote, local)
    if interacting:
        merged.start_date = local.start_date
        merged.start_time = local.start_time
        merged.end_date = local.end_date
        merged.end_time = local.end_time
    validate_session(merged)
    if merged.content_key() == local.content_key():
        return MergeOutcome(action=UNCHANGED, reason="in_sync", session=local)
    return MergeOutcome(action=TAKE_REMOTE, reason="remote_changed", session=merged)


def _adopt_identity(remote: Session, local: Session) -> Session:
    merged = remote.clone()
    merged.id = local.id
    merged.master_id = None
    merged.last_modified = local.last_modified
    # Once assigned, an external id survives every merge.
    merged.external_event_id = remote.external_event_id or local.external_event_id
    merged.external_calendar_id = remote.external_calendar_id or local.external_calendar_id
    return merged
