import asyncio
import unittest
from datetime import date, time, timedelta, timezone
from unittest import mock

from fake_calendar import CALENDAR_URL, TEST_CONFIG, EngineHarness

from studysync.caldav_client import AdapterStatus
from studysync.event_codec import session_to_event
from studysync.models import RemoteEvent, Session


def make_session(session_id: str, start: str = "10:00", end: str = "11:00", **fields: object) -> Session:
    payload = {
        "id": session_id,
        "course_id": "math",
        "start_date": "2026-03-02",
        "start_time": start,
        "end_time": end,
    }
    payload.update(fields)
    return Session.from_dict(payload)


class SyncEngineTestCase(unittest.IsolatedAsyncioTestCase):
    config = TEST_CONFIG

    def setUp(self) -> None:
        self.h = EngineHarness(self.config)
        self.store = self.h.session_store
        self.adapter = self.h.adapter

    def tearDown(self) -> None:
        self.h.close()

    async def run_pass(self, trigger: str = "manual"):
        return await self.h.engine.run_sync_pass(trigger)

    def move_remote(self, uid: str, hour: int) -> None:
        event = self.adapter.events[uid]
        self.adapter.events[uid] = event.with_updates(
            start=event.start.replace(hour=hour),
            end=event.end.replace(hour=hour + 1),
        )


class SyncPassTests(SyncEngineTestCase):
    async def test_first_pass_creates_remote_events_and_attaches_ids(self) -> None:
        self.store.upsert(make_session("s1"))
        self.store.upsert(make_session("s2", start="13:00", end="14:30", course_id=None))

        result = await self.run_pass()

        self.assertEqual(result.status, "success")
        self.assertEqual(result.created, 2)
        s1 = self.store.get("s1")
        self.assertEqual(s1.external_event_id, "studysync-s1")
        self.assertEqual(s1.external_calendar_id, CALENDAR_URL)
        self.assertEqual(self.adapter.events["studysync-s1"].summary, "Linear Algebra")
        self.assertEqual(self.adapter.events["studysync-s2"].summary, "Study session")
        self.assertEqual(self.h.config_manager.load().calendar.calendar_id, CALENDAR_URL)

    async def test_second_pass_without_changes_is_idempotent(self) -> None:
        self.store.upsert(make_session("s1", notes="chapter 4"))
        self.store.upsert(make_session("s2", start="13:00", end="14:30", course_id=None))
        await self.run_pass()
        before = [item.to_dict() for item in self.store.list()]
        writes = self.adapter.writes

        second = await self.run_pass("timer")

        self.assertEqual(second.status, "success")
        self.assertEqual(second.network_writes, 0)
        self.assertEqual(second.changes_applied, 0)
        self.assertEqual(self.adapter.writes, writes)
        self.assertEqual([item.to_dict() for item in self.store.list()], before)

    async def test_concurrent_pass_request_is_skipped_without_duplicates(self) -> None:
        self.store.upsert(make_session("s1"))

        first, second = await asyncio.gather(self.run_pass("edit"), self.run_pass("timer"))

        self.assertEqual(first.status, "success")
        self.assertEqual(second.status, "skipped")
        self.assertEqual(list(self.adapter.events), ["studysync-s1"])

    async def test_retried_create_after_lost_response_does_not_duplicate(self) -> None:
        self.adapter.failures["create_event"] = AdapterStatus.TRANSIENT_ERROR
        self.adapter.write_then_fail.add("create_event")
        self.store.upsert(make_session("s1"))

        first = await self.run_pass()
        self.assertEqual(first.status, "partial")
        self.assertEqual(first.failed, 1)
        self.assertIsNone(self.store.get("s1").external_event_id)

        second = await self.run_pass()
        self.assertEqual(second.status, "success")
        self.assertEqual(list(self.adapter.events), ["studysync-s1"])
        self.assertEqual(self.store.get("s1").external_event_id, "studysync-s1")

    async def test_local_edit_during_pass_wins_and_requests_follow_up(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        self.move_remote("studysync-s1", 14)

        def edit_while_listing() -> None:
            current = self.store.get("s1")
            self.store.upsert(current.with_updates(start_time=time(9, 0), end_time=time(10, 0)))

        self.adapter.hooks["list_managed_events"] = edit_while_listing
        self.h.now += 5
        second = await self.run_pass("timer")

        self.assertTrue(second.follow_up_required)
        self.assertEqual(second.conflicts, 1)
        self.assertEqual(self.store.get("s1").start_time, time(9, 0))

        follow_up = await self.run_pass("follow_up")
        self.assertEqual(follow_up.updated, 1)
        self.assertFalse(follow_up.follow_up_required)
        self.assertEqual(self.adapter.events["studysync-s1"].start.hour, 9)

    async def test_remote_change_is_pulled_and_not_echoed_back(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        self.move_remote("studysync-s1", 14)

        second = await self.run_pass()
        self.assertEqual(second.refreshed, 1)
        self.assertEqual(self.store.get("s1").start_time, time(14, 0))
        self.assertEqual(self.store.get("s1").duration_minutes, 60)

        third = await self.run_pass()
        self.assertEqual(third.network_writes, 0)
        self.assertEqual(self.adapter.calls_of("update_event"), [])

    async def test_interacting_session_keeps_local_date_and_time(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        self.move_remote("studysync-s1", 14)
        event = self.adapter.events["studysync-s1"]
        self.adapter.events["studysync-s1"] = event.with_updates(description="remote note\n\n" + event.description)
        self.store.begin_interaction("s1")

        await self.run_pass()

        session = self.store.get("s1")
        self.assertEqual(session.start_time, time(10, 0))
        self.assertEqual(session.notes, "remote note")
        self.assertEqual(session.external_event_id, "studysync-s1")

    async def test_remote_deletion_drops_local_session(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        del self.adapter.events["studysync-s1"]

        second = await self.run_pass()

        self.assertEqual(second.deleted_local, 1)
        self.assertEqual(second.network_writes, 0)
        self.assertIsNone(self.store.get("s1"))
        self.assertEqual(self.store.pending_deletions(), [])

    async def test_local_deletion_propagates_to_remote(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        self.store.remove("s1")

        second = await self.run_pass()

        self.assertEqual(second.deleted_remote, 1)
        self.assertEqual(self.adapter.events, {})
        self.assertIsNone(self.store.get("s1"))

    async def test_failed_remote_delete_does_not_resurrect_session(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        self.store.remove("s1")
        self.adapter.failures["delete_event"] = AdapterStatus.TRANSIENT_ERROR

        second = await self.run_pass()
        self.assertEqual(second.status, "partial")
        self.assertIn("studysync-s1", self.adapter.events)
        self.assertIsNone(self.store.get("s1"))

        third = await self.run_pass()
        self.assertEqual(third.deleted_remote, 1)
        self.assertEqual(self.adapter.events, {})
        self.assertIsNone(self.store.get("s1"))

    async def test_session_removed_during_create_is_deleted_remotely(self) -> None:
        self.store.upsert(make_session("s1"))
        self.adapter.hooks["create_event"] = lambda: self.store.remove("s1")

        first = await self.run_pass()
        self.assertTrue(first.follow_up_required)
        self.assertIsNone(self.store.get("s1"))

        await self.run_pass("follow_up")
        self.assertEqual(self.adapter.events, {})
        self.assertIsNone(self.store.get("s1"))

    async def test_remote_only_event_is_imported(self) -> None:
        await self.run_pass()
        phone = make_session("phone-1", course_id=None, notes="added on phone")
        event = session_to_event(phone, CALENDAR_URL, timezone.utc)
        self.adapter.events["phone-uid"] = event.with_updates(uid="phone-uid")
        self.adapter.events["dentist"] = RemoteEvent(
            calendar_id=CALENDAR_URL,
            uid="dentist",
            summary="Dentist",
            description="not planner owned",
            start=event.start,
            end=event.end,
        )

        result = await self.run_pass()

        self.assertEqual(result.imported, 1)
        imported = self.store.get("phone-1")
        self.assertIsNone(imported.course_id)
        self.assertEqual(imported.external_event_id, "phone-uid")
        self.assertEqual(imported.notes, "added on phone")
        self.assertEqual(len(self.store), 1)

        again = await self.run_pass()
        self.assertEqual(again.network_writes, 0)

    async def test_invalid_credential_disconnects_integration(self) -> None:
        self.store.upsert(make_session("s1"))
        self.adapter.reject_credential = True

        result = await self.run_pass()

        self.assertEqual(result.status, "disconnected")
        config = self.h.config_manager.load()
        self.assertFalse(config.caldav.connected)
        self.assertEqual(config.caldav.password, "")
        self.assertEqual(config.calendar.calendar_id, "")
        self.assertEqual(self.adapter.calls_of("create_event"), [])

        again = await self.run_pass()
        self.assertEqual(again.status, "skipped")

    async def test_transient_listing_failure_leaves_store_untouched(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        del self.adapter.events["studysync-s1"]
        self.adapter.failures["list_managed_events"] = AdapterStatus.TRANSIENT_ERROR

        result = await self.run_pass()

        self.assertEqual(result.status, "error")
        self.assertIsNotNone(self.store.get("s1"))

    async def test_failed_push_keeps_local_edit(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        self.store.upsert(self.store.get("s1").with_updates(notes="bring calculator"))
        self.adapter.failures["update_event"] = AdapterStatus.TRANSIENT_ERROR

        second = await self.run_pass()
        self.assertEqual(second.status, "partial")
        self.assertEqual(second.failed, 1)
        self.assertEqual(self.store.get("s1").notes, "bring calculator")
        self.assertNotIn("bring calculator", self.adapter.events["studysync-s1"].description)

        third = await self.run_pass()
        self.assertEqual(third.updated, 1)
        self.assertIn("bring calculator", self.adapter.events["studysync-s1"].description)

    async def test_recurring_master_synced_as_one_event(self) -> None:
        master = make_session(
            "weekly",
            recurrence={
                "rule": {"frequency": "WEEKLY", "by_weekday": ["MO"], "count": 4},
                "series_start": "2026-03-02",
                "excluded_dates": ["2026-03-09"],
                "overrides": [{"date": "2026-03-16", "attended": True, "completion_percentage": 100}],
            },
        )
        self.store.upsert(master)

        first = await self.run_pass()
        self.assertEqual(first.created, 1)
        event = self.adapter.events["studysync-weekly"]
        self.assertEqual(event.rrule, "FREQ=WEEKLY;BYDAY=MO;COUNT=4")
        self.assertEqual(event.exdates, [date(2026, 3, 9)])
        before = self.store.get("weekly").to_dict()

        second = await self.run_pass()
        self.assertEqual(second.network_writes, 0)
        self.assertEqual(self.store.get("weekly").to_dict(), before)

        instances = self.store.instances_between(date(2026, 3, 1), date(2026, 3, 31))
        self.assertEqual([item.start_date.day for item in instances], [2, 16, 23])
        self.assertTrue(instances[1].attended)

    async def test_malformed_remote_event_keeps_local_copy(self) -> None:
        self.store.upsert(make_session("s1"))
        await self.run_pass()
        event = self.adapter.events["studysync-s1"]
        self.adapter.events["studysync-s1"] = event.with_updates(end=event.start - timedelta(hours=1))

        result = await self.run_pass()

        self.assertEqual(result.status, "success")
        self.assertIsNotNone(self.store.get("s1"))
        actions = [item["action"] for item in self.h.state_store.recent_audit_events()]
        self.assertIn("skip_malformed_event", actions)

    async def test_unexpected_exception_is_recorded_as_run_error(self) -> None:
        with mock.patch.object(self.adapter, "list_managed_events", side_effect=RuntimeError("boom")):
            result = await self.run_pass()

        self.assertEqual(result.status, "error")
        self.assertIn("boom", result.message)
        actions = [item["action"] for item in self.h.state_store.recent_audit_events()]
        self.assertIn("run_error", actions)
        self.assertEqual(self.h.state_store.recent_sync_runs(limit=1)[0]["status"], "error")


class SyncCooldownTests(SyncEngineTestCase):
    config = {**TEST_CONFIG, "sync": {"cooldown_seconds": 10}}

    async def test_cooldown_skips_all_but_follow_up_passes(self) -> None:
        first = await self.run_pass()
        self.assertEqual(first.status, "success")

        self.assertEqual((await self.run_pass("timer")).status, "skipped")
        self.assertEqual((await self.run_pass("follow_up")).status, "success")
        self.assertGreater(self.h.engine.cooldown_remaining(), 0)

        self.h.now += 11
        self.assertEqual((await self.run_pass("timer")).status, "success")


if __name__ == "__main__":
    unittest.main()
