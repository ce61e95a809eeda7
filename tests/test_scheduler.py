import asyncio
import tempfile
import unittest
from pathlib import Path

from studysync.config_manager import ConfigManager
from studysync.models import SyncResult
from studysync.scheduler import SyncScheduler


def make_result(status: str = "success", follow_up: bool = False) -> SyncResult:
    return SyncResult(status=status, message="", duration_ms=0, trigger="test", follow_up_required=follow_up)


class FakeEngine:
    def __init__(self, *results: SyncResult) -> None:
        self.results = list(results)
        self.triggers: list[str] = []
        self.cooldown = 0.0

    async def run_sync_pass(self, trigger: str) -> SyncResult:
        self.triggers.append(trigger)
        await asyncio.sleep(0)
        return self.results.pop(0) if self.results else make_result()

    def cooldown_remaining(self) -> float:
        return self.cooldown


class SyncSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(Path(self.temp_dir.name) / "config.yaml")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    async def start(self, engine: FakeEngine, run_at_startup: bool = False) -> SyncScheduler:
        scheduler = SyncScheduler(engine, self.config_manager)
        scheduler.start(run_at_startup=run_at_startup)
        self.addAsyncCleanup(scheduler.stop)
        return scheduler

    async def test_startup_pass_is_requested(self) -> None:
        engine = FakeEngine()
        scheduler = await self.start(engine, run_at_startup=True)

        await scheduler.drain()

        self.assertEqual(engine.triggers, ["startup"])
        self.assertEqual(scheduler.last_result.status, "success")

    async def test_requests_coalesce_while_one_is_queued(self) -> None:
        engine = FakeEngine()
        scheduler = await self.start(engine)

        self.assertTrue(scheduler.request("edit"))
        self.assertFalse(scheduler.request("timer"))
        self.assertFalse(scheduler.request("focus"))
        await scheduler.drain()

        self.assertEqual(engine.triggers, ["edit"])

    async def test_follow_up_upgrades_queued_request(self) -> None:
        engine = FakeEngine()
        scheduler = await self.start(engine)

        scheduler.request("edit")
        scheduler.request("follow_up")
        await scheduler.drain()

        self.assertEqual(engine.triggers, ["follow_up"])

    async def test_follow_up_required_schedules_another_pass(self) -> None:
        engine = FakeEngine(make_result(follow_up=True), make_result())
        scheduler = await self.start(engine)

        scheduler.request("manual")
        await scheduler.drain()

        self.assertEqual(engine.triggers, ["manual", "follow_up"])

    async def test_skipped_pass_is_retried_after_cooldown(self) -> None:
        engine = FakeEngine(make_result(status="skipped"), make_result())
        engine.cooldown = 0.01
        scheduler = await self.start(engine)

        scheduler.request("edit")
        await scheduler.drain()
        await asyncio.sleep(0.05)
        await scheduler.drain()

        self.assertEqual(engine.triggers, ["edit", "edit"])

    async def test_request_validation(self) -> None:
        engine = FakeEngine()
        scheduler = SyncScheduler(engine, self.config_manager)

        self.assertFalse(scheduler.request("edit"))
        with self.assertRaises(ValueError):
            scheduler.request("whenever")
        self.assertFalse(scheduler.running)

    async def test_stop_cancels_background_tasks(self) -> None:
        engine = FakeEngine()
        scheduler = SyncScheduler(engine, self.config_manager)
        scheduler.start(run_at_startup=False)
        self.assertTrue(scheduler.running)

        await scheduler.stop()

        self.assertFalse(scheduler.running)
        self.assertFalse(scheduler.request("edit"))


if __name__ == "__main__":
    unittest.main()
