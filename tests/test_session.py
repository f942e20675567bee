import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from stream import Stream
from inventory import Drop
from progress import ProgressTracker
from preemption import PreemptionFlag
from exceptions import StreamLoadFailed
from constants import BLANK_URL, AbortReason
from session import SessionInbox, SessionResult, SessionState, WatchSession


START = 10000.0


def drop_data(drop_id, *, required=30, current=None, instance_id=None):
    data = {
        "id": drop_id,
        "name": f"Drop {drop_id}",
        "startAt": "2020-01-01T00:00:00Z",
        "endAt": "2040-01-01T00:00:00Z",
        "requiredMinutesWatched": required,
        "benefitEdges": [{"benefit": {"id": f"b-{drop_id}", "name": f"Reward {drop_id}"}}],
    }
    if current is not None:
        data["self"] = {"currentMinutesWatched": current, "dropInstanceID": instance_id}
    return data


def record(drop_id, current, *, required=30):
    return Drop("c1", drop_data(drop_id, required=required, current=current, instance_id=f"i-{drop_id}"))


class Clock:
    def __init__(self):
        self.now = START
        # elapsed seconds -> callable
        self.actions = {}

    def __call__(self):
        return self.now

    def tick(self):
        self.now += 1
        elapsed = int(self.now - START)
        if elapsed > 5000:
            raise RuntimeError("Session never finished")
        action = self.actions.get(elapsed)
        if action is not None:
            action()


def make_scheduler():
    scheduler = MagicMock()
    scheduler.settings.load_timeout_seconds = 30
    scheduler.settings.hide_video = False
    scheduler.tracker = ProgressTracker()
    scheduler.inbox = SessionInbox()
    scheduler.preemption = PreemptionFlag()
    scheduler.client.get_inventory_drop = AsyncMock(return_value=None)
    scheduler.client.claim_drop = AsyncMock(return_value=True)
    scheduler.client.generate_claim_id = AsyncMock(return_value="generated")
    scheduler.driver = AsyncMock()
    scheduler.driver.dismiss_mature_content_prompt.return_value = False
    scheduler.driver.get_viewer_count.return_value = 100
    scheduler.driver.get_uptime.return_value = "1:00:00"
    scheduler.events = AsyncMock()
    scheduler.renderer = MagicMock()
    return scheduler


class TestSessionInbox(unittest.TestCase):
    def test_progress_is_drained(self):
        inbox = SessionInbox()
        inbox.on_drop_progress("d1", 1, 30)
        inbox.on_drop_progress("d1", 2, 30)
        self.assertEqual([event.current_minutes for event in inbox.drain_progress()], [1, 2])
        self.assertEqual(inbox.drain_progress(), [])

    def test_capacity_drops_oldest(self):
        inbox = SessionInbox(capacity=2)
        for minutes in range(5):
            inbox.on_drop_progress("d1", minutes, 30)
        self.assertEqual([event.current_minutes for event in inbox.drain_progress()], [3, 4])

    def test_reset(self):
        inbox = SessionInbox()
        inbox.on_viewcount(10)
        inbox.on_drop_claim()
        inbox.on_stream_down()
        inbox.reset()
        self.assertIsNone(inbox.viewers)
        self.assertFalse(inbox.claim_ready)
        self.assertFalse(inbox.stream_down)


class TestSessionResult(unittest.TestCase):
    def test_variants(self):
        self.assertTrue(SessionResult.finished().ok)
        self.assertTrue(SessionResult.finished(claimed=True).claimed)
        aborted = SessionResult.aborted(AbortReason.NO_PROGRESS)
        self.assertFalse(aborted.ok)
        self.assertIs(aborted.reason, AbortReason.NO_PROGRESS)


class TestWatchSession(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = Clock()
        patcher = patch("session.time", self.clock)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.scheduler = make_scheduler()
        self.stream = Stream(broadcaster_id=1, login="alpha", viewers=5)
        self.target = Drop("c1", drop_data("d1"))

    def make_session(self, target=None, **kwargs):
        session = WatchSession(
            self.scheduler, self.stream, target if target is not None else self.target, **kwargs
        )
        session._tick = AsyncMock(side_effect=self.clock.tick)
        return session

    async def test_ready_record_claims_without_watching(self):
        self.scheduler.client.get_inventory_drop.return_value = record("d1", 30)
        session = self.make_session()
        result = await session.run()
        self.assertTrue(result.claimed)
        self.assertIs(session.state, SessionState.CLAIMED)
        self.scheduler.client.claim_drop.assert_awaited_once_with("i-d1")
        self.scheduler.driver.wait_for_player_stable.assert_not_awaited()
        self.scheduler.driver.navigate.assert_awaited_once_with(BLANK_URL)
        self.assertEqual(self.clock.now, START)

    async def test_no_progress_aborts_at_stall_threshold(self):
        self.scheduler.client.get_inventory_drop.return_value = record("d1", 10)
        session = self.make_session()
        with self.assertLogs("DropsBot", level="WARNING"):
            result = await session.run()
        self.assertIs(result.reason, AbortReason.NO_PROGRESS)
        self.assertEqual(self.clock.now - START, 300)
        # seeding, then a single reconciliation
        self.assertEqual(self.scheduler.client.get_inventory_drop.await_count, 2)
        self.scheduler.driver.navigate.assert_awaited_with(BLANK_URL)

    async def test_reconciliation_extends_the_session(self):
        records = iter([record("d1", 10), record("d1", 11)])
        self.scheduler.client.get_inventory_drop.side_effect = (
            lambda *args: next(records, record("d1", 11))
        )
        session = self.make_session()
        result = await session.run()
        self.assertIs(result.reason, AbortReason.NO_PROGRESS)
        self.assertEqual(self.clock.now - START, 600)

    async def test_events_keep_the_session_alive(self):
        self.scheduler.client.get_inventory_drop.return_value = record("d1", 10)
        inbox = self.scheduler.inbox
        for minute in range(1, 8):
            self.clock.actions[minute * 60] = (
                lambda minute=minute: inbox.on_drop_progress("d1", 10 + minute, 30)
            )
        session = self.make_session()
        result = await session.run()
        self.assertIs(result.reason, AbortReason.NO_PROGRESS)
        # last progress at 7 minutes, so the stall happens 5 minutes after that
        self.assertEqual(self.clock.now - START, 7 * 60 + 300)

    async def test_stream_down(self):
        self.scheduler.client.get_inventory_drop.return_value = record("d1", 10)
        self.clock.actions[3] = self.scheduler.inbox.on_stream_down
        session = self.make_session()
        result = await session.run()
        self.assertIs(result.reason, AbortReason.STREAM_DOWN)
        self.assertIs(session.state, SessionState.ABORTED)
        self.assertEqual(self.clock.now - START, 3)
        self.scheduler.driver.navigate.assert_awaited_with(BLANK_URL)
        self.scheduler.events.attach.assert_awaited_once_with(self.stream, self.scheduler.inbox)
        self.scheduler.events.detach.assert_awaited_once()

    async def test_stream_down_has_priority_over_stall(self):
        self.scheduler.client.get_inventory_drop.return_value = record("d1", 10)
        self.clock.actions[300] = self.scheduler.inbox.on_stream_down
        result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.STREAM_DOWN)

    async def test_preemption(self):
        self.clock.actions[2] = self.scheduler.preemption.raise_flag
        result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.HIGH_PRIORITY)
        self.assertFalse(self.scheduler.preemption)

    async def test_preemption_is_checked_before_claim_ready(self):
        def both():
            self.scheduler.inbox.on_drop_claim()
            self.scheduler.preemption.raise_flag()

        self.clock.actions[2] = both
        result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.HIGH_PRIORITY)
        self.scheduler.client.claim_drop.assert_not_awaited()

    async def test_claim_ready(self):
        inbox = self.scheduler.inbox
        records = iter([record("d1", 29), record("d1", 30)])
        self.scheduler.client.get_inventory_drop.side_effect = lambda *args: next(records)

        def finish():
            inbox.on_drop_progress("d1", 30, 30)
            inbox.on_drop_claim()

        self.clock.actions[60] = finish
        session = self.make_session()
        result = await session.run()
        self.assertTrue(result.claimed)
        self.assertIs(session.state, SessionState.CLAIMED)
        self.scheduler.client.claim_drop.assert_awaited_once_with("i-d1")
        self.scheduler.driver.navigate.assert_awaited_with(BLANK_URL)

    async def test_claim_ready_without_record(self):
        records = iter([record("d1", 29), None])
        self.scheduler.client.get_inventory_drop.side_effect = lambda *args: next(records)
        self.clock.actions[5] = self.scheduler.inbox.on_drop_claim
        result = await self.make_session().run()
        self.assertTrue(result.ok)
        self.assertFalse(result.claimed)
        self.scheduler.client.claim_drop.assert_not_awaited()

    async def test_load_failure(self):
        self.scheduler.driver.wait_for_player_stable.side_effect = StreamLoadFailed("timeout")
        session = self.make_session()
        with self.assertLogs("DropsBot", level="WARNING"):
            result = await session.run()
        self.assertIs(result.reason, AbortReason.LOAD_FAILED)
        self.scheduler.events.detach.assert_awaited_once()

    async def test_quality_failure_is_fatal(self):
        error = RuntimeError("no quality menu")
        self.scheduler.driver.force_lowest_quality.side_effect = error
        with self.assertLogs("DropsBot", level="ERROR"):
            result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.ERROR)
        self.assertIs(result.error, error)

    async def test_hide_video_failure_is_fatal(self):
        self.scheduler.settings.hide_video = True
        self.scheduler.driver.hide_video.side_effect = RuntimeError("no video")
        with self.assertLogs("DropsBot", level="ERROR"):
            result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.ERROR)

    async def test_mature_prompt_failure_is_ignored(self):
        self.scheduler.driver.dismiss_mature_content_prompt.side_effect = RuntimeError("gone")
        self.clock.actions[1] = self.scheduler.inbox.on_stream_down
        result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.STREAM_DOWN)

    async def test_progress_towards_another_drop_switches_target(self):
        inbox = self.scheduler.inbox
        client = self.scheduler.client
        client.get_inventory_drop.side_effect = (
            lambda drop_id, *args: record(drop_id, 10 if drop_id == "d1" else 6, required=60)
        )
        self.clock.actions[30] = lambda: inbox.on_drop_progress("d2", 5, 60)
        self.clock.actions[90] = lambda: inbox.on_drop_progress("d2", 6, 60)
        self.clock.actions[95] = inbox.on_stream_down
        result = await self.make_session().run()
        self.assertIs(result.reason, AbortReason.STREAM_DOWN)
        self.assertEqual(self.scheduler.tracker.target_id, "d2")
        client.get_inventory_drop.assert_any_await("d2")
        # rendering restarted for the new target
        self.assertEqual(self.scheduler.renderer.start.call_count, 2)
        self.assertEqual(self.scheduler.renderer.start.call_args.args[:2], (60, 6))

    async def test_untracked_session_stops_on_request(self):
        stop = MagicMock(side_effect=lambda: self.clock.now - START >= 10)
        session = WatchSession(self.scheduler, self.stream, should_stop=stop)
        session._tick = AsyncMock(side_effect=self.clock.tick)
        result = await session.run()
        self.assertTrue(result.ok)
        self.assertEqual(self.clock.now - START, 10)
        self.scheduler.client.get_inventory_drop.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
