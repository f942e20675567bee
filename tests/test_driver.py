import sys
import asyncio
import unittest
from pathlib import Path
from itertools import count
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from constants import BLANK_URL
from exceptions import StreamLoadFailed
from driver import HeadlessDriver, format_uptime, wait_until_stable


class TestWaitUntilStable(unittest.IsolatedAsyncioTestCase):
    async def test_stable_value(self):
        query = AsyncMock(side_effect=[None, "b1", "b1", "b1"])
        self.assertEqual(await wait_until_stable(query, timeout=30, interval=0), "b1")
        self.assertEqual(query.await_count, 4)

    async def test_changes_restart_the_count(self):
        query = AsyncMock(side_effect=["b1", "b1", "b2", "b2", "b2"])
        self.assertEqual(await wait_until_stable(query, timeout=30, interval=0), "b2")
        self.assertEqual(query.await_count, 5)

    async def test_timeout(self):
        query = AsyncMock(return_value=None)
        with patch("driver.time", MagicMock(side_effect=count())):
            with self.assertRaises(StreamLoadFailed):
                await wait_until_stable(query, timeout=5, interval=0)
        self.assertLess(query.await_count, 10)


class TestFormatUptime(unittest.TestCase):
    def test_format(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        started = now - timedelta(hours=2, minutes=3, seconds=4)
        self.assertEqual(format_uptime(started, now), "2:03:04")
        # clock skew never results in a negative uptime
        self.assertEqual(format_uptime(now + timedelta(seconds=5), now), "0:00:00")


class TestHeadlessDriver(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.get_stream_info = AsyncMock(return_value={
            "id": "1",
            "login": "alpha",
            "stream": {"id": "100", "viewersCount": 50, "createdAt": "2025-01-01T00:00:00Z"},
        })
        self.client.get_spade_url = AsyncMock(return_value="https://video-edge.example/spade.ts")
        self.client.send_watch = AsyncMock(return_value=True)
        self.driver = HeadlessDriver(self.client)
        self.driver.check_interval = 0

    async def asyncTearDown(self):
        await self.driver.close()

    async def test_watching(self):
        await self.driver.navigate("https://www.twitch.tv/Alpha")
        await self.driver.wait_for_player_stable(timeout=30)
        self.client.get_stream_info.assert_awaited_with("alpha")
        self.assertEqual(await self.driver.get_viewer_count(), 50)
        self.assertNotEqual(await self.driver.get_uptime(), "?")
        self.assertFalse(await self.driver.dismiss_mature_content_prompt())
        for _ in range(5):
            await asyncio.sleep(0)
        self.client.send_watch.assert_awaited_once_with(
            "https://video-edge.example/spade.ts",
            broadcast_id="100",
            channel_id="1",
            login="alpha",
        )

    async def test_offline_stream_fails_to_load(self):
        self.client.get_stream_info.return_value = {"id": "1", "login": "alpha", "stream": None}
        await self.driver.navigate("https://www.twitch.tv/alpha")
        with patch("driver.time", MagicMock(side_effect=count())):
            with self.assertRaises(StreamLoadFailed):
                await self.driver.wait_for_player_stable(timeout=5)
        self.assertEqual(await self.driver.get_viewer_count(), 0)
        self.assertEqual(await self.driver.get_uptime(), "?")

    async def test_blank_page(self):
        await self.driver.navigate(BLANK_URL)
        self.assertEqual(self.driver.url, BLANK_URL)
        with self.assertRaises(StreamLoadFailed):
            await self.driver.wait_for_player_stable(timeout=5)


if __name__ == "__main__":
    unittest.main()
