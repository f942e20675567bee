import sys
import asyncio
import unittest
from pathlib import Path
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from inventory import Campaign
from exceptions import ExitRequest
from catalog import CampaignCatalog, CampaignWatchdog


def make_campaign(campaign_id, status="ACTIVE"):
    return Campaign({
        "id": campaign_id,
        "name": campaign_id,
        "status": status,
        "game": {"id": "g1", "name": "Game"},
        "endAt": "2040-01-01T00:00:00Z",
    })


class TestCampaignCatalog(unittest.TestCase):
    def test_update_keeps_pending_campaigns(self):
        catalog = CampaignCatalog()
        self.assertFalse(catalog.ready)
        catalog.update([
            make_campaign("a"),
            make_campaign("b", "UPCOMING"),
            make_campaign("c", "EXPIRED"),
        ])
        self.assertTrue(catalog.ready)
        self.assertEqual(len(catalog), 2)
        self.assertIn("a", catalog)
        self.assertNotIn("c", catalog)
        self.assertIsNone(catalog.get("c"))
        self.assertEqual({campaign.id for campaign in catalog}, {"a", "b"})

    def test_update_supersedes_previous_snapshot(self):
        catalog = CampaignCatalog()
        old = make_campaign("a")
        catalog.update([old])
        catalog.update([make_campaign("a"), make_campaign("b")])
        self.assertIsNot(catalog["a"], old)
        catalog.update([])
        self.assertEqual(len(catalog), 0)
        self.assertTrue(catalog.ready)


class TestCampaignWatchdog(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.scheduler = MagicMock()
        self.campaigns = [make_campaign("a")]
        self.scheduler.client.get_campaigns = AsyncMock(return_value=self.campaigns)
        self.on_refresh = AsyncMock()
        self.on_error = MagicMock()
        self.before_update = MagicMock()
        self.watchdog = CampaignWatchdog(
            self.scheduler,
            timedelta(minutes=15),
            on_refresh=self.on_refresh,
            on_error=self.on_error,
            before_update=self.before_update,
        )

    async def test_update(self):
        await self.watchdog.update()
        self.before_update.assert_called_once()
        self.on_refresh.assert_awaited_once_with(self.campaigns)
        self.on_error.assert_not_called()

    async def test_fetch_error(self):
        error = RuntimeError("service error")
        self.scheduler.client.get_campaigns.side_effect = error
        await self.watchdog.update()
        self.on_error.assert_called_once_with(error)
        self.on_refresh.assert_not_awaited()

    async def test_refresh_error_is_logged(self):
        self.on_refresh.side_effect = KeyError("id")
        with self.assertLogs("DropsBot", level="ERROR"):
            await self.watchdog.update()

    async def test_exit_request_propagates(self):
        self.scheduler.client.get_campaigns.side_effect = ExitRequest()
        with self.assertRaises(ExitRequest):
            await self.watchdog.update()
        self.on_error.assert_not_called()

    async def test_task_refreshes_on_trigger(self):
        self.watchdog.start()
        self.assertTrue(self.watchdog.running)
        # let the first update happen
        for _ in range(20):
            await asyncio.sleep(0)
        self.assertEqual(self.on_refresh.await_count, 1)
        self.watchdog.trigger()
        for _ in range(20):
            await asyncio.sleep(0)
        self.assertEqual(self.on_refresh.await_count, 2)
        await self.watchdog.stop()
        self.assertFalse(self.watchdog.running)


if __name__ == "__main__":
    unittest.main()
