import sys
import unittest
from pathlib import Path
from functools import cmp_to_key

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from constants import MAX_INT
from inventory import Campaign
from catalog import CampaignCatalog
from campaign_queue import PendingQueue, compare_campaigns, is_enqueueable, priority_index


def make_campaign(campaign_id, game_id, *, ends="2030-01-01T00:00:00Z", status="ACTIVE"):
    return Campaign({
        "id": campaign_id,
        "name": f"Campaign {campaign_id}",
        "status": status,
        "game": {"id": game_id, "name": f"Game {game_id}"},
        "startAt": "2020-01-01T00:00:00Z",
        "endAt": ends,
        "self": {"isAccountConnected": True},
    })


def make_catalog(*campaigns):
    catalog = CampaignCatalog()
    catalog.update(campaigns)
    return catalog


class TestComparator(unittest.TestCase):
    def setUp(self):
        self.catalog = make_catalog(
            make_campaign("a", "g1", ends="2030-05-01T00:00:00Z"),
            make_campaign("b", "g2", ends="2030-01-01T00:00:00Z"),
            make_campaign("c", "g3", ends="2030-03-01T00:00:00Z"),
            make_campaign("d", "g4", ends="2030-02-01T00:00:00Z"),
            make_campaign("e", "g4", ends="2030-02-01T00:00:00Z"),
        )
        self.game_ids = ["g1", "g2"]

    def cmp(self, a, b):
        return compare_campaigns(a, b, self.catalog, self.game_ids)

    def test_priority_index(self):
        self.assertEqual(priority_index(self.catalog["a"], self.game_ids), 0)
        self.assertEqual(priority_index(self.catalog["b"], self.game_ids), 1)
        self.assertEqual(priority_index(self.catalog["c"], self.game_ids), MAX_INT)

    def test_listed_position_beats_end_time(self):
        # "a" ends later, but its game is listed first
        self.assertEqual(self.cmp("a", "b"), -1)
        self.assertEqual(self.cmp("b", "a"), 1)

    def test_listed_before_unlisted(self):
        self.assertEqual(self.cmp("b", "d"), -1)
        self.assertEqual(self.cmp("a", "c"), -1)

    def test_unlisted_ordered_by_end_time(self):
        self.assertEqual(self.cmp("d", "c"), -1)
        self.assertEqual(self.cmp("c", "d"), 1)

    def test_ties_broken_by_id(self):
        self.assertEqual(self.cmp("d", "e"), -1)
        self.assertEqual(self.cmp("e", "d"), 1)
        self.assertEqual(self.cmp("e", "e"), 0)

    def test_total_order(self):
        ids = ["a", "b", "c", "d", "e"]
        for x in ids:
            for y in ids:
                if x == y:
                    continue
                # antisymmetry
                self.assertEqual(self.cmp(x, y), -self.cmp(y, x))
                for z in ids:
                    # transitivity
                    if self.cmp(x, y) < 0 and self.cmp(y, z) < 0:
                        self.assertEqual(self.cmp(x, z), -1)
        ordered = sorted(ids, key=cmp_to_key(self.cmp))
        self.assertEqual(ordered, ["a", "b", "d", "e", "c"])


class TestEnqueueable(unittest.TestCase):
    def test_unlisted_game_excluded(self):
        campaign = make_campaign("a", "g9")
        self.assertFalse(is_enqueueable(campaign, ["g1"], set(), False))
        self.assertTrue(is_enqueueable(campaign, ["g1"], set(), True))

    def test_empty_game_list_allows_everything(self):
        campaign = make_campaign("a", "g9")
        self.assertTrue(is_enqueueable(campaign, [], set(), False))

    def test_ignored_game_excluded(self):
        campaign = make_campaign("a", "g1")
        self.assertFalse(is_enqueueable(campaign, ["g1"], {"g1"}, True))

    def test_expired_excluded(self):
        campaign = make_campaign("a", "g1", status="EXPIRED")
        self.assertFalse(is_enqueueable(campaign, ["g1"], set(), True))

    def test_upcoming_included(self):
        campaign = make_campaign("a", "g1", status="UPCOMING")
        self.assertTrue(is_enqueueable(campaign, ["g1"], set(), False))


class TestPendingQueue(unittest.TestCase):
    def make_queue(self, **kwargs):
        options = {
            "game_ids": ["g1", "g2"],
            "ignored_game_ids": set(),
            "watch_unlisted_games": False,
            "cooldown": 300,
        }
        options.update(kwargs)
        return PendingQueue(**options)

    def test_rebuild_orders_and_filters(self):
        queue = self.make_queue()
        queue.rebuild(make_catalog(
            make_campaign("x", "g9"),
            make_campaign("b", "g2", ends="2030-01-01T00:00:00Z"),
            make_campaign("a", "g1", ends="2031-01-01T00:00:00Z"),
        ))
        self.assertEqual(list(queue), ["a", "b"])
        self.assertNotIn("x", queue)

    def test_rebuild_replaces_contents(self):
        queue = self.make_queue()
        queue.rebuild(make_catalog(make_campaign("a", "g1"), make_campaign("b", "g2")))
        queue.rebuild(make_catalog(make_campaign("b", "g2")))
        self.assertEqual(list(queue), ["b"])

    def test_rebuild_warns_about_conflicting_lists(self):
        queue = self.make_queue(ignored_game_ids={"g1"})
        with self.assertLogs("DropsBot", level="WARNING") as logs:
            queue.rebuild(make_catalog(make_campaign("a", "g1")))
        self.assertIn("both prioritized and ignored", logs.output[0])
        self.assertEqual(len(queue), 0)

    def test_next_respects_cooldown(self):
        queue = self.make_queue()
        queue.rebuild(make_catalog(make_campaign("a", "g1"), make_campaign("b", "g2")))
        self.assertEqual(queue.next(now=1000), "a")
        queue.record_attempt("a", now=1000)
        self.assertEqual(queue.next(now=1100), "b")
        queue.record_attempt("b", now=1100)
        self.assertIsNone(queue.next(now=1200))
        # the cooldown of "a" elapsed
        self.assertEqual(queue.next(now=1300), "a")
        self.assertEqual(queue.last_attempt("a"), 1000)

    def test_next_on_empty_queue(self):
        queue = self.make_queue()
        self.assertIsNone(queue.next(now=0))

    def test_idle_delay(self):
        queue = self.make_queue()
        queue.rebuild(make_catalog(make_campaign("a", "g1"), make_campaign("b", "g2")))
        queue.record_attempt("a", now=1000)
        queue.record_attempt("b", now=1100)
        # waits for the longest-waiting campaign, "a"
        self.assertEqual(queue.idle_delay(now=1200), 100)
        self.assertEqual(queue.idle_delay(now=2000), 0)

    def test_idle_delay_without_attempts(self):
        queue = self.make_queue()
        self.assertEqual(queue.idle_delay(now=1000), 300)


if __name__ == "__main__":
    unittest.main()
