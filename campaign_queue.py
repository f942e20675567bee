from __future__ import annotations

import logging
from time import time
from functools import cmp_to_key
from typing import TYPE_CHECKING

from constants import MAX_INT

if TYPE_CHECKING:
    from collections import abc

    from catalog import CampaignCatalog
    from inventory import Campaign


logger = logging.getLogger("DropsBot")


def priority_index(campaign: Campaign, game_ids: abc.Sequence[str]) -> int:
    """
    Return the priority tier of the campaign's game.

    0 has the highest priority, MAX_INT is shared by all games that aren't listed.
    """
    try:
        return game_ids.index(campaign.game.id)
    except ValueError:
        return MAX_INT


def compare_campaigns(
    a: str, b: str, catalog: CampaignCatalog, game_ids: abc.Sequence[str]
) -> int:
    """
    Strict total order of pending campaign IDs:
    • listed games before unlisted ones, earlier list positions first
    • within the same tier, the campaign that ends first
    • ties broken by the ID itself
    """
    if a == b:
        return 0
    campaign_a = catalog[a]
    campaign_b = catalog[b]
    index_a = priority_index(campaign_a, game_ids)
    index_b = priority_index(campaign_b, game_ids)
    if index_a != index_b:
        return -1 if index_a < index_b else 1
    if campaign_a.ends_at != campaign_b.ends_at:
        return -1 if campaign_a.ends_at < campaign_b.ends_at else 1
    return -1 if a < b else 1


def is_enqueueable(
    campaign: Campaign,
    game_ids: abc.Sequence[str],
    ignored_game_ids: abc.Container[str],
    watch_unlisted_games: bool,
) -> bool:
    game_id = campaign.game.id
    return (
        campaign.status.is_pending()
        and game_id not in ignored_game_ids
        # no listed games means every game is wanted
        and (not game_ids or watch_unlisted_games or game_id in game_ids)
    )


class PendingQueue:
    """
    Ordered pending campaign IDs, together with the ledger of their last processing attempts.
    """
    def __init__(
        self,
        *,
        game_ids: abc.Sequence[str],
        ignored_game_ids: abc.Collection[str],
        watch_unlisted_games: bool,
        cooldown: float,
    ):
        self.game_ids: list[str] = list(game_ids)
        self.ignored_game_ids: set[str] = set(ignored_game_ids)
        self.watch_unlisted_games: bool = watch_unlisted_games
        self.cooldown: float = cooldown
        self._ids: list[str] = []
        self._attempts: dict[str, float] = {}

    def __repr__(self) -> str:
        return f"PendingQueue({self._ids})"

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> abc.Iterator[str]:
        return iter(self._ids)

    def __contains__(self, campaign_id: object) -> bool:
        return campaign_id in self._ids

    def rebuild(self, catalog: CampaignCatalog) -> None:
        """
        Replaces the queue contents with the pending campaigns of the catalog.
        """
        pending: list[str] = []
        for campaign in catalog:
            game_id = campaign.game.id
            if game_id in self.game_ids and game_id in self.ignored_game_ids:
                logger.warning(f"Game is both prioritized and ignored: {campaign.game.name}")
            if is_enqueueable(
                campaign, self.game_ids, self.ignored_game_ids, self.watch_unlisted_games
            ):
                pending.append(campaign.id)
        pending.sort(
            key=cmp_to_key(
                lambda a, b: compare_campaigns(a, b, catalog, self.game_ids)
            )
        )
        self._ids = pending
        logger.debug(f"Found {len(self._ids)} pending campaigns.")

    def record_attempt(self, campaign_id: str, now: float | None = None) -> None:
        if now is None:
            now = time()
        self._attempts[campaign_id] = now

    def last_attempt(self, campaign_id: str) -> float | None:
        return self._attempts.get(campaign_id)

    def next(self, cooldown: float | None = None, now: float | None = None) -> str | None:
        """
        Returns the first campaign that wasn't attempted within the cooldown, if any.
        """
        if cooldown is None:
            cooldown = self.cooldown
        if now is None:
            now = time()
        for campaign_id in self._ids:
            last_attempt = self._attempts.get(campaign_id)
            if last_attempt is not None and now - last_attempt < cooldown:
                continue
            return campaign_id
        return None

    def idle_delay(self, now: float | None = None) -> float:
        """
        How long until the cooldown of the longest-waiting pending campaign elapses.
        """
        if now is None:
            now = time()
        oldest_attempt = min(
            (
                attempt
                for campaign_id in self._ids
                if (attempt := self._attempts.get(campaign_id)) is not None
            ),
            default=now,
        )
        return max(0.0, self.cooldown - (now - oldest_attempt))
