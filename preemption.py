from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from utils import format_traceback

if TYPE_CHECKING:
    from collections import abc

    from scheduler import Scheduler


logger = logging.getLogger("DropsBot")


class PreemptionFlag:
    """
    Set by the preemption evaluator, consumed by the active watch session.
    """
    def __init__(self):
        self._set: bool = False

    def __bool__(self) -> bool:
        return self._set

    def raise_flag(self) -> None:
        self._set = True

    def clear(self) -> None:
        self._set = False

    def consume(self) -> bool:
        """
        Clears the flag, returning whether it has been set.
        """
        was_set = self._set
        self._set = False
        return was_set


class PreemptionEvaluator:
    """
    Decides whether a campaign ranked above the one being processed can make progress right now.
    """
    def __init__(self, scheduler: Scheduler):
        self._scheduler: Scheduler = scheduler

    @staticmethod
    def _log_failure(message: str, exc: Exception) -> None:
        logger.error(f"{message}: {exc}")
        logger.debug(format_traceback(exc))

    async def evaluate(self, queue: abc.Iterable[str], current_campaign_id: str) -> bool:
        """
        Scans the campaigns ranked above the current one, in queue order.

        Candidates with a claimable drop get it claimed on the spot and are skipped.
        The first candidate with any eligible live stream raises the preemption flag.
        """
        scheduler = self._scheduler
        flag = scheduler.preemption
        flag.clear()
        for campaign_id in queue:
            if campaign_id == current_campaign_id:
                break
            campaign = scheduler.catalog.get(campaign_id)
            if campaign is None or not campaign.active:
                continue
            try:
                drop = await scheduler.find_unclaimed_drop(campaign_id)
            except Exception as exc:
                self._log_failure(f"Failed to get the first unclaimed drop of {campaign_id}", exc)
                continue
            if drop is None:
                continue
            try:
                inventory_drop = await scheduler.client.get_inventory_drop(drop.id, campaign_id)
            except Exception as exc:
                self._log_failure(f"Failed to read the inventory progress of {drop.id}", exc)
                continue
            if inventory_drop is not None and inventory_drop.ready_to_claim:
                try:
                    await inventory_drop.claim(scheduler.client)
                except Exception as exc:
                    self._log_failure(f"Failed to claim drop {drop.id}", exc)
                # a claimable drop doesn't need any watching
                continue
            try:
                streams = await scheduler.get_active_streams(campaign)
            except Exception as exc:
                self._log_failure(f"Campaign is not preemptable: {campaign.full_name}", exc)
                continue
            if streams:
                logger.info(f"Higher priority campaign found: {campaign.full_name}")
                flag.raise_flag()
                return True
        return False
