from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Any, TYPE_CHECKING

from utils import task_wrapper
from exceptions import ExitRequest
from constants import CALL

if TYPE_CHECKING:
    from collections import abc

    from client import RemoteClient
    from inventory import Campaign
    from scheduler import Scheduler


logger = logging.getLogger("DropsBot")


class CampaignCatalog:
    """
    Mapping of campaign IDs to the most recent campaign snapshots.

    The whole mapping is superseded on every update, campaigns are never mutated.
    """
    def __init__(self):
        self._campaigns: dict[str, Campaign] = {}
        self.updated_at: datetime | None = None

    def __repr__(self) -> str:
        return f"CampaignCatalog({len(self._campaigns)} campaigns)"

    def __len__(self) -> int:
        return len(self._campaigns)

    def __contains__(self, campaign_id: object) -> bool:
        return campaign_id in self._campaigns

    def __getitem__(self, campaign_id: str) -> Campaign:
        return self._campaigns[campaign_id]

    def __iter__(self) -> abc.Iterator[Campaign]:
        return iter(self._campaigns.values())

    @property
    def ready(self) -> bool:
        return self.updated_at is not None

    def get(self, campaign_id: str) -> Campaign | None:
        return self._campaigns.get(campaign_id)

    def update(self, campaigns: abc.Iterable[Campaign]) -> None:
        # only campaigns that are currently not expired are of any interest
        self._campaigns = {
            campaign.id: campaign for campaign in campaigns if campaign.status.is_pending()
        }
        self.updated_at = datetime.now(timezone.utc)


class CampaignWatchdog:
    """
    Periodically fetches the list of drop campaigns and reports it through the callbacks.
    """
    def __init__(
        self,
        scheduler: Scheduler,
        interval: timedelta,
        *,
        on_refresh: abc.Callable[[list[Campaign]], abc.Coroutine[Any, Any, None]],
        on_error: abc.Callable[[Exception], None],
        before_update: abc.Callable[[], None] | None = None,
    ):
        self._scheduler: Scheduler = scheduler
        self._client: RemoteClient = scheduler.client
        self._interval: timedelta = interval
        self._on_refresh = on_refresh
        self._on_error = on_error
        self._before_update = before_update
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def trigger(self) -> None:
        """
        Requests the next update to happen right away.
        """
        self._wake.set()

    async def update(self) -> None:
        if self._before_update is not None:
            self._before_update()
        logger.debug("Updating drop campaigns...")
        try:
            campaigns: list[Campaign] = await self._client.get_campaigns()
        except ExitRequest:
            raise
        except Exception as exc:
            self._on_error(exc)
            return
        logger.debug(f"Found {len(campaigns)} campaigns.")
        try:
            await self._on_refresh(campaigns)
        except ExitRequest:
            raise
        except Exception:
            logger.exception("Error while processing the campaigns update")

    @task_wrapper(critical=True)
    async def _run(self) -> None:
        interval: float = self._interval.total_seconds()
        while True:
            await self.update()
            logger.log(
                CALL,
                "Campaign watchdog waiting until: "
                f"{(datetime.now() + self._interval).strftime('%X')}"
            )
            self._wake.clear()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
