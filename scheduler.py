from __future__ import annotations

import asyncio
import logging
from time import time
from datetime import timedelta
from typing import TYPE_CHECKING

from inventory import Game
from utils import Notifier, format_traceback
from session import SessionInbox, WatchSession
from progress import ProgressTracker
from blacklist import StreamBlacklist
from exceptions import ExitRequest
from campaign_queue import PendingQueue
from catalog import CampaignCatalog, CampaignWatchdog
from preemption import PreemptionEvaluator, PreemptionFlag
from constants import (
    CALL,
    BLANK_URL,
    ATTEMPT_COOLDOWN,
    AbortReason,
    CampaignOutcome,
)

if TYPE_CHECKING:
    from stream import Stream
    from client import RemoteClient
    from settings import Settings
    from driver import BaseSessionDriver
    from renderer import BaseRenderer
    from session import SessionResult
    from websocket import PubSubEventSource
    from inventory import Campaign, CampaignDetails, Drop


logger = logging.getLogger("DropsBot")


class Scheduler:
    """
    Picks campaigns off the pending queue and drives watch sessions until their drops are claimed.
    """
    def __init__(
        self,
        settings: Settings,
        client: RemoteClient,
        driver: BaseSessionDriver,
        renderer: BaseRenderer,
        events: PubSubEventSource,
    ):
        self.settings: Settings = settings
        self.client: RemoteClient = client
        self.driver: BaseSessionDriver = driver
        self.renderer: BaseRenderer = renderer
        self.events: PubSubEventSource = events
        self.catalog = CampaignCatalog()
        self.queue = PendingQueue(
            game_ids=settings.game_ids,
            ignored_game_ids=settings.ignored_game_ids,
            watch_unlisted_games=settings.watch_unlisted_games,
            cooldown=ATTEMPT_COOLDOWN.total_seconds(),
        )
        self.tracker = ProgressTracker()
        self.inbox = SessionInbox()
        self.preemption = PreemptionFlag()
        self.evaluator = PreemptionEvaluator(self)
        self.watchdog = CampaignWatchdog(
            self,
            timedelta(minutes=settings.polling_interval),
            on_refresh=self.on_refresh,
            on_error=self.on_refresh_error,
            before_update=renderer.stop,
        )
        self.current_campaign_id: str | None = None
        self._notifier = Notifier()
        self._closed = asyncio.Event()
        # bumped on every catalog refresh
        self._generation: int = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """
        Requests the scheduler to stop. The active watch session aborts on its next tick.
        """
        self._closed.set()
        self.preemption.raise_flag()
        self._notifier.notify_all()

    async def on_refresh(self, campaigns: list[Campaign]) -> None:
        self.catalog.update(campaigns)
        self.queue.rebuild(self.catalog)
        campaign_id = self.current_campaign_id
        if campaign_id is not None and not self.closed:
            await self.evaluator.evaluate(list(self.queue), campaign_id)
            if self.current_campaign_id != campaign_id and not self.closed:
                # the evaluated campaign has finished in the meantime
                self.preemption.clear()
        self._generation += 1
        self._notifier.notify_all()
        self.renderer.resume()

    def on_refresh_error(self, exc: Exception) -> None:
        logger.error(f"Error checking drop campaigns: {exc}")
        logger.debug(format_traceback(exc))
        self.renderer.resume()

    async def run(self) -> None:
        self.watchdog.start()
        try:
            if not self.catalog.ready:
                await self._notifier.wait()
            while not self.closed:
                campaign_id = self.queue.next()
                if campaign_id is None:
                    await self.idle()
                    continue
                self.current_campaign_id = campaign_id
                try:
                    outcome = await self.process_campaign(campaign_id)
                except ExitRequest:
                    raise
                except Exception as exc:
                    logger.error(f"Failed to process campaign {campaign_id}: {exc}")
                    logger.debug(format_traceback(exc))
                    outcome = CampaignOutcome.FAILED
                finally:
                    self.current_campaign_id = None
                    # a flag left unconsumed was meant for the finished campaign
                    self.preemption.clear()
                logger.log(CALL, f"Campaign {campaign_id} outcome: {outcome.name}")
        finally:
            await self.watchdog.stop()

    async def idle(self) -> None:
        if self.settings.watch_streams_when_no_campaigns and await self.watch_fallback():
            return
        await self.driver.navigate(BLANK_URL)
        if self.closed:
            return
        delay = self.queue.idle_delay()
        logger.info(
            f"No campaigns active/streams online. Checking again in {delay / 60:.1f} minutes."
        )
        await self._notifier.wait(timeout=delay)

    async def watch_fallback(self) -> bool:
        """
        Watches a stream of the fallback game, until there's a campaign to process.

        Returns False if there was nothing to watch.
        """
        game = Game({"id": '', "name": self.settings.fallback_game})
        streams = await self.client.get_live_streams(game, drops_enabled=False)
        if not streams:
            logger.info(f"No live streams found for the fallback game: {game.name}")
            return False
        generation = self._generation
        session = WatchSession(
            self,
            streams[0],
            should_stop=lambda: (
                self._generation != generation and self.queue.next() is not None
            ),
        )
        logger.info(f"Watching a fallback stream: {streams[0].name}")
        await session.run()
        return True

    async def find_unclaimed_drop(
        self, campaign_id: str, details: CampaignDetails | None = None
    ) -> Drop | None:
        if details is None:
            details = await self.client.get_campaign_details(campaign_id)
        inventory = await self.client.get_inventory()
        return inventory.first_unclaimed_drop(details.drops)

    async def get_active_streams(
        self, campaign: Campaign, details: CampaignDetails | None = None
    ) -> list[Stream]:
        """
        Live streams of the campaign's game, restricted to the campaign's allowed channels.
        """
        if details is None:
            details = await self.client.get_campaign_details(campaign.id)
        streams = await self.client.get_live_streams(campaign.game)
        return [stream for stream in streams if details.allows(stream.broadcaster_id)]

    def _expired(self, campaign: Campaign) -> bool:
        # refreshes drop campaigns that went past their end time
        current = self.catalog.get(campaign.id)
        if current is None or not current.active:
            logger.info(f"Campaign is no longer active: {campaign.full_name}")
            return True
        return False

    async def process_campaign(self, campaign_id: str) -> CampaignOutcome:
        campaign = self.catalog[campaign_id]
        logger.info(f"Processing campaign: {campaign.full_name}")
        self.queue.record_attempt(campaign_id)
        if not campaign.active:
            logger.info(f"Campaign is not active: {campaign.full_name}")
            return CampaignOutcome.INACTIVE
        if not campaign.linked and self.settings.show_account_not_linked_warning:
            logger.warning(f"Account is not linked for campaign: {campaign.full_name}")
        details = await self.client.get_campaign_details(campaign_id)
        while not self.closed:
            if self._expired(campaign):
                return CampaignOutcome.INACTIVE
            drop = await self.find_unclaimed_drop(campaign_id, details)
            if drop is None:
                logger.info(f"No more drops to watch for: {campaign.full_name}")
                return CampaignOutcome.COMPLETED
            inventory_drop = await self.client.get_inventory_drop(drop.id, campaign_id)
            if inventory_drop is not None and inventory_drop.ready_to_claim:
                if not await inventory_drop.claim(self.client):
                    return CampaignOutcome.FAILED
                continue
            outcome = await self.process_drop(campaign, details, drop)
            if outcome is not None:
                return outcome
        raise ExitRequest()

    async def process_drop(
        self, campaign: Campaign, details: CampaignDetails, drop: Drop
    ) -> CampaignOutcome | None:
        """
        Watches streams until the drop is done with. Returns None if the next drop can be worked on.

        Every drop starts with a clean blacklist.
        """
        logger.info(f"Working on drop: {drop.reward_name}")
        blacklist = StreamBlacklist(
            retry_threshold=self.settings.failed_stream_retry_count,
            duration=self.settings.failed_stream_blacklist_timeout * 60,
        )
        while not self.closed:
            if self._expired(campaign):
                return CampaignOutcome.INACTIVE
            streams = await self.get_active_streams(campaign, details)
            logger.info(f"Found {len(streams)} active streams")
            now = time()
            blacklist.sweep(now)
            streams = blacklist.filter(streams, now)
            logger.info(f"Found {len(streams)} good streams")
            if not streams:
                logger.info(f"No streams to watch for: {campaign.full_name}")
                return CampaignOutcome.NO_STREAMS
            stream = streams[0]
            result = await self.watch(stream, drop)
            if result.ok:
                return None
            if result.reason is AbortReason.HIGH_PRIORITY:
                if self.closed:
                    break
                return CampaignOutcome.PREEMPTED
            elif result.reason is AbortReason.STREAM_DOWN:
                blacklist.record_immediate_blacklist(stream.url)
            else:
                blacklist.record_failure(stream.url)
        raise ExitRequest()

    async def watch(self, stream: Stream, drop: Drop) -> SessionResult:
        return await WatchSession(self, stream, drop).run()
