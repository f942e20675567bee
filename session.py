from __future__ import annotations

import asyncio
import logging
from enum import Enum
from time import time
from collections import deque
from typing import NamedTuple, TYPE_CHECKING

from utils import format_traceback
from exceptions import ExitRequest, StreamLoadFailed
from constants import (
    CALL,
    BLANK_URL,
    INBOX_CAPACITY,
    NO_PROGRESS_TIMEOUT,
    WATCH_POLL_INTERVAL,
    AbortReason,
)

if TYPE_CHECKING:
    from collections import abc

    from stream import Stream
    from inventory import Drop
    from renderer import RenderPayload
    from scheduler import Scheduler


logger = logging.getLogger("DropsBot")


class DropProgress(NamedTuple):
    drop_id: str
    current_minutes: int
    required_minutes: int


class SessionInbox:
    """
    Events pushed by the event source, for the watch session to consume once per poll tick.

    Pushing never blocks. Once the capacity is reached, the oldest progress events are dropped,
    as every progress event carries the full minutes value and supersedes the older ones.
    """
    def __init__(self, capacity: int = INBOX_CAPACITY):
        self._progress: deque[DropProgress] = deque(maxlen=capacity)
        self.viewers: int | None = None
        self.claim_ready: bool = False
        self.stream_down: bool = False

    def __repr__(self) -> str:
        return (
            f"SessionInbox(progress={len(self._progress)}, viewers={self.viewers}, "
            f"claim_ready={self.claim_ready}, stream_down={self.stream_down})"
        )

    def on_drop_progress(self, drop_id: str, current_minutes: int, required_minutes: int) -> None:
        self._progress.append(DropProgress(drop_id, current_minutes, required_minutes))

    def on_drop_claim(self) -> None:
        self.claim_ready = True

    def on_viewcount(self, viewers: int) -> None:
        self.viewers = viewers

    def on_stream_down(self) -> None:
        self.stream_down = True

    def drain_progress(self) -> list[DropProgress]:
        events = list(self._progress)
        self._progress.clear()
        return events

    def reset(self) -> None:
        self._progress.clear()
        self.viewers = None
        self.claim_ready = False
        self.stream_down = False


class SessionState(Enum):
    LOADING = "loading"
    WATCHING = "watching"
    CLAIMED = "claimed"
    ABORTED = "aborted"


class SessionResult:
    __slots__ = ("claimed", "reason", "error")

    def __init__(
        self,
        *,
        claimed: bool = False,
        reason: AbortReason | None = None,
        error: Exception | None = None,
    ):
        self.claimed: bool = claimed
        self.reason: AbortReason | None = reason
        self.error: Exception | None = error

    def __repr__(self) -> str:
        if self.reason is not None:
            return f"SessionResult(aborted={self.reason.name})"
        return f"SessionResult(claimed={self.claimed})"

    @classmethod
    def finished(cls, *, claimed: bool = False) -> SessionResult:
        return cls(claimed=claimed)

    @classmethod
    def aborted(cls, reason: AbortReason, error: Exception | None = None) -> SessionResult:
        return cls(reason=reason, error=error)

    @property
    def ok(self) -> bool:
        return self.reason is None


class WatchSession:
    """
    Watches a single stream until the target drop gets claimed, or the session has to abort.

    Without a target drop, the stream is watched until `should_stop` says otherwise,
    with no progress tracking involved.
    """
    def __init__(
        self,
        scheduler: Scheduler,
        stream: Stream,
        target_drop: Drop | None = None,
        *,
        should_stop: abc.Callable[[], bool] | None = None,
    ):
        self._scheduler: Scheduler = scheduler
        self.stream: Stream = stream
        self.target_drop: Drop | None = target_drop
        self._should_stop = should_stop
        self.state: SessionState = SessionState.LOADING
        # the authoritative record of the tracked drop, used for display
        self._display_drop: Drop | None = target_drop
        self._viewers: int = stream.viewers

    def __repr__(self) -> str:
        return f"WatchSession({self.stream.name}, {self.state.name})"

    async def _tick(self) -> None:
        await asyncio.sleep(WATCH_POLL_INTERVAL.total_seconds())

    async def _finish_claimed(self, drop: Drop) -> SessionResult:
        claimed = await drop.claim(self._scheduler.client)
        await self._scheduler.driver.navigate(BLANK_URL)
        self.state = SessionState.CLAIMED
        return SessionResult.finished(claimed=claimed)

    async def _abort(self, reason: AbortReason, *, leave: bool = True) -> SessionResult:
        if leave:
            await self._scheduler.driver.navigate(BLANK_URL)
        self.state = SessionState.ABORTED
        return SessionResult.aborted(reason)

    async def run(self) -> SessionResult:
        scheduler = self._scheduler
        scheduler.inbox.reset()
        try:
            await scheduler.events.attach(self.stream, scheduler.inbox)
            if self.target_drop is not None:
                initial = await self._seed_progress(self.target_drop)
                if initial is not None and initial.ready_to_claim:
                    # nothing left to watch
                    logger.info(f"Drop is ready to claim already: {initial.reward_name}")
                    return await self._finish_claimed(initial)
            try:
                await self._load()
            except StreamLoadFailed as exc:
                logger.warning(f"Stream failed to load: {self.stream.name}: {exc}")
                return await self._abort(AbortReason.LOAD_FAILED)
            self.state = SessionState.WATCHING
            return await self._watch()
        except ExitRequest:
            raise
        except Exception as exc:
            logger.error(f"Watch session error: {self.stream.name}: {exc}")
            logger.debug(format_traceback(exc))
            self.state = SessionState.ABORTED
            return SessionResult.aborted(AbortReason.ERROR, exc)
        finally:
            await scheduler.events.detach()
            scheduler.renderer.clear()

    async def _seed_progress(self, drop: Drop) -> Drop | None:
        scheduler = self._scheduler
        inventory_drop = await scheduler.client.get_inventory_drop(drop.id, drop.campaign_id)
        if inventory_drop is not None:
            scheduler.tracker.reset(drop.id, inventory_drop.current_minutes, now=time())
            self._display_drop = inventory_drop
        else:
            scheduler.tracker.reset(drop.id, now=time())
        return inventory_drop

    async def _load(self) -> None:
        scheduler = self._scheduler
        driver = scheduler.driver
        logger.info(f"Watching: {self.stream.name}")
        await driver.navigate(self.stream.url)
        await driver.wait_for_player_stable(scheduler.settings.load_timeout_seconds)
        try:
            if await driver.dismiss_mature_content_prompt():
                logger.log(CALL, "Dismissed the mature content prompt")
        except Exception as exc:
            # the prompt is optional, failing to dismiss it doesn't prevent watching
            logger.log(CALL, f"Mature content prompt not dismissed: {exc}")
        try:
            await driver.force_lowest_quality()
        except Exception:
            logger.error("Failed to set the stream to the lowest quality!")
            raise
        if scheduler.settings.hide_video:
            try:
                await driver.hide_video()
            except Exception:
                logger.error("Failed to hide the video!")
                raise
        self._viewers = await driver.get_viewer_count()

    async def _payload(self) -> RenderPayload:
        payload: RenderPayload = {
            "stream": self.stream.name,
            "viewers": self._viewers,
            "uptime": await self._scheduler.driver.get_uptime(),
        }
        if self._display_drop is not None:
            payload["drop"] = self._display_drop.reward_name
        return payload

    async def _apply_progress(self) -> None:
        scheduler = self._scheduler
        inbox = scheduler.inbox
        if inbox.viewers is not None:
            self._viewers = inbox.viewers
        for event in inbox.drain_progress():
            if not scheduler.tracker.on_progress(event.drop_id, event.current_minutes, now=time()):
                continue
            # progress went towards a different drop, follow it
            drop = await scheduler.client.get_inventory_drop(event.drop_id)
            if drop is None:
                logger.error(f"Progressed drop not found in the inventory: {event.drop_id}")
                continue
            self._display_drop = drop
            scheduler.renderer.start(
                drop.required_minutes, event.current_minutes, await self._payload()
            )

    async def _watch(self) -> SessionResult:
        scheduler = self._scheduler
        inbox = scheduler.inbox
        tracker = scheduler.tracker
        stall_timeout: float = NO_PROGRESS_TIMEOUT.total_seconds()
        if self._display_drop is not None:
            scheduler.renderer.start(
                self._display_drop.required_minutes,
                tracker.current_minutes(),
                await self._payload(),
            )
        while True:
            if self.target_drop is not None:
                await self._apply_progress()
            elif inbox.viewers is not None:
                self._viewers = inbox.viewers
            if inbox.stream_down:
                logger.info(f"Stream went down: {self.stream.name}")
                return await self._abort(AbortReason.STREAM_DOWN)
            if self.target_drop is not None and tracker.stalled(stall_timeout, now=time()):
                if not await self._reconcile():
                    logger.warning(
                        "No progress was detected in the last "
                        f"{int(stall_timeout // 60)} minutes!"
                    )
                    return await self._abort(AbortReason.NO_PROGRESS)
            # checked ahead of a pending claim, which the next session picks up while seeding
            if scheduler.preemption.consume():
                logger.info("Switching to a higher priority campaign")
                return await self._abort(AbortReason.HIGH_PRIORITY, leave=False)
            if self.target_drop is None:
                if self._should_stop is not None and self._should_stop():
                    await scheduler.driver.navigate(BLANK_URL)
                    return SessionResult.finished()
            elif inbox.claim_ready:
                inbox.claim_ready = False
                drop_id = tracker.target_id or self.target_drop.id
                drop = await scheduler.client.get_inventory_drop(drop_id)
                if drop is None:
                    # already claimed, nothing else to do
                    logger.info(f"Drop no longer in the inventory: {drop_id}")
                    await scheduler.driver.navigate(BLANK_URL)
                    return SessionResult.finished()
                return await self._finish_claimed(drop)
            else:
                scheduler.renderer.update(tracker.current_minutes(), await self._payload())
            await self._tick()

    async def _reconcile(self) -> bool:
        """
        Checks the inventory for any progress the event source might have missed.
        """
        tracker = self._scheduler.tracker
        drop_id = tracker.target_id
        if drop_id is None:
            return False
        drop = await self._scheduler.client.get_inventory_drop(drop_id)
        if drop is None:
            return False
        return tracker.reconcile(drop.current_minutes, now=time())
