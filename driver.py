from __future__ import annotations

import asyncio
import logging
from time import time
from abc import abstractmethod, ABCMeta
from datetime import datetime, timezone
from typing import Any, TYPE_CHECKING

from stream import Stream
from utils import task_wrapper, timestamp
from exceptions import MinerException, StreamLoadFailed
from constants import (
    CALL,
    BLANK_URL,
    WATCH_INTERVAL,
    PLAYER_STABLE_CHECKS,
    PLAYER_CHECK_INTERVAL,
)

if TYPE_CHECKING:
    from collections import abc

    from client import RemoteClient
    from constants import JsonType, URLType


logger = logging.getLogger("DropsBot")


async def wait_until_stable(
    query: abc.Callable[[], abc.Coroutine[Any, Any, Any]],
    *,
    timeout: float,
    interval: float = PLAYER_CHECK_INTERVAL.total_seconds(),
    checks: int = PLAYER_STABLE_CHECKS,
) -> Any:
    """
    Polls `query` until it returns the same non-None value `checks` times in a row.

    Raises `StreamLoadFailed` if that doesn't happen within the timeout.
    """
    deadline = time() + timeout
    last_value: Any = None
    stable_count: int = 0
    while True:
        value = await query()
        if value is not None and value == last_value:
            stable_count += 1
        else:
            stable_count = 1 if value is not None else 0
        last_value = value
        if stable_count >= checks:
            return value
        if time() + interval > deadline:
            raise StreamLoadFailed(f"Player did not stabilize within {timeout} seconds")
        await asyncio.sleep(interval)


def format_uptime(started_at: datetime, now: datetime | None = None) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    seconds = max(0, int((now - started_at).total_seconds()))
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    return f"{hours}:{minutes:02}:{seconds:02}"


class BaseSessionDriver(metaclass=ABCMeta):
    """
    Everything a watch session needs from whatever is playing the stream.
    """
    @abstractmethod
    async def navigate(self, url: URLType) -> None:
        pass

    @abstractmethod
    async def wait_for_player_stable(self, timeout: float) -> None:
        pass

    @abstractmethod
    async def dismiss_mature_content_prompt(self) -> bool:
        pass

    @abstractmethod
    async def force_lowest_quality(self) -> None:
        pass

    @abstractmethod
    async def hide_video(self) -> None:
        pass

    @abstractmethod
    async def get_viewer_count(self) -> int:
        pass

    @abstractmethod
    async def get_uptime(self) -> str:
        pass

    async def close(self) -> None:
        await self.navigate(BLANK_URL)


class HeadlessDriver(BaseSessionDriver):
    """
    Watches streams without any player, by reporting watched minutes directly.

    Since no video is ever downloaded, there's no mature content prompt to dismiss,
    nor any quality or visibility to adjust.
    """
    def __init__(self, client: RemoteClient):
        self._client: RemoteClient = client
        self._url: URLType = BLANK_URL
        self._login: str | None = None
        self._stream_info: JsonType | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self.check_interval: float = PLAYER_CHECK_INTERVAL.total_seconds()

    @property
    def url(self) -> URLType:
        return self._url

    def _stop_watching(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None

    async def navigate(self, url: URLType) -> None:
        self._stop_watching()
        self._url = url
        self._stream_info = None
        if url == BLANK_URL:
            self._login = None
            logger.log(CALL, "Navigated to a blank page")
            return
        self._login = Stream.login_from_url(url)
        logger.log(CALL, f"Navigated to: {url}")

    async def _broadcast_id(self) -> str | None:
        if self._login is None:
            raise StreamLoadFailed("Nothing to load")
        self._stream_info = await self._client.get_stream_info(self._login)
        if self._stream_info is None or self._stream_info.get("stream") is None:
            return None
        return self._stream_info["stream"]["id"]

    async def wait_for_player_stable(self, timeout: float) -> None:
        await wait_until_stable(self._broadcast_id, timeout=timeout, interval=self.check_interval)
        self._watch_task = asyncio.create_task(self._watch_loop())

    async def dismiss_mature_content_prompt(self) -> bool:
        return False

    async def force_lowest_quality(self) -> None:
        pass

    async def hide_video(self) -> None:
        pass

    async def get_viewer_count(self) -> int:
        if self._stream_info is None or self._stream_info.get("stream") is None:
            return 0
        return self._stream_info["stream"].get("viewersCount") or 0

    async def get_uptime(self) -> str:
        if self._stream_info is None or self._stream_info.get("stream") is None:
            return "?"
        created_at: str | None = self._stream_info["stream"].get("createdAt")
        if created_at is None:
            return "?"
        return format_uptime(timestamp(created_at))

    @task_wrapper
    async def _watch_loop(self) -> None:
        stream_info = self._stream_info
        if stream_info is None or stream_info.get("stream") is None:
            return
        spade_url = await self._client.get_spade_url(self._url)
        interval: float = WATCH_INTERVAL.total_seconds()
        while True:
            try:
                succeeded: bool = await self._client.send_watch(
                    spade_url,
                    broadcast_id=stream_info["stream"]["id"],
                    channel_id=stream_info["id"],
                    login=stream_info["login"],
                )
            except MinerException as exc:
                logger.warning(f"Watch request failed: {exc}")
                succeeded = False
            if succeeded:
                logger.log(CALL, f"Watch sent: {self._login}")
            else:
                logger.log(CALL, f"Watch requested failed: {self._login}")
            await asyncio.sleep(interval)
