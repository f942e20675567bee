from __future__ import annotations

import logging
from time import time
from typing import TYPE_CHECKING

from constants import CALL

if TYPE_CHECKING:
    from collections import abc

    from stream import Stream
    from constants import URLType


logger = logging.getLogger("DropsBot")


class _Entry:
    __slots__ = ("failures", "expires_at")

    def __init__(self):
        self.failures: int = 0
        self.expires_at: float | None = None

    def __repr__(self) -> str:
        return f"Entry(failures={self.failures}, expires_at={self.expires_at})"


class StreamBlacklist:
    """
    Per-campaign set of streams excluded from selection after repeated or terminal failures.

    Each blacklisting lasts for `duration` seconds. Expired entries are only evicted
    by an explicit `sweep`, done at the start of every stream selection pass.
    """
    def __init__(self, *, retry_threshold: int, duration: float):
        self.retry_threshold: int = max(1, retry_threshold)
        self.duration: float = duration
        self._entries: dict[URLType, _Entry] = {}

    def __repr__(self) -> str:
        return f"StreamBlacklist({self._entries})"

    def __len__(self) -> int:
        return sum(entry.expires_at is not None for entry in self._entries.values())

    def is_eligible(self, stream_url: URLType, now: float | None = None) -> bool:
        if now is None:
            now = time()
        entry = self._entries.get(stream_url)
        return entry is None or entry.expires_at is None or entry.expires_at < now

    def failures(self, stream_url: URLType) -> int:
        entry = self._entries.get(stream_url)
        return entry.failures if entry is not None else 0

    def expires_at(self, stream_url: URLType) -> float | None:
        entry = self._entries.get(stream_url)
        return entry.expires_at if entry is not None else None

    def record_failure(self, stream_url: URLType, now: float | None = None) -> bool:
        """
        Counts a failure towards the stream. Returns True if this got the stream blacklisted.
        """
        if now is None:
            now = time()
        entry = self._entries.setdefault(stream_url, _Entry())
        entry.failures += 1
        if entry.failures >= self.retry_threshold:
            entry.expires_at = now + self.duration
            logger.error(
                f"Stream failed too many times: {stream_url}, "
                f"giving up for {round(self.duration / 60, 1)} minutes"
            )
            return True
        return False

    def record_immediate_blacklist(self, stream_url: URLType, now: float | None = None) -> None:
        if now is None:
            now = time()
        entry = self._entries.setdefault(stream_url, _Entry())
        entry.expires_at = now + self.duration
        logger.log(CALL, f"Stream blacklisted: {stream_url}")

    def sweep(self, now: float | None = None) -> None:
        """
        Evicts every blacklisting that has expired, resetting its failure counter.
        """
        if now is None:
            now = time()
        for stream_url, entry in list(self._entries.items()):
            if entry.expires_at is not None and entry.expires_at < now:
                del self._entries[stream_url]
                logger.log(CALL, f"Stream removed from the blacklist: {stream_url}")

    def filter(self, streams: abc.Iterable[Stream], now: float | None = None) -> list[Stream]:
        if now is None:
            now = time()
        return [stream for stream in streams if self.is_eligible(stream.url, now)]

    def clear(self) -> None:
        self._entries.clear()
