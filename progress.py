from __future__ import annotations

import logging
from time import time

from constants import CALL


logger = logging.getLogger("DropsBot")


class ProgressTracker:
    """
    Keeps track of the watched minutes of every drop seen during a watch session.

    A single stream can end up progressing a different drop than the one the session
    intended to progress, so the tracked target follows whichever drop actually progresses.
    """
    def __init__(self):
        self.target_id: str | None = None
        self._current: dict[str, int] = {}
        self._last: dict[str, int] = {}
        self._last_progress: dict[str, float] = {}

    def __repr__(self) -> str:
        return f"ProgressTracker(target={self.target_id}, current={self._current})"

    def reset(
        self, target_id: str, initial_minutes: int | None = None, now: float | None = None
    ) -> None:
        if now is None:
            now = time()
        self.target_id = target_id
        self._current.clear()
        self._last.clear()
        self._last_progress.clear()
        if initial_minutes is not None:
            self._current[target_id] = initial_minutes
            self._last[target_id] = initial_minutes
        else:
            # any reported value will count as progress
            self._current[target_id] = 0
            self._last[target_id] = -1
        self._last_progress[target_id] = now

    def clear(self) -> None:
        self.target_id = None
        self._current.clear()
        self._last.clear()
        self._last_progress.clear()

    def current_minutes(self, drop_id: str | None = None) -> int:
        if drop_id is None:
            drop_id = self.target_id
        return self._current.get(drop_id, 0) if drop_id is not None else 0

    def last_minutes(self, drop_id: str | None = None) -> int | None:
        if drop_id is None:
            drop_id = self.target_id
        return self._last.get(drop_id) if drop_id is not None else None

    def last_progress_at(self, drop_id: str | None = None) -> float | None:
        if drop_id is None:
            drop_id = self.target_id
        return self._last_progress.get(drop_id) if drop_id is not None else None

    def _apply(self, drop_id: str, minutes: int, now: float) -> bool:
        self._current[drop_id] = minutes
        if minutes > self._last.get(drop_id, -1):
            self._last_progress[drop_id] = now
            self._last[drop_id] = minutes
            return True
        return False

    def on_progress(self, drop_id: str, minutes: int, now: float | None = None) -> bool:
        """
        Applies a progress event. Returns True if the tracked target switched to this drop.
        """
        if now is None:
            now = time()
        if drop_id != self.target_id:
            logger.debug(
                f"Drop progress does not match the tracked drop: {self.target_id} vs {drop_id}"
            )
            if drop_id not in self._current:
                # first sight of this drop, seed it so that it doesn't count as progress
                self._current[drop_id] = minutes
                self._last[drop_id] = minutes
        if self._apply(drop_id, minutes, now) and drop_id != self.target_id:
            logger.info(f"Switching the tracked drop: {self.target_id} -> {drop_id}")
            self.target_id = drop_id
            return True
        return False

    def reconcile(self, minutes: int, now: float | None = None) -> bool:
        """
        Applies an authoritative minutes value for the tracked drop.
        Returns True if it counts as progress.
        """
        if now is None:
            now = time()
        if self.target_id is None:
            return False
        progressed = self._apply(self.target_id, minutes, now)
        if progressed:
            logger.log(CALL, f"Using inventory progress: {minutes} minutes")
        return progressed

    def stalled(self, timeout: float, now: float | None = None) -> bool:
        if now is None:
            now = time()
        last_progress = self.last_progress_at()
        if last_progress is None:
            return False
        return now - last_progress >= timeout
