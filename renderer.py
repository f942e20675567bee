from __future__ import annotations

import sys
import logging
from abc import abstractmethod, ABCMeta
from typing import Any, TextIO, TypedDict


logger = logging.getLogger("DropsBot")


class RenderPayload(TypedDict, total=False):
    drop: str
    stream: str
    viewers: int
    uptime: str


class BaseRenderer(metaclass=ABCMeta):
    @abstractmethod
    def start(self, total: int, value: int, payload: RenderPayload) -> None:
        pass

    @abstractmethod
    def update(self, value: int, payload: RenderPayload) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def resume(self) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class ConsoleRenderer(BaseRenderer):
    """
    Single-line progress bar, redrawn in place.

    When the output isn't a terminal, every change of the watched minutes is logged instead.
    """
    BAR_WIDTH = 20

    def __init__(self, output: TextIO | None = None):
        self._output: TextIO = output if output is not None else sys.stdout
        self._total: int = 0
        self._value: int = 0
        self._payload: RenderPayload = {}
        self._active: bool = False
        self._drawn: bool = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def _interactive(self) -> bool:
        isatty: Any = getattr(self._output, "isatty", None)
        return bool(isatty and isatty())

    def _render(self) -> str:
        total = max(self._total, 1)
        filled = min(self.BAR_WIDTH, self.BAR_WIDTH * self._value // total)
        bar = '#' * filled + '-' * (self.BAR_WIDTH - filled)
        payload = self._payload
        return (
            f"[{bar}] {self._value}/{self._total} min "
            f"| {payload.get('drop', '?')} "
            f"| {payload.get('stream', '?')} "
            f"| viewers: {payload.get('viewers', 0)} "
            f"| uptime: {payload.get('uptime', '?')}"
        )

    def _draw(self, *, changed: bool) -> None:
        if not self._active:
            return
        if self._interactive:
            self._output.write(f"\r\x1b[2K{self._render()}")
            self._output.flush()
            self._drawn = True
        elif changed:
            logger.info(self._render())

    def start(self, total: int, value: int, payload: RenderPayload) -> None:
        self._total = total
        self._value = value
        self._payload = dict(payload)  # type: ignore[assignment]
        self._active = True
        self._draw(changed=True)

    def update(self, value: int, payload: RenderPayload) -> None:
        changed = value != self._value
        self._value = value
        self._payload.update(payload)
        self._draw(changed=changed)

    def stop(self) -> None:
        if self._drawn:
            # move past the bar, so that any following output doesn't overwrite it
            self._output.write('\n')
            self._output.flush()
            self._drawn = False
        self._active = False

    def resume(self) -> None:
        """
        Restarts rendering with the last known values, if there are any.
        """
        if self._total > 0 and not self._active:
            self._active = True
            self._draw(changed=False)

    def clear(self) -> None:
        self.stop()
        self._total = 0
        self._value = 0
        self._payload = {}
