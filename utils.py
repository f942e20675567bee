from __future__ import annotations

import io
import os
import sys
import json
import random
import string
import asyncio
import logging
import traceback
from time import monotonic
from copy import deepcopy
from pathlib import Path
from functools import wraps
from collections import deque
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, TypeVar, ParamSpec, cast, TYPE_CHECKING

from yarl import URL

from exceptions import ExitRequest

if TYPE_CHECKING:
    from collections import abc

    from constants import JsonType


_T = TypeVar("_T")
_P = ParamSpec("_P")
_JSON_T = TypeVar("_JSON_T", bound=Mapping[Any, Any])
logger = logging.getLogger("DropsBot")

NONCE_CHARS = string.ascii_letters + string.digits
HEX_CHARS = string.digits + "abcdef"
TIMESTAMP_FORMATS = ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ")


def format_traceback(exc: BaseException) -> str:
    return ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def create_nonce(length: int, chars: str = NONCE_CHARS) -> str:
    return ''.join(random.choices(chars, k=length))


def json_minify(data: JsonType | list[JsonType]) -> str:
    return json.dumps(data, separators=(',', ':'))


def timestamp(string: str) -> datetime:
    """
    Parses the UTC timestamps used by the API, with or without the fractional part.
    """
    for fmt in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(string, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unrecognized timestamp: {string}")


def lock_file(path: Path) -> tuple[bool, io.TextIOWrapper]:
    """
    Opens and locks the file at `path`. The first item of the result says
    whether the lock could be taken, meaning no other instance is running.
    """
    file = path.open('w', encoding="utf8")
    file.write(str(os.getpid()))
    file.flush()
    try:
        if sys.platform == "win32":
            import msvcrt
            msvcrt.locking(file.fileno(), msvcrt.LK_NBLCK, 1)
        elif sys.platform == "linux":
            import fcntl
            fcntl.lockf(file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False, file
    return True, file


def _closing_scheduler(owner: Any) -> None:
    from scheduler import Scheduler  # cyclic import
    for candidate in (owner, getattr(owner, "_scheduler", None)):
        if isinstance(candidate, Scheduler):
            candidate.close()
            return


def task_wrapper(
    afunc: abc.Callable[_P, abc.Coroutine[Any, Any, _T]] | None = None, *, critical: bool = False
):
    """
    Logs whatever kills a background task. A dying `critical` task also closes the scheduler,
    passed either as `self` or held by `self` as `_scheduler`.
    """
    def decorator(
        afunc: abc.Callable[_P, abc.Coroutine[Any, Any, _T]]
    ) -> abc.Callable[_P, abc.Coroutine[Any, Any, _T | None]]:
        @wraps(afunc)
        async def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _T | None:
            try:
                return await afunc(*args, **kwargs)
            except ExitRequest:
                return None
            except Exception:
                logger.exception(f"Task {afunc.__name__} has crashed")
                if critical and args:
                    _closing_scheduler(args[0])
                raise
        return wrapper
    if afunc is None:
        return decorator
    return decorator(afunc)


# settings serialization, types that JSON can't store are tagged with their name
_TAGGED: dict[str, tuple[type, Callable[[Any], Any], Callable[[Any], Any]]] = {
    "set": (set, sorted, set),
    "URL": (URL, str, URL),
}


def _encode(obj: Any) -> JsonType:
    for tag, (kind, encode, _) in _TAGGED.items():
        if isinstance(obj, kind):
            return {"__type": tag, "data": encode(obj)}
    raise TypeError(f"Can't serialize: {obj!r}")


def _decode(obj: JsonType) -> Any:
    tag = obj.get("__type")
    if tag is None:
        return obj
    if tag in _TAGGED:
        return _TAGGED[tag][2](obj["data"])
    # unknown tags are dropped, and replaced by the default later
    return None


def _conform(loaded: JsonType, defaults: Mapping[Any, Any]) -> JsonType:
    """
    Returns `loaded` shaped after `defaults`: unknown keys are dropped,
    and missing or mistyped values are taken from the defaults.
    """
    result: JsonType = {}
    for key, default in defaults.items():
        value = loaded.get(key)
        if type(value) is not type(default):
            result[key] = default
        elif isinstance(default, dict):
            result[key] = _conform(value, default)
        else:
            result[key] = value
    return result


def json_load(path: Path, defaults: _JSON_T) -> _JSON_T:
    loaded: JsonType = {}
    if path.exists():
        with open(path, 'r', encoding="utf8") as file:
            loaded = json.load(file, object_hook=_decode)
    # defaults are copied, so that mutating the result leaves them intact
    return cast(_JSON_T, deepcopy(_conform(loaded, defaults)))


def json_save(path: Path, contents: Mapping[Any, Any], *, sort: bool = False) -> None:
    with open(path, 'w', encoding="utf8") as file:
        json.dump(contents, file, default=_encode, sort_keys=sort, indent=4)


class ExponentialBackoff:
    """
    Infinite iterator of retry delays: `base ** n`, randomized by `variance`,
    capped at `maximum`.
    """
    def __init__(self, *, base: float = 2, variance: float = 0.1, maximum: float = 300):
        if base <= 1:
            raise ValueError("Base has to be greater than 1")
        self.base: float = base
        self.variance: float = variance
        self.maximum: float = maximum
        self.steps: int = 0

    def __iter__(self) -> abc.Iterator[float]:
        return self

    def __next__(self) -> float:
        delay = self.base ** self.steps * random.uniform(1 - self.variance, 1 + self.variance)
        if delay >= self.maximum:
            # stop growing the exponent once capped
            return self.maximum
        self.steps += 1
        return delay

    def reset(self) -> None:
        self.steps = 0


class RateLimiter:
    """
    Lets at most `capacity` entries through within any `window` seconds long period.
    """
    def __init__(self, *, capacity: int, window: float):
        self.capacity: int = capacity
        self.window: float = window
        self._entries: deque[float] = deque()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"RateLimiter({len(self._entries)}/{self.capacity} per {self.window}s)"

    async def __aenter__(self) -> None:
        async with self._lock:
            while True:
                now = monotonic()
                while self._entries and self._entries[0] <= now - self.window:
                    self._entries.popleft()
                if len(self._entries) < self.capacity:
                    self._entries.append(now)
                    return
                await asyncio.sleep(self._entries[0] + self.window - now)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        pass


class Notifier:
    """
    Broadcast wake-up primitive.

    Every `wait` call that started before a `notify_all` call is released by it.
    Waits started afterwards block until the next notification.
    """
    def __init__(self):
        self._event = asyncio.Event()

    def notify_all(self) -> None:
        self._event.set()
        self._event = asyncio.Event()

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Returns True if woken up by a notification, False if the timeout passed first.
        """
        event = self._event
        if timeout is None:
            await event.wait()
            return True
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        return False
