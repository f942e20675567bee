from __future__ import annotations

from typing import Any, TypedDict, TYPE_CHECKING

from yarl import URL

from utils import json_load, json_save
from constants import SETTINGS_PATH

if TYPE_CHECKING:
    from main import ParsedArgs


class SettingsFile(TypedDict):
    proxy: URL
    game_ids: list[str]
    ignored_game_ids: set[str]
    watch_unlisted_games: bool
    polling_interval: int
    failed_stream_retry_count: int
    failed_stream_blacklist_timeout: int
    load_timeout_seconds: int
    hide_video: bool
    show_account_not_linked_warning: bool
    watch_streams_when_no_campaigns: bool
    fallback_game: str
    connection_quality: int


default_settings: SettingsFile = {
    "proxy": URL(),
    "game_ids": [],
    "ignored_game_ids": set(),
    "watch_unlisted_games": False,
    "polling_interval": 15,  # minutes
    "failed_stream_retry_count": 3,
    "failed_stream_blacklist_timeout": 30,  # minutes
    "load_timeout_seconds": 30,
    "hide_video": False,
    "show_account_not_linked_warning": True,
    "watch_streams_when_no_campaigns": False,
    "fallback_game": "Rocket League",
    "connection_quality": 1,
}


class Settings:
    """
    Read access checks the command line arguments first, then the settings file.
    Only settings file values can be assigned, which marks the file for saving.
    """
    # from args
    log: bool
    dump_settings: bool
    logging_level: int
    debug_ws: int
    debug_gql: int
    # from the settings file
    proxy: URL
    game_ids: list[str]
    ignored_game_ids: set[str]
    watch_unlisted_games: bool
    polling_interval: int
    failed_stream_retry_count: int
    failed_stream_blacklist_timeout: int
    load_timeout_seconds: int
    hide_video: bool
    show_account_not_linked_warning: bool
    watch_streams_when_no_campaigns: bool
    fallback_game: str
    connection_quality: int

    def __init__(self, args: ParsedArgs | None = None):
        object.__setattr__(self, "_args", args)
        object.__setattr__(self, "_values", json_load(SETTINGS_PATH, default_settings))
        object.__setattr__(self, "_changed", False)

    def __repr__(self) -> str:
        return f"Settings({SETTINGS_PATH.name}, changed={self._changed})"

    def __getattr__(self, name: str, /) -> Any:
        # only reached for names that aren't instance attributes
        args = self._args
        if args is not None and hasattr(args, name):
            return getattr(args, name)
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(f"Unknown setting: {name}") from None

    def __setattr__(self, name: str, value: Any, /) -> None:
        if name not in self._values:
            raise TypeError(f"Unknown setting: {name}")
        self._values[name] = value
        object.__setattr__(self, "_changed", True)

    def __delattr__(self, name: str, /) -> None:
        raise TypeError("Settings can't be deleted")

    def save(self, *, force: bool = False) -> None:
        if self._changed or force:
            json_save(SETTINGS_PATH, self._values, sort=True)
            object.__setattr__(self, "_changed", False)
