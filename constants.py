from __future__ import annotations

import sys
import logging
from pathlib import Path
from enum import Enum, auto
from datetime import timedelta
from typing import Any, Dict, NewType

from yarl import URL


# chatty call tracing, between INFO and DEBUG
CALL: int = logging.INFO - 1
logging.addLevelName(CALL, "CALL")

# Typing
JsonType = Dict[str, Any]
URLType = NewType("URLType", str)

# Files, all kept in the directory the bot is started from
WORKING_DIR = Path.cwd()
LOG_PATH = WORKING_DIR / "log.txt"
LOCK_PATH = WORKING_DIR / "lock.file"
ENV_PATH = WORKING_DIR / ".env"
COOKIES_PATH = WORKING_DIR / "cookies.jar"
SETTINGS_PATH = WORKING_DIR / "settings.json"

# Remote endpoints and the client identity presented to them
CLIENT_URL = URL("https://www.twitch.tv")
GQL_URL = URL("https://gql.twitch.tv/gql")
VALIDATE_URL = URL("https://id.twitch.tv/oauth2/validate")
PUBSUB_URL = URL("wss://pubsub-edge.twitch.tv/v1")
CLIENT_ID = "kd1unb4b3q4t58fwlpcbzcbnm76a8fp"
USER_AGENT = (
    "Dalvik/2.1.0 (Linux; U; Android 16; SM-S911B Build/TP1A.220624.014) "
    "tv.twitch.android.app/25.3.0/2503006"
)
AUTH_TOKEN_ENV = "DROPS_AUTH_TOKEN"
AUTH_COOKIE = "auth-token"

# PubSub topic prefixes, suffixed with a user or channel ID
TOPIC_USER_DROPS = "user-drop-events"
TOPIC_STREAM_STATE = "video-playback-by-id"

# Values
MAX_INT = sys.maxsize
BLANK_URL = URLType("about:blank")
INBOX_CAPACITY = 64
PLAYER_STABLE_CHECKS = 3
LIVE_STREAMS_LIMIT = 30
GQL_RATE_CAPACITY = 5  # requests per second, exceeding it gets everything rejected
GQL_ATTEMPTS = 3

# Intervals and Delays
PING_INTERVAL = timedelta(minutes=3)
PING_TIMEOUT = timedelta(seconds=10)
WATCH_INTERVAL = timedelta(seconds=59)
WATCH_POLL_INTERVAL = timedelta(seconds=1)
PLAYER_CHECK_INTERVAL = timedelta(seconds=1)
NO_PROGRESS_TIMEOUT = timedelta(minutes=5)
ATTEMPT_COOLDOWN = timedelta(minutes=5)
MAX_BACKOFF = timedelta(minutes=3)

# Logging, indexed by the verbosity level
LOGGING_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, CALL, logging.DEBUG)
FILE_FORMATTER = logging.Formatter(
    "{asctime} {levelname:>7} [{name}] {message}", style='{', datefmt="%Y-%m-%d %H:%M:%S"
)
OUTPUT_FORMATTER = logging.Formatter("{asctime} {levelname}: {message}", style='{', datefmt="%H:%M:%S")


class CampaignStatus(Enum):
    ACTIVE = "ACTIVE"
    UPCOMING = "UPCOMING"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str) -> CampaignStatus:
        if value in cls.__members__:
            return cls(value)
        return cls.UNKNOWN

    def is_pending(self) -> bool:
        return self in (CampaignStatus.ACTIVE, CampaignStatus.UPCOMING)


class CampaignOutcome(Enum):
    COMPLETED = auto()
    NO_STREAMS = auto()
    PREEMPTED = auto()
    INACTIVE = auto()
    FAILED = auto()


class AbortReason(Enum):
    STREAM_DOWN = auto()
    NO_PROGRESS = auto()
    HIGH_PRIORITY = auto()
    LOAD_FAILED = auto()
    ERROR = auto()


def _merged(base: JsonType, overrides: JsonType) -> JsonType:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merged(current, value)
        else:
            merged[key] = value
    return merged


def _unfilled(variables: JsonType, prefix: str = '') -> list[str]:
    missing: list[str] = []
    for key, value in variables.items():
        if value is Ellipsis:
            missing.append(f"{prefix}{key}")
        elif isinstance(value, dict):
            missing.extend(_unfilled(value, f"{prefix}{key}."))
    return missing


class GQLOperation:
    """
    A persisted GQL query. Variables set to `...` have to be filled in by the caller.
    """
    def __init__(self, name: str, sha256: str, variables: JsonType | None = None):
        self.name: str = name
        self.sha256: str = sha256
        self.variables: JsonType = variables or {}

    def __repr__(self) -> str:
        return f"GQLOperation({self.name})"

    def payload(self, variables: JsonType | None = None) -> JsonType:
        merged = _merged(self.variables, variables or {})
        if missing := _unfilled(merged):
            raise ValueError(f"{self.name}: missing variables: {', '.join(missing)}")
        payload: JsonType = {
            "operationName": self.name,
            "extensions": {"persistedQuery": {"version": 1, "sha256Hash": self.sha256}},
        }
        if merged:
            payload["variables"] = merged
        return payload


GQL_OPERATIONS: dict[str, GQLOperation] = {
    # live broadcast of a channel, by its login
    "GetStreamInfo": GQLOperation(
        "VideoPlayerStreamInfoOverlayChannel",
        "198492e0857f6aedead9665c81c5a06d67b25b58034649687124083ff288597d",
        {"channel": ...},
    ),
    # needs the drop instance ID
    "ClaimDrop": GQLOperation(
        "DropsPage_ClaimDropRewards",
        "a455deea71bdc9015b78eb49f4acfbce8baa7ccbedd28e549bb025bd0f751930",
        {"input": {"dropInstanceID": ...}},
    ),
    # campaigns with progress, plus the claimed drop benefits
    "Inventory": GQLOperation(
        "Inventory",
        "d86775d0ef16a63a33ad52e80eaff963b2d5b72fada7c991504a57496e1d8e4b",
        {"fetchRewardCampaigns": False},
    ),
    # every campaign the account can see
    "Campaigns": GQLOperation(
        "ViewerDropsDashboard",
        "5a4da2ab3d5b47c9f9ce864e727b2cb346af1e3ea8b897fe8f704a97ff017619",
        {"fetchRewardCampaigns": False},
    ),
    # drops and allowed channels of one campaign
    "CampaignDetails": GQLOperation(
        "DropCampaignDetails",
        "039277bf98f3130929262cc7c6efd9c141ca3749cb6dca442fc8ead9a53f77c1",
        {"channelLogin": ..., "dropID": ...},
    ),
    # live streams of a game directory
    "GameDirectory": GQLOperation(
        "DirectoryPage_Game",
        "98a996c3c3ebb1ba4fd65d6671c6028d7ee8d615cb540b0731b3db2a911d3649",
        {
            "slug": ...,
            "limit": LIVE_STREAMS_LIMIT,
            "imageWidth": 50,
            "includeCostreaming": False,
            "sortTypeIsRecency": False,
            "options": {
                "sort": "RELEVANCE",
                "tags": [],
                "freeformTags": None,
                "systemFilters": [],
                "broadcasterLanguages": [],
                "includeRestricted": ["SUB_ONLY_LIVE"],
                "recommendationsContext": {"platform": "web"},
                "requestID": "JIRA-VXP-2397",
            },
        },
    ),
}
