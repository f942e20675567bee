from __future__ import annotations

from typing import SupportsInt, TYPE_CHECKING

from yarl import URL

from constants import CLIENT_URL, URLType

if TYPE_CHECKING:
    from constants import JsonType


class Stream:
    __slots__ = ("broadcaster_id", "_login", "_display_name", "broadcast_id", "viewers", "title")

    def __init__(
        self,
        *,
        broadcaster_id: SupportsInt | str,
        login: str,
        display_name: str | None = None,
        broadcast_id: SupportsInt | str | None = None,
        viewers: int = 0,
        title: str = '',
    ):
        self.broadcaster_id: str = str(broadcaster_id)
        self._login: str = login
        self._display_name: str | None = display_name
        self.broadcast_id: str | None = str(broadcast_id) if broadcast_id is not None else None
        self.viewers: int = viewers
        self.title: str = title

    @classmethod
    def from_directory(cls, data: JsonType) -> Stream:
        channel = data["broadcaster"]
        return cls(
            broadcaster_id=channel["id"],
            login=channel["login"],
            display_name=channel.get("displayName"),
            broadcast_id=data.get("id"),
            viewers=data.get("viewersCount") or 0,
            title=data.get("title") or '',
        )

    def __repr__(self) -> str:
        return f"Stream({self.name}, {self.broadcaster_id})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return self.url == other.url
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.url)

    @property
    def login(self) -> str:
        return self._login

    @property
    def name(self) -> str:
        return self._display_name or self._login

    @property
    def url(self) -> URLType:
        return URLType(str(CLIENT_URL / self._login))

    @staticmethod
    def login_from_url(url: URLType | str) -> str:
        """
        Extracts the channel login from a stream URL, ex. `https://www.twitch.tv/login`.
        """
        parts = [part for part in URL(url).parts if part != '/']
        if not parts:
            raise ValueError(f"Not a stream URL: {url}")
        return parts[0].lower()
