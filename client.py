from __future__ import annotations

import re
import asyncio
import logging
from base64 import b64encode
from contextlib import suppress
from typing import cast, TYPE_CHECKING

import aiohttp
from yarl import URL

from stream import Stream
from inventory import Campaign, CampaignDetails, Inventory
from utils import HEX_CHARS, create_nonce, json_minify, RateLimiter, ExponentialBackoff
from exceptions import (
    ExitRequest,
    GQLException,
    LoginException,
    MinerException,
    RequestException,
)
from constants import (
    GQL_URL,
    CLIENT_ID,
    CLIENT_URL,
    USER_AGENT,
    AUTH_COOKIE,
    MAX_BACKOFF,
    GQL_ATTEMPTS,
    COOKIES_PATH,
    VALIDATE_URL,
    AUTH_TOKEN_ENV,
    GQL_OPERATIONS,
    GQL_RATE_CAPACITY,
    LIVE_STREAMS_LIMIT,
    URLType,
)

if TYPE_CHECKING:
    from inventory import Drop, Game
    from settings import Settings
    from constants import JsonType


logger = logging.getLogger("DropsBot")
gql_logger = logging.getLogger("DropsBot.gql")

SPADE_PATTERN = re.compile(
    r'"spade_?url": ?"(https://video-edge-[.\w\-/]+\.ts(?:\?allow_stream=true)?)"', re.I
)
SETTINGS_SCRIPT_PATTERN = re.compile(
    r'src="(https://[\w.]+/config/settings\.[0-9a-f]{32}\.js)"', re.I
)
# GQL errors that go away on their own after a while
TRANSIENT_GQL_ERRORS = frozenset((
    "service error",
    "service timeout",
    "service unavailable",
    "PersistedQueryNotFound",
    "context deadline exceeded",
))
CLAIMED_STATUSES = frozenset(("ELIGIBLE_FOR_ALL", "DROP_INSTANCE_ALREADY_CLAIMED"))


def _null_path(data: JsonType, path: list[str | int]) -> None:
    node = data
    for key in path[:-1]:
        node = node[key]
    node[path[-1]] = None


def check_gql_response(operation: str, response: JsonType) -> bool:
    """
    Inspects the errors of a GQL response.

    Returns False if the request should be repeated, True if the data can be used.
    A "server error" with a path only invalidates that one field, which gets set to None.
    Anything else raises `GQLException`.
    """
    if "error" in response:
        raise GQLException(f"{operation}: {response['error']}: {response.get('message')}")
    usable = True
    for error in response.get("errors") or ():
        message = error.get("message")
        if message in TRANSIENT_GQL_ERRORS:
            usable = False
        elif message == "server error" and error.get("path") and response.get("data"):
            _null_path(response["data"], error["path"])
        else:
            raise GQLException(f"{operation}: {response['errors']}")
    return usable


class AuthState:
    """
    The OAuth token in use, and the identity it has been validated to.

    There's no interactive login: the token comes either from the environment,
    or from the cookie saved by an earlier run.
    """
    def __init__(self, client: RemoteClient, access_token: str | None = None):
        self._client: RemoteClient = client
        self._lock = asyncio.Lock()
        self.access_token: str | None = access_token
        self.user_id: int | None = None
        self.device_id: str = create_nonce(32, HEX_CHARS)
        self.session_id: str = create_nonce(16, HEX_CHARS)

    @property
    def valid(self) -> bool:
        return self.user_id is not None

    def clear(self) -> None:
        self.user_id = None

    def headers(self) -> JsonType:
        return {
            "Accept": "*/*",
            "Accept-Language": "en-US",
            "Authorization": f"OAuth {self.access_token}",
            "Client-Id": CLIENT_ID,
            "Client-Session-Id": self.session_id,
            "Origin": str(CLIENT_URL),
            "Referer": str(CLIENT_URL),
            "User-Agent": USER_AGENT,
            "X-Device-Id": self.device_id,
        }

    async def validate(self) -> None:
        async with self._lock:
            if self.valid:
                return
            session = await self._client.get_session()
            jar = cast(aiohttp.CookieJar, session.cookie_jar)
            saved = jar.filter_cookies(CLIENT_URL)
            if "unique_id" in saved:
                self.device_id = saved["unique_id"].value
            if not self.access_token:
                if AUTH_COOKIE not in saved:
                    raise LoginException(
                        f"No auth token: set {AUTH_TOKEN_ENV} in the environment or the .env file"
                    )
                logger.info("Restoring the session from the saved cookie")
                self.access_token = saved[AUTH_COOKIE].value
            response = await self._client.request(
                "GET", VALIDATE_URL, headers={"Authorization": f"OAuth {self.access_token}"}
            )
            if response.status == 401:
                assert CLIENT_URL.host is not None
                jar.clear_domain(CLIENT_URL.host)
                self.access_token = None
                raise LoginException("The auth token is invalid or has expired")
            elif response.status != 200:
                raise LoginException(f"Token validation failed: {response.status}")
            self.user_id = int((await response.json())["user_id"])
            jar.update_cookies({AUTH_COOKIE: self.access_token}, CLIENT_URL)
            jar.save(COOKIES_PATH)
            logger.info(f"Logged in, user ID: {self.user_id}")


class RemoteClient:
    """
    GQL client for everything the scheduler needs to know about campaigns, drops and streams.
    """
    def __init__(self, settings: Settings, *, access_token: str | None = None):
        self.settings: Settings = settings
        self._closed = asyncio.Event()
        # going over the GQL rate limit gets every request rejected for a while
        self._gql_limiter = RateLimiter(capacity=GQL_RATE_CAPACITY, window=1)
        self._session: aiohttp.ClientSession | None = None
        self._auth_state = AuthState(self, access_token)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is not None:
            if self._session.closed:
                raise RuntimeError("Session is closed")
            return self._session
        jar = aiohttp.CookieJar()
        if COOKIES_PATH.exists():
            try:
                jar.load(COOKIES_PATH)
            except Exception:  # the jar is a pickle, anything goes
                logger.warning("Saved cookies are unreadable, starting without them")
                jar.clear()
        # timeouts scale with the connection quality, kept within 1-6
        quality = min(max(self.settings.connection_quality, 1), 6)
        if quality != self.settings.connection_quality:
            self.settings.connection_quality = quality
        self._session = aiohttp.ClientSession(
            cookie_jar=jar,
            headers={"User-Agent": USER_AGENT},
            timeout=aiohttp.ClientTimeout(sock_connect=5 * quality, total=10 * quality),
        )
        return self._session

    async def shutdown(self) -> None:
        self._closed.set()
        session, self._session = self._session, None
        if session is not None:
            cast(aiohttp.CookieJar, session.cookie_jar).save(COOKIES_PATH)
            await session.close()
            # transports close on the next loop iterations
            await asyncio.sleep(0.25)
        self._auth_state.clear()

    async def get_auth(self) -> AuthState:
        await self._auth_state.validate()
        return self._auth_state

    async def _attempt(
        self, session: aiohttp.ClientSession, method: str, url: URL | str, kwargs: JsonType
    ) -> aiohttp.ClientResponse | None:
        try:
            response = await session.request(method, url, **kwargs)
            # the body is read here, so that payload errors get retried too
            await response.read()
        except aiohttp.ClientConnectorCertificateError:
            raise
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as exc:
            logger.debug(f"{method} {url}: {exc!r}")
            return None
        response.release()
        logger.debug(f"{method} {url}: {response.status}")
        if response.status >= 500:
            return None
        return response

    async def request(self, method: str, url: URL | str, **kwargs) -> aiohttp.ClientResponse:
        """
        Performs the request, waiting out connection problems and server side errors.

        The returned response has its body read already. Raises `ExitRequest`
        once the client has been shut down.
        """
        session = await self.get_session()
        if self.settings.proxy:
            kwargs.setdefault("proxy", self.settings.proxy)
        backoff = ExponentialBackoff(maximum=MAX_BACKOFF.total_seconds())
        for delay in backoff:
            if self.closed:
                raise ExitRequest()
            response = await self._attempt(session, method.upper(), url, kwargs)
            if response is not None:
                return response
            if backoff.steps > 1:
                # a single quick retry is normal, and isn't worth a warning
                logger.warning(f"Request to {URL(url).host} failed, retrying in {round(delay)}s")
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._closed.wait(), timeout=delay)
        raise ExitRequest()

    async def gql_request(self, payload: JsonType) -> JsonType:
        operation: str = payload["operationName"]
        gql_logger.debug(f"GQL request: {payload}")
        backoff = ExponentialBackoff(base=3, maximum=MAX_BACKOFF.total_seconds())
        for attempt in range(1, GQL_ATTEMPTS + 1):
            auth_state = await self.get_auth()
            async with self._gql_limiter:
                response = await self.request(
                    "POST", GQL_URL, json=payload, headers=auth_state.headers()
                )
            data: JsonType = await response.json()
            gql_logger.debug(f"GQL response: {data}")
            if check_gql_response(operation, data):
                return data
            if attempt < GQL_ATTEMPTS:
                delay = next(backoff)
                logger.warning(f"{operation}: transient GQL error, retrying in {round(delay)}s")
                await asyncio.sleep(delay)
        raise GQLException(f"{operation}: still failing after {GQL_ATTEMPTS} attempts")

    async def get_campaigns(self) -> list[Campaign]:
        response = await self.gql_request(GQL_OPERATIONS["Campaigns"].payload())
        campaigns: list[JsonType] = response["data"]["currentUser"]["dropCampaigns"] or []
        # campaigns without a game can't be watched for
        return [Campaign(data) for data in campaigns if data.get("game") is not None]

    async def get_campaign_details(self, campaign_id: str) -> CampaignDetails:
        auth_state = await self.get_auth()
        response = await self.gql_request(
            GQL_OPERATIONS["CampaignDetails"].payload(
                {"channelLogin": str(auth_state.user_id), "dropID": campaign_id}
            )
        )
        details: JsonType | None = response["data"]["user"]["dropCampaign"]
        if details is None:
            raise MinerException(f"Campaign details unavailable: {campaign_id}")
        return CampaignDetails(details)

    async def get_inventory(self) -> Inventory:
        response = await self.gql_request(GQL_OPERATIONS["Inventory"].payload())
        return Inventory(response["data"]["currentUser"]["inventory"])

    async def get_inventory_drop(
        self, drop_id: str, campaign_id: str | None = None
    ) -> Drop | None:
        return (await self.get_inventory()).get_drop(drop_id, campaign_id)

    async def generate_claim_id(self, campaign_id: str, drop_id: str) -> str:
        # UserID#CampaignID#DropID
        auth_state = await self.get_auth()
        return f"{auth_state.user_id}#{campaign_id}#{drop_id}"

    async def claim_drop(self, drop_instance_id: str) -> bool:
        """
        Returns True if the claim succeeded or the drop has been claimed already.
        """
        try:
            response = await self.gql_request(
                GQL_OPERATIONS["ClaimDrop"].payload({"input": {"dropInstanceID": drop_instance_id}})
            )
        except GQLException as exc:
            # the claim may or may not have gone through, it's retried later
            logger.debug(f"Claim of {drop_instance_id} failed: {exc}")
            return False
        result: JsonType | None = response["data"].get("claimDropRewards")
        return bool(result) and result.get("status") in CLAIMED_STATUSES

    async def get_live_streams(
        self, game: Game, *, limit: int = LIVE_STREAMS_LIMIT, drops_enabled: bool = True
    ) -> list[Stream]:
        payload = GQL_OPERATIONS["GameDirectory"].payload({
            "slug": game.slug,
            "limit": limit,
            "options": {"systemFilters": ["DROPS_ENABLED"] if drops_enabled else []},
        })
        try:
            response = await self.gql_request(payload)
        except GQLException as exc:
            raise MinerException(f"Live streams unavailable for {game.slug}") from exc
        directory: JsonType | None = response["data"].get("game")
        if not directory:
            return []
        return [
            Stream.from_directory(edge["node"])
            for edge in directory["streams"]["edges"]
            if edge["node"]["broadcaster"] is not None
        ]

    async def get_stream_info(self, login: str) -> JsonType | None:
        """
        Returns the channel data of the given login, or None if the channel doesn't exist.
        """
        response = await self.gql_request(
            GQL_OPERATIONS["GetStreamInfo"].payload({"channel": login})
        )
        return response["data"]["user"]

    async def get_spade_url(self, stream_url: URLType | str) -> URLType:
        """
        The spade URL is embedded either in the channel page,
        or in the settings script that page links to.
        """
        page: str = await (await self.request("GET", stream_url)).text(encoding="utf8")
        match = SPADE_PATTERN.search(page)
        if match is None:
            script = SETTINGS_SCRIPT_PATTERN.search(page)
            if script is None:
                raise MinerException(f"No settings script on the channel page: {stream_url}")
            response = await self.request("GET", script.group(1))
            match = SPADE_PATTERN.search(await response.text(encoding="utf8"))
            if match is None:
                raise MinerException(f"No spade URL in the settings script: {script.group(1)}")
        return URLType(match.group(1))

    async def send_watch(
        self, spade_url: URLType, *, broadcast_id: str, channel_id: str, login: str
    ) -> bool:
        """
        Sends a single "minute-watched" event, which is what advances the drops progress.
        """
        auth_state = await self.get_auth()
        event = {
            "event": "minute-watched",
            "properties": {
                "broadcast_id": broadcast_id,
                "channel_id": channel_id,
                "channel": login,
                "hidden": False,
                "live": True,
                "location": "channel",
                "logged_in": True,
                "muted": False,
                "player": "site",
                "user_id": auth_state.user_id,
            },
        }
        encoded = b64encode(json_minify([event]).encode("utf8")).decode("ascii")
        try:
            response = await self.request("POST", spade_url, data={"data": encoded})
        except RequestException:
            return False
        return response.status == 204
