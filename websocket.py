from __future__ import annotations

import json
import asyncio
import logging
from time import monotonic
from functools import partial
from collections import deque
from contextlib import suppress
from typing import Callable, TYPE_CHECKING

import aiohttp

from exceptions import WebsocketClosed
from utils import task_wrapper, create_nonce, json_minify, ExponentialBackoff
from constants import (
    PUBSUB_URL,
    MAX_BACKOFF,
    PING_TIMEOUT,
    PING_INTERVAL,
    TOPIC_USER_DROPS,
    TOPIC_STREAM_STATE,
)

if TYPE_CHECKING:
    from stream import Stream
    from client import RemoteClient
    from session import SessionInbox
    from constants import JsonType


WSMsgType = aiohttp.WSMsgType
TopicHandler = Callable[["JsonType"], None]
ws_logger = logging.getLogger("DropsBot.websocket")


class PubSub:
    """
    One PubSub connection, kept alive and resubscribed to every topic after a reconnect.

    Topic messages are handed to the handler registered for the topic, inline,
    so handlers have to be quick.
    """
    def __init__(self, client: RemoteClient):
        self._client: RemoteClient = client
        self.topics: dict[str, TopicHandler] = {}
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        # LISTEN and UNLISTEN requests waiting to be sent
        self._outbox: deque[JsonType] = deque()
        self._task: asyncio.Task[None] | None = None
        self._next_ping: float = 0
        self._pong_due: float | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _queue(self, request_type: str, topics: list[str]) -> None:
        self._outbox.append({"type": request_type, "data": {"topics": topics}})

    def listen(self, topic: str, handler: TopicHandler) -> None:
        self.topics[topic] = handler
        if self.connected:
            self._queue("LISTEN", [topic])

    def unlisten(self, topic: str) -> None:
        if self.topics.pop(topic, None) is not None and self.connected:
            self._queue("UNLISTEN", [topic])

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    @task_wrapper
    async def _run(self) -> None:
        session = await self._client.get_session()
        proxy = self._client.settings.proxy or None
        backoff = ExponentialBackoff(maximum=MAX_BACKOFF.total_seconds())
        for delay in backoff:
            try:
                async with session.ws_connect(PUBSUB_URL, proxy=proxy) as ws:
                    ws_logger.info("PubSub connected")
                    backoff.reset()
                    self._ws = ws
                    # whatever was queued is covered by the full resubscription
                    self._outbox.clear()
                    if self.topics:
                        self._queue("LISTEN", list(self.topics))
                    await self._serve(ws)
            except WebsocketClosed as exc:
                ws_logger.warning(f"PubSub disconnected: {exc}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                ws_logger.info(f"PubSub connection problem: {exc!r}")
            except RuntimeError:
                ws_logger.info("Session closed, PubSub stopped")
                return
            finally:
                self._ws = None
            ws_logger.info(f"PubSub reconnecting in {round(delay)}s")
            await asyncio.sleep(delay)

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """
        Runs until the connection has to be reestablished, signalled by `WebsocketClosed`.
        """
        self._next_ping = monotonic()
        self._pong_due = None
        while True:
            await self._ping(ws)
            await self._flush(ws)
            try:
                raw: aiohttp.WSMessage = await ws.receive(timeout=0.5)
            except asyncio.TimeoutError:
                continue
            ws_logger.debug(f"PubSub received: {raw}")
            if raw.type is WSMsgType.TEXT:
                self.handle(json.loads(raw.data))
            elif raw.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                raise WebsocketClosed(f"closed by the server: {ws.close_code}", received=True)
            elif raw.type is WSMsgType.ERROR:
                raise WebsocketClosed(f"connection error: {raw.data!r}")

    async def _ping(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        now = monotonic()
        if self._pong_due is not None and now >= self._pong_due:
            raise WebsocketClosed("no PONG received")
        if now >= self._next_ping:
            self._next_ping = now + PING_INTERVAL.total_seconds()
            self._pong_due = now + PING_TIMEOUT.total_seconds()
            await ws.send_json({"type": "PING"}, dumps=json_minify)

    async def _flush(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if not self._outbox:
            return
        auth_state = await self._client.get_auth()
        while self._outbox:
            request = self._outbox.popleft()
            request["nonce"] = create_nonce(30)
            request["data"]["auth_token"] = auth_state.access_token
            await ws.send_json(request, dumps=json_minify)
            ws_logger.debug(f"PubSub sent: {request['type']} {request['data']['topics']}")

    def handle(self, message: JsonType) -> None:
        message_type = message.get("type")
        if message_type == "MESSAGE":
            self.dispatch(message["data"])
        elif message_type == "PONG":
            self._pong_due = None
        elif message_type == "RECONNECT":
            raise WebsocketClosed("reconnect requested", received=True)
        elif message_type == "RESPONSE":
            if message.get("error"):
                ws_logger.error(f"PubSub request rejected: {message['error']}")
        else:
            ws_logger.warning(f"Unknown PubSub message: {message}")

    def dispatch(self, data: JsonType) -> None:
        handler = self.topics.get(data["topic"])
        if handler is None:
            return
        try:
            handler(json.loads(data["message"]))
        except Exception:
            ws_logger.exception(f"Unable to process a message of {data['topic']}")


class PubSubEventSource:
    """
    Relays the drop and stream events of the watched channel into the session inbox.

    Only one channel is ever attached at a time. Events arriving with nothing attached
    are dropped.
    """
    def __init__(self, client: RemoteClient):
        self._client: RemoteClient = client
        self._pubsub: PubSub = PubSub(client)
        self._inbox: SessionInbox | None = None
        self._channel_id: int | None = None
        self._channel_topic: str | None = None

    @property
    def attached(self) -> bool:
        return self._inbox is not None

    async def start(self) -> None:
        auth_state = await self._client.get_auth()
        user_id = auth_state.user_id
        self._pubsub.listen(f"{TOPIC_USER_DROPS}.{user_id}", partial(self.process_drops, user_id))
        self._pubsub.start()

    async def stop(self) -> None:
        await self.detach()
        await self._pubsub.stop()

    async def attach(self, stream: Stream, inbox: SessionInbox) -> None:
        await self.detach()
        self._inbox = inbox
        self._channel_id = channel_id = int(stream.broadcaster_id)
        self._channel_topic = f"{TOPIC_STREAM_STATE}.{channel_id}"
        self._pubsub.listen(self._channel_topic, partial(self.process_stream_state, channel_id))
        ws_logger.debug(f"Attached to channel: {stream.name}")

    async def detach(self) -> None:
        if self._channel_topic is not None:
            self._pubsub.unlisten(self._channel_topic)
            self._channel_topic = None
        self._channel_id = None
        self._inbox = None

    def process_drops(self, user_id: int, message: JsonType) -> None:
        # {"type": "drop-progress", data: {"current_progress_min": 3, "required_progress_min": 10}}
        # {"type": "drop-claim", data: {"drop_instance_id": ...}}
        inbox = self._inbox
        if inbox is None:
            return
        msg_type: str = message["type"]
        if msg_type == "drop-progress":
            data: JsonType = message["data"]
            inbox.on_drop_progress(
                data["drop_id"], data["current_progress_min"], data["required_progress_min"]
            )
        elif msg_type == "drop-claim":
            inbox.on_drop_claim()

    def process_stream_state(self, channel_id: int, message: JsonType) -> None:
        inbox = self._inbox
        if inbox is None or channel_id != self._channel_id:
            return
        msg_type: str = message["type"]
        if msg_type == "viewcount":
            inbox.on_viewcount(message["viewers"])
        elif msg_type == "stream-down":
            inbox.on_stream_down()
