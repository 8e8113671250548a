"""
Relay Client - Соединение с одним Nostr relay
=============================================

[PROTOCOL] NIP-01 поверх WebSocket (aiohttp):
Client -> Relay:
    ["EVENT", <event>]
    ["REQ", <sub_id>, <filter>...]
    ["CLOSE", <sub_id>]
Relay -> Client:
    ["EVENT", <sub_id>, <event>]
    ["EOSE", <sub_id>]
    ["OK", <event_id>, <true|false>, <message>]
    ["NOTICE", <message>]
    ["CLOSED", <sub_id>, <message>]

[ERRORS] Публикация не бросает исключений - возвращает PublishResult
со структурированной классификацией ошибки (rate-limited / rejected /
timeout / transport), чтобы политика повторов не разбирала текст исключений.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from .event import Event, EventError, Filter

logger = logging.getLogger(__name__)


# Префиксы машиночитаемых сообщений в OK (NIP-01)
RATE_LIMIT_MARKERS = ("rate-limited", "rate limit", "too many requests")
DUPLICATE_PREFIX = "duplicate:"

WS_HEARTBEAT = 30.0  # Секунды между WebSocket ping


class PublishErrorKind(Enum):
    """Классификация неудачной публикации."""
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class PublishResult:
    """Итог публикации на один relay или на весь пул."""
    ok: bool
    relay: str = ""
    error_kind: Optional[PublishErrorKind] = None
    message: str = ""
    accepted_by: Tuple[str, ...] = ()

    @classmethod
    def success(cls, relay: str, message: str = "") -> "PublishResult":
        return cls(ok=True, relay=relay, message=message, accepted_by=(relay,))

    @classmethod
    def failure(cls, relay: str, kind: PublishErrorKind, message: str) -> "PublishResult":
        return cls(ok=False, relay=relay, error_kind=kind, message=message)

    @property
    def rate_limited(self) -> bool:
        return self.error_kind == PublishErrorKind.RATE_LIMITED


def classify_rejection(message: str) -> PublishErrorKind:
    """Rate-limit определяется по маркеру в сообщении relay."""
    lowered = message.lower()
    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return PublishErrorKind.RATE_LIMITED
    return PublishErrorKind.REJECTED


class RelayError(Exception):
    """Ошибка транспорта relay."""


class RelayNotConnected(RelayError):
    """Операция требует активного соединения."""


EventCallback = Callable[[str, Event], None]


class RelayClient:
    """
    Клиент одного relay.

    [USAGE]
    ```python
    client = RelayClient("wss://nos.lol")
    await client.connect(timeout=10)

    result = await client.publish(event)
    events = await client.query([Filter(kinds=[6050], authors=[pubkey])])

    await client.subscribe("jobs", [Filter(kinds=[5050])], on_event)
    await client.close()
    ```
    """

    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None):
        """
        Args:
            url: Адрес relay (wss://...)
            session: Общая aiohttp сессия или None (своя сессия на соединение)
        """
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._closing = False

        self._subscriptions: Dict[str, EventCallback] = {}
        self._eose_waiters: Dict[str, asyncio.Event] = {}
        self._pending_ok: Dict[str, asyncio.Future] = {}

        # Вызывается при неожиданном обрыве соединения
        self.on_disconnect: Optional[Callable[[str], None]] = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self, timeout: float = 10.0) -> None:
        """
        Установить WebSocket соединение.

        Raises:
            RelayError: relay недоступен или не ответил за timeout
        """
        if self.is_connected:
            return

        self._closing = False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=WS_HEARTBEAT),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise RelayError(f"connect timeout after {timeout}s") from e
        except (aiohttp.ClientError, OSError) as e:
            raise RelayError(f"connect failed: {e}") from e

        self._recv_task = asyncio.create_task(self._recv_loop(self._ws))
        logger.debug(f"[RELAY] Connected: {self.url}")

    async def close(self) -> None:
        """Закрыть соединение (без вызова on_disconnect)."""
        self._closing = True

        if self._recv_task:
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass
            self._recv_task = None

        if self._ws is not None:
            try:
                await self._ws.close()
            except (aiohttp.ClientError, OSError) as e:
                logger.debug(f"[RELAY] Close error on {self.url}: {e}")
            self._ws = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._fail_pending("connection closed")
        self._subscriptions.clear()

    async def publish(self, event: Event, timeout: float = 10.0) -> PublishResult:
        """Отправить EVENT и дождаться OK."""
        if not self.is_connected:
            return PublishResult.failure(self.url, PublishErrorKind.TRANSPORT, "not connected")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_ok[event.id] = future
        try:
            await self._send(["EVENT", event.to_dict()])
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return PublishResult.failure(
                self.url, PublishErrorKind.TIMEOUT, f"no OK within {timeout}s"
            )
        except RelayError as e:
            return PublishResult.failure(self.url, PublishErrorKind.TRANSPORT, str(e))
        finally:
            self._pending_ok.pop(event.id, None)

    async def subscribe(
        self,
        sub_id: str,
        filters: List[Filter],
        on_event: EventCallback,
    ) -> None:
        """Открыть подписку REQ."""
        if not self.is_connected:
            raise RelayNotConnected(self.url)
        self._subscriptions[sub_id] = on_event
        await self._send(["REQ", sub_id, *[f.to_dict() for f in filters]])

    async def unsubscribe(self, sub_id: str) -> None:
        """Закрыть подписку CLOSE."""
        self._subscriptions.pop(sub_id, None)
        self._eose_waiters.pop(sub_id, None)
        if not self.is_connected:
            return
        try:
            await self._send(["CLOSE", sub_id])
        except RelayError as e:
            logger.debug(f"[RELAY] CLOSE {sub_id} failed on {self.url}: {e}")

    async def query(self, filters: List[Filter], timeout: float = 10.0) -> List[Event]:
        """
        Разовый запрос: собрать события до EOSE (или до таймаута).
        """
        sub_id = f"q-{secrets.token_hex(6)}"
        collected: List[Event] = []
        done = asyncio.Event()
        self._eose_waiters[sub_id] = done

        def collect(_url: str, event: Event) -> None:
            collected.append(event)

        try:
            await self.subscribe(sub_id, filters, collect)
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"[RELAY] Query timeout on {self.url}, {len(collected)} events")
        finally:
            await self.unsubscribe(sub_id)
        return collected

    async def _send(self, message: List[Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise RelayNotConnected(self.url)
        try:
            await ws.send_str(json.dumps(message, separators=(",", ":"), ensure_ascii=False))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise RelayError(f"send failed: {e}") from e

    async def _recv_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Фоновое получение сообщений от relay."""
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError) as e:
            logger.warning(f"[RELAY] Receive error on {self.url}: {e}")
        finally:
            if not self._closing:
                self._ws = None
                self._fail_pending("connection lost")
                logger.warning(f"[RELAY] Disconnected: {self.url}")
                if self.on_disconnect:
                    self.on_disconnect(self.url)

    def _handle_message(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"[RELAY] Non-JSON frame from {self.url}")
            return
        if not isinstance(data, list) or not data:
            return

        msg_type = data[0]

        if msg_type == "EVENT" and len(data) >= 3:
            callback = self._subscriptions.get(data[1])
            if callback is None:
                return
            try:
                event = Event.from_dict(data[2])
            except EventError as e:
                logger.debug(f"[RELAY] Malformed event from {self.url}: {e}")
                return
            try:
                callback(self.url, event)
            except Exception as e:
                logger.error(f"[RELAY] Event callback error: {e}")

        elif msg_type == "EOSE" and len(data) >= 2:
            waiter = self._eose_waiters.get(data[1])
            if waiter:
                waiter.set()

        elif msg_type == "OK" and len(data) >= 3:
            future = self._pending_ok.get(data[1])
            if future is None or future.done():
                return
            accepted = bool(data[2])
            message = str(data[3]) if len(data) > 3 else ""
            if accepted or message.startswith(DUPLICATE_PREFIX):
                future.set_result(PublishResult.success(self.url, message))
            else:
                future.set_result(
                    PublishResult.failure(self.url, classify_rejection(message), message)
                )

        elif msg_type == "CLOSED" and len(data) >= 2:
            sub_id = data[1]
            reason = data[2] if len(data) > 2 else ""
            logger.info(f"[RELAY] Subscription {sub_id} closed by {self.url}: {reason}")
            self._subscriptions.pop(sub_id, None)
            waiter = self._eose_waiters.get(sub_id)
            if waiter:
                waiter.set()

        elif msg_type == "NOTICE" and len(data) >= 2:
            logger.info(f"[RELAY] Notice from {self.url}: {data[1]}")

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending_ok.values():
            if not future.done():
                future.set_result(
                    PublishResult.failure(self.url, PublishErrorKind.TRANSPORT, reason)
                )
        for waiter in self._eose_waiters.values():
            waiter.set()
