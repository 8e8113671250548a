"""
Relay Pool - Управление набором relay
=====================================

[STATES] Состояние каждого relay:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -(обрыв)-> RECONNECTING -> CONNECTING
    RECONNECTING -(max_attempts неудач подряд)-> FAILED

FAILED - терминальное состояние до внешнего reset() (например, при
переподписке). Relay никогда не удаляются из пула.

[BACKOFF] Задержка перед попыткой N:
    base * 2^(N-1) * (1 + jitter), jitter in [0, 1), не больше max_delay
Интервалы попыток соседних номеров не пересекаются, поэтому
последовательность задержек не убывает.

[CONCURRENCY] Состояние relay меняется только под его asyncio.Lock:
health probe и переподписка не могут одновременно переподключать
один и тот же relay.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from .event import Event, Filter
from .relay import (
    EventCallback,
    PublishErrorKind,
    PublishResult,
    RelayClient,
    RelayError,
)

logger = logging.getLogger(__name__)


class EndpointStatus(Enum):
    """Состояние соединения с relay."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class Endpoint:
    """Один relay и его состояние."""
    url: str
    client: RelayClient
    status: EndpointStatus = EndpointStatus.DISCONNECTED
    failures: int = 0
    last_event_at: float = 0.0
    last_connected_at: float = 0.0
    last_delay: float = 0.0
    connect_attempts: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    reconnect_task: Optional[asyncio.Task] = None

    def to_dict(self) -> Dict:
        return {
            "url": self.url,
            "status": self.status.value,
            "failures": self.failures,
            "last_event_at": self.last_event_at,
            "last_connected_at": self.last_connected_at,
        }


ConnectListener = Callable[[str], Awaitable[None]]


class RelayPool:
    """
    Пул relay: подключение, health probe, переподключение, fan-out публикаций.

    [USAGE]
    ```python
    pool = RelayPool(config.relay.relays)
    await pool.start()

    result = await pool.publish(event)
    events = await pool.query([Filter(kinds=[6050], authors=[pubkey])])

    await pool.close()
    ```
    """

    def __init__(
        self,
        urls: List[str],
        client_factory: Callable[[str], RelayClient] = RelayClient,
        connect_timeout: float = 10.0,
        publish_timeout: float = 10.0,
        query_timeout: float = 10.0,
        health_interval: float = 30.0,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            urls: Адреса relay (дубликаты игнорируются)
            client_factory: Фабрика клиентов (подменяется в тестах)
            health_interval: Интервал health probe (секунды)
            max_attempts: Неудач подряд до FAILED
            base_delay: База экспоненциального backoff (секунды)
            max_delay: Потолок задержки
            sleep: Функция ожидания перед переподключением
        """
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout
        self.query_timeout = query_timeout
        self.health_interval = health_interval
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

        self._endpoints: Dict[str, Endpoint] = {}
        for url in urls:
            if url in self._endpoints:
                continue
            client = client_factory(url)
            client.on_disconnect = self._on_client_disconnect
            self._endpoints[url] = Endpoint(url=url, client=client)

        self._connect_listeners: List[ConnectListener] = []
        self._health_task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Подключиться ко всем relay и запустить health probe."""
        if self._running:
            return
        self._running = True

        await asyncio.gather(*(self.connect(url) for url in self._endpoints))
        self._health_task = asyncio.create_task(self._health_loop())

        logger.info(
            f"[POOL] Started: {len(self.connected_urls)}/{len(self._endpoints)} relays connected"
        )

    async def stop_health_probe(self) -> None:
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    async def close(self) -> None:
        """Остановить probe, отменить переподключения, закрыть соединения."""
        self._running = False
        await self.stop_health_probe()

        for endpoint in self._endpoints.values():
            if endpoint.reconnect_task:
                endpoint.reconnect_task.cancel()
                endpoint.reconnect_task = None

        await asyncio.gather(
            *(self._close_endpoint(ep) for ep in self._endpoints.values()),
            return_exceptions=True,
        )
        logger.info("[POOL] Closed")

    async def _close_endpoint(self, endpoint: Endpoint) -> None:
        async with endpoint.lock:
            await endpoint.client.close()
            endpoint.status = EndpointStatus.DISCONNECTED

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def urls(self) -> List[str]:
        return list(self._endpoints)

    @property
    def connected_urls(self) -> List[str]:
        return [
            url for url, ep in self._endpoints.items()
            if ep.status == EndpointStatus.CONNECTED and ep.client.is_connected
        ]

    def get_endpoint(self, url: str) -> Endpoint:
        return self._endpoints[url]

    def status_of(self, url: str) -> EndpointStatus:
        return self._endpoints[url].status

    def on_connect(self, listener: ConnectListener) -> None:
        """Callback после каждого успешного (пере)подключения."""
        self._connect_listeners.append(listener)

    def touch(self, url: str) -> None:
        """Отметить время последнего события от relay."""
        endpoint = self._endpoints.get(url)
        if endpoint:
            endpoint.last_event_at = time.time()

    def get_stats(self) -> Dict:
        return {
            "total": len(self._endpoints),
            "connected": len(self.connected_urls),
            "endpoints": [ep.to_dict() for ep in self._endpoints.values()],
        }

    # ------------------------------------------------------------------
    # Connect / reconnect
    # ------------------------------------------------------------------

    async def connect(self, url: str) -> bool:
        """
        Подключиться к relay. Идемпотентно для уже подключенного.

        Returns:
            True если relay в состоянии CONNECTED
        """
        endpoint = self._endpoints[url]

        async with endpoint.lock:
            if endpoint.status == EndpointStatus.CONNECTED and endpoint.client.is_connected:
                return True
            if endpoint.status == EndpointStatus.FAILED:
                return False

            endpoint.status = EndpointStatus.CONNECTING
            endpoint.connect_attempts += 1
            try:
                await endpoint.client.connect(timeout=self.connect_timeout)
            except RelayError as e:
                endpoint.failures += 1
                endpoint.status = EndpointStatus.DISCONNECTED
                logger.warning(
                    f"[POOL] Failed to connect to {url} "
                    f"(attempt {endpoint.failures}/{self.max_attempts}): {e}"
                )
                connected = False
            else:
                endpoint.failures = 0
                endpoint.status = EndpointStatus.CONNECTED
                endpoint.last_connected_at = time.time()
                logger.info(f"[POOL] Connected to relay: {url}")
                connected = True

        if connected:
            await self._notify_connected(url)
        elif self._running:
            self.schedule_reconnect(url)
        return connected

    def reconnect_delay(self, attempt: int) -> float:
        """Задержка перед попыткой номер attempt (с 1)."""
        exponent = max(attempt, 1) - 1
        delay = self.base_delay * (2 ** exponent) * (1 + random.random())
        return min(delay, self.max_delay)

    def schedule_reconnect(self, url: str) -> None:
        """
        Запланировать переподключение с экспоненциальной задержкой.

        Не делает ничего если relay FAILED, уже подключен, подключение
        идет прямо сейчас или переподключение уже запланировано.
        """
        endpoint = self._endpoints[url]

        if endpoint.status in (EndpointStatus.FAILED, EndpointStatus.CONNECTED):
            return
        if endpoint.status == EndpointStatus.CONNECTING or endpoint.lock.locked():
            return
        if endpoint.reconnect_task and not endpoint.reconnect_task.done():
            return

        if endpoint.failures >= self.max_attempts:
            endpoint.status = EndpointStatus.FAILED
            logger.error(
                f"[POOL] Relay {url} marked FAILED after {endpoint.failures} attempts"
            )
            return

        delay = self.reconnect_delay(endpoint.failures)
        endpoint.last_delay = delay
        endpoint.status = EndpointStatus.RECONNECTING
        endpoint.reconnect_task = asyncio.create_task(self._reconnect_after(url, delay))
        logger.debug(f"[POOL] Reconnect to {url} in {delay:.1f}s")

    async def _reconnect_after(self, url: str, delay: float) -> None:
        await self._sleep(delay)
        endpoint = self._endpoints[url]
        endpoint.reconnect_task = None
        if self._running:
            await self.connect(url)

    async def reset(self, url: Optional[str] = None) -> None:
        """
        Внешний сброс счётчика неудач (FAILED -> DISCONNECTED) и
        новая попытка подключения.
        """
        urls = [url] if url else list(self._endpoints)
        for target in urls:
            endpoint = self._endpoints[target]
            async with endpoint.lock:
                endpoint.failures = 0
                if endpoint.status == EndpointStatus.FAILED:
                    endpoint.status = EndpointStatus.DISCONNECTED
                    logger.info(f"[POOL] Relay {target} reset")
        await asyncio.gather(
            *(self.connect(target) for target in urls
              if self._endpoints[target].status == EndpointStatus.DISCONNECTED)
        )

    def _on_client_disconnect(self, url: str) -> None:
        endpoint = self._endpoints.get(url)
        if endpoint is None or not self._running:
            return
        if endpoint.status == EndpointStatus.CONNECTED:
            endpoint.status = EndpointStatus.DISCONNECTED
        self.schedule_reconnect(url)

    async def _notify_connected(self, url: str) -> None:
        for listener in list(self._connect_listeners):
            try:
                await listener(url)
            except Exception as e:
                logger.error(f"[POOL] Connect listener error for {url}: {e}")

    async def probe(self) -> None:
        """Один проход health probe."""
        for url, endpoint in self._endpoints.items():
            if endpoint.status == EndpointStatus.CONNECTED and not endpoint.client.is_connected:
                # Сокет умер молча
                endpoint.status = EndpointStatus.DISCONNECTED
            if endpoint.status != EndpointStatus.CONNECTED:
                self.schedule_reconnect(url)

    async def _health_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.health_interval)
                await self.probe()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[POOL] Health probe error: {e}")

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def publish(self, event: Event) -> PublishResult:
        """
        Опубликовать на все подключенные relay.

        Успех - если хотя бы один relay принял событие.
        """
        targets = [self._endpoints[url] for url in self.connected_urls]
        if not targets:
            return PublishResult.failure("", PublishErrorKind.TRANSPORT, "no connected relays")

        results = await asyncio.gather(
            *(ep.client.publish(event, timeout=self.publish_timeout) for ep in targets)
        )

        accepted = tuple(r.relay for r in results if r.ok)
        if accepted:
            return PublishResult(ok=True, relay=accepted[0], accepted_by=accepted)

        failures = [r for r in results if not r.ok]
        rate_limited = [r for r in failures if r.rate_limited]
        worst = rate_limited[0] if rate_limited else failures[0]
        message = "; ".join(f"{r.relay}: {r.message}" for r in failures)
        return PublishResult.failure(worst.relay, worst.error_kind, message)

    async def query(self, filters: List[Filter]) -> List[Event]:
        """Запрос ко всем подключенным relay, события без дубликатов."""
        targets = [self._endpoints[url] for url in self.connected_urls]
        batches = await asyncio.gather(
            *(ep.client.query(filters, timeout=self.query_timeout) for ep in targets),
            return_exceptions=True,
        )

        seen: Dict[str, Event] = {}
        for ep, batch in zip(targets, batches):
            if isinstance(batch, BaseException):
                logger.warning(f"[POOL] Query failed on {ep.url}: {batch}")
                continue
            for event in batch:
                seen.setdefault(event.id, event)
        return list(seen.values())

    async def subscribe(
        self,
        sub_id: str,
        filters: List[Filter],
        on_event: EventCallback,
        urls: Optional[List[str]] = None,
    ) -> List[str]:
        """
        Открыть подписку на подключенных relay.

        Returns:
            Список relay, на которых подписка открыта
        """
        targets = urls if urls is not None else self.connected_urls
        opened: List[str] = []
        for url in targets:
            endpoint = self._endpoints[url]
            try:
                await endpoint.client.subscribe(sub_id, filters, on_event)
                opened.append(url)
            except RelayError as e:
                logger.warning(f"[POOL] Subscribe failed on {url}: {e}")
        return opened

    async def unsubscribe(self, sub_id: str) -> None:
        await asyncio.gather(
            *(ep.client.unsubscribe(sub_id) for ep in self._endpoints.values()),
            return_exceptions=True,
        )
