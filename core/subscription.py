"""
Subscription Manager - Подписка на запросы задач
================================================

[SUBSCRIPTION] Одна логическая подписка (kind 5050, since = now - window)
открывается на всех подключенных relay и автоматически переоткрывается
на relay после каждого его (пере)подключения.

[WATCHDOG] Если событий нет дольше stale_after, подписка закрывается,
relay в FAILED сбрасываются, и подписка открывается заново со свежим since.

[INBOUND] Все доставленные события попадают в одну asyncio.Queue
в виде (relay_url, event).
"""

import asyncio
import logging
import secrets
import time
from typing import Callable, List, Optional, Set, Tuple

from .event import Event, EventKind, Filter
from .pool import EndpointStatus, RelayPool

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """
    Подписка на входящие запросы со сторожевым таймером.

    [USAGE]
    ```python
    subscriptions = SubscriptionManager(pool, window=600, stale_after=300)
    await subscriptions.start()

    url, event = await subscriptions.get()
    ```
    """

    def __init__(
        self,
        pool: RelayPool,
        kinds: Optional[List[int]] = None,
        window: float = 600.0,
        stale_after: float = 300.0,
        check_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            pool: Пул relay
            kinds: Типы событий (по умолчанию JOB_REQUEST)
            window: Глубина since при (пере)открытии подписки (секунды)
            stale_after: Тишина, после которой подписка пересоздаётся
            check_interval: Период проверки сторожевого таймера
            clock: Источник времени (подменяется в тестах)
        """
        self.pool = pool
        self.kinds = kinds or [int(EventKind.JOB_REQUEST)]
        self.window = window
        self.stale_after = stale_after
        self.check_interval = check_interval
        self._clock = clock

        self.sub_id = f"dvm-{secrets.token_hex(4)}"
        self.inbound: "asyncio.Queue[Tuple[str, Event]]" = asyncio.Queue()
        self.last_event_at = clock()
        self.resubscriptions = 0
        self.events_received = 0

        self._attached: Set[str] = set()
        self._running = False
        self._watchdog_task: Optional[asyncio.Task] = None

    def build_filter(self) -> Filter:
        return Filter(kinds=list(self.kinds), since=int(self._clock() - self.window))

    @property
    def attached(self) -> Set[str]:
        return set(self._attached)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.last_event_at = self._clock()

        self.pool.on_connect(self._on_endpoint_connected)
        await self._open()
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info(f"[SUB] Subscribed to kinds {self.kinds} on {len(self._attached)} relays")

    async def stop_watchdog(self) -> None:
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

    async def stop(self) -> None:
        """Остановить сторожевой таймер и закрыть подписку."""
        self._running = False
        await self.stop_watchdog()
        await self.pool.unsubscribe(self.sub_id)
        self._attached.clear()
        logger.info("[SUB] Subscriptions closed")

    async def get(self) -> Tuple[str, Event]:
        """Следующее входящее событие."""
        return await self.inbound.get()

    async def _open(self, urls: Optional[List[str]] = None) -> None:
        if urls is None:
            urls = [u for u in self.pool.connected_urls if u not in self._attached]
        if not urls:
            return
        opened = await self.pool.subscribe(self.sub_id, [self.build_filter()], self._on_event, urls)
        self._attached.update(opened)

    async def _on_endpoint_connected(self, url: str) -> None:
        if not self._running:
            return
        logger.debug(f"[SUB] Re-attaching subscription on {url}")
        await self._open([url])

    def _on_event(self, url: str, event: Event) -> None:
        if event.kind not in self.kinds:
            return
        self.last_event_at = self._clock()
        self.events_received += 1
        self.pool.touch(url)
        self.inbound.put_nowait((url, event))

    def is_stale(self) -> bool:
        return self._clock() - self.last_event_at >= self.stale_after

    async def check(self) -> bool:
        """
        Один проход сторожевого таймера.

        Returns:
            True если подписка была пересоздана
        """
        if not self.is_stale():
            return False
        await self.resubscribe()
        return True

    async def resubscribe(self) -> None:
        """Закрыть и заново открыть подписку на всех relay."""
        idle = self._clock() - self.last_event_at
        logger.warning(f"[SUB] No events for {idle:.0f}s, resubscribing")

        await self.pool.unsubscribe(self.sub_id)
        self._attached.clear()

        for url in self.pool.urls:
            if self.pool.status_of(url) == EndpointStatus.FAILED:
                await self.pool.reset(url)

        self.last_event_at = self._clock()
        self.resubscriptions += 1
        await self._open()
        logger.info(f"[SUB] Resubscribed on {len(self._attached)} relays")

    async def _watchdog_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.check_interval)
                await self.check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[SUB] Watchdog error: {e}")

    def get_stats(self) -> dict:
        return {
            "sub_id": self.sub_id,
            "attached": sorted(self._attached),
            "events_received": self.events_received,
            "last_event_at": self.last_event_at,
            "resubscriptions": self.resubscriptions,
        }
