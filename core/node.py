"""
DVM Node - Сборка движка задач
==============================

[PIPELINE] Поток данных:

    relay -> SubscriptionManager.inbound -> проверка подписи -> parse_job_request
          -> JobDispatcher.enqueue (ledger + allow-list) -> обработка
          -> PublishRetrier -> RelayPool -> relay

[STARTUP]
1. Подключение к relay (RelayPool.start)
2. Заполнение ledger собственными результатами за lookback окно
3. Объявление возможностей (kind 31990)
4. Запуск dispatcher, подписки и health checks

[SHUTDOWN] Порядок остановки:
1. Приём событий и dispatcher
2. Health probe пула, сторожевой таймер подписки, health checks
3. Все подписки
4. Все соединения с relay
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from agents.base import InferenceProvider
from config import Config

from .crypto import Identity
from .dispatcher import JobDispatcher
from .event import Event
from .monitoring import (
    ComponentHealth,
    HealthChecker,
    MetricsCollector,
    check_dispatcher,
    check_memory,
    check_relays,
)
from .pool import RelayPool
from .protocol import build_advertisement, parse_job_request
from .publisher import PublishRetrier
from .relay import PublishResult
from .security.replay import DedupLedger
from .subscription import SubscriptionManager

logger = logging.getLogger(__name__)


class DVMNode:
    """
    Движок DVM: владеет пулом, ledger, очередью и подпиской.

    [USAGE]
    ```python
    node = DVMNode(config, Identity.from_hex(config.dvm.private_key), GroqProvider(...))
    await node.start()
    ...
    await node.stop()
    ```
    """

    def __init__(
        self,
        cfg: Config,
        identity: Identity,
        provider: InferenceProvider,
        pool: Optional[RelayPool] = None,
        metrics: Optional[MetricsCollector] = None,
        advertise: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            cfg: Конфигурация
            identity: Ключ узла
            provider: Провайдер инференса
            pool: Готовый пул (тесты) или None - создаётся из cfg.relay
            metrics: Сборщик метрик или None - создаётся из cfg.monitoring
            advertise: Публиковать ли объявление kind 31990 при старте
            sleep: Функция ожидания для пауз и backoff
        """
        self.config = cfg
        self.identity = identity
        self.provider = provider
        self.advertise_on_start = advertise

        self.metrics = metrics or MetricsCollector(prefix=cfg.monitoring.metrics_prefix)

        self.pool = pool or RelayPool(
            cfg.relay.relays,
            connect_timeout=cfg.relay.connect_timeout,
            publish_timeout=cfg.relay.publish_timeout,
            query_timeout=cfg.relay.query_timeout,
            health_interval=cfg.relay.health_check_interval,
            max_attempts=cfg.relay.max_reconnect_attempts,
            base_delay=cfg.relay.reconnect_base_delay,
            max_delay=cfg.relay.reconnect_max_delay,
        )
        self.retrier = PublishRetrier(
            self.pool,
            max_attempts=cfg.publish.max_attempts,
            base_delay=cfg.publish.base_delay,
            sleep=sleep,
            metrics=self.metrics,
        )
        self.ledger = DedupLedger()
        self.dispatcher = JobDispatcher(
            identity,
            self.retrier,
            self.ledger,
            provider,
            allowed_pubkey=cfg.dvm.allowed_pubkey,
            pacing=cfg.dvm.job_pacing,
            result_delay=cfg.dvm.result_delay,
            inference_timeout=cfg.dvm.inference_timeout,
            max_detail_length=cfg.dvm.max_detail_length,
            sleep=sleep,
            metrics=self.metrics,
        )
        self.subscriptions = SubscriptionManager(
            self.pool,
            window=cfg.dvm.subscription_window,
            stale_after=cfg.dvm.stale_after,
            check_interval=cfg.dvm.watchdog_interval,
        )
        self.health = HealthChecker(
            check_interval=cfg.monitoring.health_check_interval,
            timeout=cfg.monitoring.health_check_timeout,
        )
        self.health.register("relays", self._check_relays)
        self.health.register("dispatcher", lambda: check_dispatcher(self.dispatcher))
        self.health.register("memory", check_memory)

        self._intake_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(f"[DVM] Starting node {self.identity.pubkey[:16]}...")

        await self.pool.start()

        lookback = self.config.dvm.lookback_hours * 3600
        await self.ledger.seed(self.pool, self.identity.pubkey, lookback)

        if self.advertise_on_start:
            await self.advertise()

        await self.dispatcher.start()
        await self.subscriptions.start()
        self._intake_task = asyncio.create_task(self._intake_loop())
        await self.health.start()

        logger.info(
            f"[DVM] Node ready: {len(self.pool.connected_urls)} relays, "
            f"{len(self.ledger)} processed jobs known"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.info("[DVM] Stopping...")

        if self._intake_task:
            self._intake_task.cancel()
            try:
                await self._intake_task
            except asyncio.CancelledError:
                pass
            self._intake_task = None
        await self.dispatcher.stop()

        await self.pool.stop_health_probe()
        await self.subscriptions.stop_watchdog()
        await self.health.stop()

        await self.subscriptions.stop()
        await self.pool.close()
        await self.provider.close()

        logger.info("[DVM] Stopped")

    async def advertise(self) -> PublishResult:
        """Опубликовать объявление обработчика (kind 31990)."""
        dvm = self.config.dvm
        event = build_advertisement(
            self.identity,
            self.config.inference.models,
            name=dvm.name,
            about=dvm.about,
            web=dvm.web,
        )
        result = await self.retrier.publish(event, label="advertisement")
        if result.ok:
            logger.info(f"[DVM] Advertisement published on {len(result.accepted_by)} relays")
        else:
            logger.error(f"[DVM] Advertisement not published: {result.message}")
        return result

    def handle_event(self, url: str, event: Event) -> bool:
        """
        Проверить входящее событие и передать задачу в очередь.

        Returns:
            True если задача принята
        """
        self.metrics.inc("jobs_received_total")

        if self.config.dvm.verify_signatures and not event.verify():
            self.metrics.inc("jobs_dropped_total", labels={"reason": "invalid_signature"})
            logger.info(f"[DVM] [{event.short_id}] Dropped: bad id or signature (from {url})")
            return False

        job = parse_job_request(event, self.config.inference.models)
        if job is None:
            self.metrics.inc("jobs_dropped_total", labels={"reason": "invalid"})
            return False

        return self.dispatcher.enqueue(job)

    async def _intake_loop(self) -> None:
        while self._running:
            url, event = await self.subscriptions.get()
            try:
                self.handle_event(url, event)
            except Exception as e:
                logger.exception(f"[DVM] [{event.short_id}] Intake error: {e}")

    async def _check_relays(self) -> ComponentHealth:
        result = await check_relays(self.pool)
        self.metrics.set("relays_connected", result.details["connected"])
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Сводная статистика узла."""
        return {
            "pubkey": self.identity.pubkey,
            "running": self._running,
            "health": self.health.overall_status().value,
            "relays": self.pool.get_stats(),
            "ledger": self.ledger.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
            "subscriptions": self.subscriptions.get_stats(),
            "metrics": self.metrics.export_json(),
        }
