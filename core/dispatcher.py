"""
Job Dispatcher - Очередь и обработка задач
==========================================

[STATES] Жизненный цикл задачи:

    RECEIVED -> AUTHORIZED -> PROCESSING -> SUCCEEDED
                                        \\-> FAILED

[SEQUENTIAL] Одновременно в PROCESSING не больше одной задачи.
Задачи обрабатываются в порядке поступления (FIFO), после каждой
терминальной задачи - пауза pacing.

[STEPS] Обработка одной задачи:
1. feedback "processing"
2. вызов провайдера с таймаутом
3. публикация результата, отметка в ledger, пауза, feedback "success"
4. при сбое шагов 1-3: feedback "error" с коротким описанием,
   ledger не трогается (повторная доставка будет обработана заново)

[IDEMPOTENCE] enqueue отбрасывает задачу, если её id уже в ledger,
уже в очереди или в обработке.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from agents.base import InferenceError, InferenceProvider

from .crypto import Identity
from .protocol import JobRequest, JobStatus, build_feedback, build_result
from .publisher import PublishRetrier
from .security.replay import DedupLedger

logger = logging.getLogger(__name__)

STATE_HISTORY_SIZE = 1000


class JobState(Enum):
    """Состояние задачи."""
    RECEIVED = auto()
    AUTHORIZED = auto()
    PROCESSING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


class JobDispatcher:
    """
    Последовательная обработка задач.

    [USAGE]
    ```python
    dispatcher = JobDispatcher(identity, retrier, ledger, provider,
                               allowed_pubkey=config.dvm.allowed_pubkey)
    await dispatcher.start()

    if dispatcher.enqueue(job):
        ...

    await dispatcher.stop()
    ```
    """

    def __init__(
        self,
        identity: Identity,
        retrier: PublishRetrier,
        ledger: DedupLedger,
        provider: InferenceProvider,
        allowed_pubkey: Optional[str] = None,
        pacing: float = 2.0,
        result_delay: float = 2.0,
        inference_timeout: float = 60.0,
        max_detail_length: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics=None,
    ):
        """
        Args:
            identity: Ключ узла для подписи результатов
            retrier: Публикация с повторами
            ledger: Множество обработанных задач
            provider: Провайдер инференса
            allowed_pubkey: Единственный разрешённый заказчик или None (все)
            pacing: Пауза после каждой завершённой задачи (секунды)
            result_delay: Пауза между результатом и feedback "success"
            inference_timeout: Таймаут вызова провайдера
            max_detail_length: Лимит длины описания ошибки
            sleep: Функция ожидания (подменяется в тестах)
            metrics: MetricsCollector или None
        """
        self.identity = identity
        self.retrier = retrier
        self.ledger = ledger
        self.provider = provider
        self.allowed_pubkey = allowed_pubkey
        self.pacing = pacing
        self.result_delay = result_delay
        self.inference_timeout = inference_timeout
        self.max_detail_length = max_detail_length
        self._sleep = sleep
        self._metrics = metrics

        self._queue: "asyncio.Queue[JobRequest]" = asyncio.Queue()
        self._live: Set[str] = set()
        self.states: "OrderedDict[str, JobState]" = OrderedDict()
        self.current: Optional[str] = None

        self._running = False
        self._task: Optional[asyncio.Task] = None

        self._stats = {
            "accepted": 0,
            "dropped": 0,
            "succeeded": 0,
            "failed": 0,
            "last_job_time": 0.0,
        }

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def enqueue(self, job: JobRequest) -> bool:
        """
        Принять задачу в очередь.

        Returns:
            True если задача поставлена в очередь
        """
        if self.ledger.has(job.job_id):
            return self._drop(job, "duplicate", "already processed")
        if job.job_id in self._live:
            return self._drop(job, "in_flight", "already queued")

        self._set_state(job.job_id, JobState.RECEIVED)
        if self.allowed_pubkey and job.requester != self.allowed_pubkey:
            self.states.pop(job.job_id, None)
            return self._drop(job, "unauthorized", f"requester {job.requester[:8]} not allowed")

        self._set_state(job.job_id, JobState.AUTHORIZED)
        self._live.add(job.job_id)
        self._queue.put_nowait(job)

        self._stats["accepted"] += 1
        self._count("jobs_accepted_total")
        self._gauge_queue()
        logger.info(
            f"[QUEUE] [{job.short_id}] Accepted ({job.params.model}), queue={self._queue.qsize()}"
        )
        return True

    def _drop(self, job: JobRequest, reason: str, detail: str) -> bool:
        self._stats["dropped"] += 1
        self._count("jobs_dropped_total", labels={"reason": reason})
        logger.info(f"[QUEUE] [{job.short_id}] Dropped: {detail}")
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("[DVM] Dispatcher started")

    async def stop(self) -> None:
        """Остановить цикл. Задача в обработке прерывается."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[DVM] Dispatcher stopped")

    async def join(self) -> None:
        """Дождаться обработки всех задач в очереди."""
        await self._queue.join()

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def is_live(self, job_id: str) -> bool:
        return job_id in self._live

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        """Единственный цикл обработки."""
        while self._running:
            job = await self._queue.get()
            self._gauge_queue()
            try:
                await self.process(job)
            except Exception as e:
                logger.exception(f"[DVM] [{job.short_id}] Unexpected failure: {e}")
                self._set_state(job.job_id, JobState.FAILED)
            finally:
                self._live.discard(job.job_id)
                self._queue.task_done()

            await self._sleep(self.pacing)

    async def process(self, job: JobRequest) -> JobState:
        """
        Обработать одну задачу до терминального состояния.

        Returns:
            SUCCEEDED или FAILED
        """
        self.current = job.job_id
        self._set_state(job.job_id, JobState.PROCESSING)
        logger.info(f"[DVM] [{job.short_id}] Processing ({job.params.model})")

        try:
            feedback = build_feedback(
                self.identity, job.job_id, job.requester, JobStatus.PROCESSING
            )
            published = await self.retrier.publish(feedback, label="processing")
            if not published.ok:
                return await self._fail(job, f"could not publish processing status: {published.message}")

            started = time.monotonic()
            try:
                content = await asyncio.wait_for(
                    self.provider.complete(job.input, job.params),
                    timeout=self.inference_timeout,
                )
            except asyncio.TimeoutError:
                return await self._fail(job, f"timeout after {self.inference_timeout:g}s")
            except InferenceError as e:
                return await self._fail(job, e.message)
            except Exception as e:
                logger.exception(f"[DVM] [{job.short_id}] Provider raised unexpectedly")
                return await self._fail(job, f"provider error: {e}")
            finally:
                self._observe("inference_seconds", time.monotonic() - started)

            result = build_result(
                self.identity, job.job_id, job.requester, content, job.raw
            )
            published = await self.retrier.publish(result, label="result")
            if not published.ok:
                return await self._fail(job, f"could not publish result: {published.message}")

            self.ledger.mark(job.job_id)

            await self._sleep(self.result_delay)
            feedback = build_feedback(
                self.identity, job.job_id, job.requester, JobStatus.SUCCESS
            )
            published = await self.retrier.publish(feedback, label="success")
            if not published.ok:
                logger.warning(f"[DVM] [{job.short_id}] Success status not published")

            self._set_state(job.job_id, JobState.SUCCEEDED)
            self._stats["succeeded"] += 1
            self._stats["last_job_time"] = time.time()
            self._count("jobs_succeeded_total")
            logger.info(f"[DVM] [{job.short_id}] Completed ({len(content or '')} chars)")
            return JobState.SUCCEEDED
        finally:
            self.current = None

    async def _fail(self, job: JobRequest, detail: str) -> JobState:
        """Опубликовать feedback "error" и перевести задачу в FAILED."""
        detail = detail[: self.max_detail_length]
        logger.warning(f"[DVM] [{job.short_id}] Failed: {detail}")

        feedback = build_feedback(
            self.identity, job.job_id, job.requester, JobStatus.ERROR, detail
        )
        published = await self.retrier.publish(feedback, label="error")
        if not published.ok:
            logger.error(f"[DVM] [{job.short_id}] Error status not published")

        self._set_state(job.job_id, JobState.FAILED)
        self._stats["failed"] += 1
        self._stats["last_job_time"] = time.time()
        self._count("jobs_failed_total")
        return JobState.FAILED

    # ------------------------------------------------------------------
    # State / stats
    # ------------------------------------------------------------------

    def state_of(self, job_id: str) -> Optional[JobState]:
        return self.states.get(job_id)

    def _set_state(self, job_id: str, state: JobState) -> None:
        self.states[job_id] = state
        self.states.move_to_end(job_id)
        while len(self.states) > STATE_HISTORY_SIZE:
            self.states.popitem(last=False)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "queued": self._queue.qsize(),
            "current": self.current[:8] if self.current else None,
            **self._stats,
        }

    def _count(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        if self._metrics is not None:
            self._metrics.inc(name, labels=labels)

    def _observe(self, name: str, value: float) -> None:
        if self._metrics is not None:
            self._metrics.observe(name, value)

    def _gauge_queue(self) -> None:
        if self._metrics is not None:
            self._metrics.set("queue_depth", self._queue.qsize())
