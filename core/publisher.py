"""
Publish Retrier - Повторная публикация с backoff
================================================

[POLICY] Две ветки ожидания между попытками:
- rate-limited: base * 2^attempt * (1 + jitter), jitter in [0, 1)
- любая другая ошибка: фиксированная пауза base

Попытки нумеруются с 1. После последней попытки ожидания нет.
Классификация берётся из PublishResult.error_kind, текст ошибок не разбирается.
Счётчики публикаций размечены меткой kind: label вызывающего кода
(processing, result, success, error, advertisement) или номер kind события.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from .event import Event
from .relay import PublishResult

logger = logging.getLogger(__name__)


class PublishRetrier:
    """
    Публикация через пул с ограниченным числом повторов.

    [USAGE]
    ```python
    retrier = PublishRetrier(pool, max_attempts=3, base_delay=1.0)
    result = await retrier.publish(event, label="result")
    if not result.ok:
        ...
    ```
    """

    def __init__(
        self,
        pool,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        metrics=None,
    ):
        """
        Args:
            pool: Объект с методом async publish(event) -> PublishResult
            max_attempts: Максимум попыток (>= 1)
            base_delay: База задержки (секунды)
            sleep: Функция ожидания (подменяется в тестах)
            rng: Источник jitter в [0, 1)
            metrics: MetricsCollector или None
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.pool = pool
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._rng = rng
        self._metrics = metrics

    def delay_for(self, result: PublishResult, attempt: int) -> float:
        """Пауза после неудачной попытки номер attempt."""
        if result.rate_limited:
            return self.base_delay * (2 ** attempt) * (1 + self._rng())
        return self.base_delay

    async def publish(self, event: Event, label: str = "") -> PublishResult:
        """
        Опубликовать событие, повторяя при неудаче.

        Returns:
            Первый успешный результат или результат последней попытки
        """
        tag = label or f"kind {event.kind}"
        kind = label or str(int(event.kind))
        result: Optional[PublishResult] = None

        for attempt in range(1, self.max_attempts + 1):
            result = await self.pool.publish(event)
            self._count("publish_attempts_total", kind)

            if result.ok:
                if attempt > 1:
                    logger.info(f"[PUBLISH] {tag} {event.short_id} published on attempt {attempt}")
                else:
                    logger.debug(f"[PUBLISH] {tag} {event.short_id} published")
                return result

            if attempt == self.max_attempts:
                break

            delay = self.delay_for(result, attempt)
            if result.rate_limited:
                self._count("publish_rate_limited_total", kind)
                logger.warning(
                    f"[PUBLISH] {tag} {event.short_id} rate limited "
                    f"(attempt {attempt}/{self.max_attempts}), waiting {delay:.1f}s"
                )
            else:
                logger.warning(
                    f"[PUBLISH] {tag} {event.short_id} failed "
                    f"(attempt {attempt}/{self.max_attempts}): {result.message}"
                )
            await self._sleep(delay)

        self._count("publish_failures_total", kind)
        logger.error(
            f"[PUBLISH] {tag} {event.short_id} failed after {self.max_attempts} attempts: "
            f"{result.message if result else ''}"
        )
        return result

    def _count(self, name: str, kind: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(name, labels={"kind": kind})
