"""
Health Checker - Проверка здоровья DVM
======================================

[HEALTH CHECKS]
- relays: хотя бы один relay подключен (иначе UNHEALTHY),
  часть relay в FAILED - DEGRADED
- dispatcher: цикл обработки задач работает
- memory: использование памяти процесса/хоста (psutil)

Общий статус: HEALTHY если все компоненты здоровы, UNHEALTHY если хотя
бы один нездоров, иначе DEGRADED.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Статус здоровья."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    """Здоровье компонента."""
    name: str
    status: HealthStatus
    message: str = ""
    last_check: float = field(default_factory=time.time)
    response_time_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "last_check": self.last_check,
            "response_time_ms": self.response_time_ms,
            "details": self.details,
        }


CheckFunc = Callable[[], Awaitable[ComponentHealth]]


class HealthChecker:
    """
    Периодическая проверка компонентов узла.

    [USAGE]
    ```python
    checker = HealthChecker(check_interval=30)
    checker.register("relays", lambda: check_relays(pool))
    await checker.start()

    status = await checker.get_status()
    ```
    """

    def __init__(self, check_interval: float = 30.0, timeout: float = 5.0):
        """
        Args:
            check_interval: Интервал проверок (секунды)
            timeout: Таймаут на одну проверку
        """
        self.check_interval = check_interval
        self.timeout = timeout

        self._checks: Dict[str, CheckFunc] = {}
        self._results: Dict[str, ComponentHealth] = {}

        self._started = False
        self._start_time = time.time()
        self._check_task: Optional[asyncio.Task] = None

    def register(self, name: str, check_func: CheckFunc) -> None:
        """Зарегистрировать async проверку компонента."""
        self._checks[name] = check_func
        self._results[name] = ComponentHealth(
            name=name,
            status=HealthStatus.UNKNOWN,
            message="Not checked yet",
        )
        logger.debug(f"[HEALTH] Registered check: {name}")

    async def start(self) -> None:
        """Запустить периодические проверки."""
        if self._started:
            return
        self._started = True
        self._start_time = time.time()

        await self.check_now()
        self._check_task = asyncio.create_task(self._check_loop())
        logger.info(f"[HEALTH] Started (interval={self.check_interval}s)")

    async def stop(self) -> None:
        self._started = False
        if self._check_task:
            self._check_task.cancel()
            try:
                await self._check_task
            except asyncio.CancelledError:
                pass
            self._check_task = None

    async def check_now(self) -> None:
        await asyncio.gather(*(self._run_check(name) for name in self._checks))

    async def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.overall_status().value,
            "timestamp": time.time(),
            "uptime": time.time() - self._start_time,
            "components": {
                name: result.to_dict() for name, result in self._results.items()
            },
        }

    def get_component_status(self, name: str) -> Optional[ComponentHealth]:
        return self._results.get(name)

    def overall_status(self) -> HealthStatus:
        if not self._results:
            return HealthStatus.UNKNOWN

        statuses = [r.status for r in self._results.values()]
        if all(s == HealthStatus.HEALTHY for s in statuses):
            return HealthStatus.HEALTHY
        if any(s == HealthStatus.UNHEALTHY for s in statuses):
            return HealthStatus.UNHEALTHY
        return HealthStatus.DEGRADED

    async def _check_loop(self) -> None:
        while self._started:
            try:
                await asyncio.sleep(self.check_interval)
                await self.check_now()
            except asyncio.CancelledError:
                break

    async def _run_check(self, name: str) -> None:
        check_func = self._checks[name]
        start = time.time()

        try:
            result = await asyncio.wait_for(check_func(), timeout=self.timeout)
            result.response_time_ms = (time.time() - start) * 1000
            result.last_check = time.time()
        except asyncio.TimeoutError:
            result = ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Timeout after {self.timeout}s",
                response_time_ms=self.timeout * 1000,
            )
        except Exception as e:
            logger.error(f"[HEALTH] Check {name} failed: {e}")
            result = ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Error: {e}",
                response_time_ms=(time.time() - start) * 1000,
            )

        previous = self._results[name].status
        self._results[name] = result
        if previous != result.status and previous != HealthStatus.UNKNOWN:
            logger.warning(
                f"[HEALTH] {name}: {previous.value} -> {result.status.value} ({result.message})"
            )


async def check_relays(pool) -> ComponentHealth:
    """Проверка пула relay."""
    stats = pool.get_stats()
    connected = stats["connected"]
    total = stats["total"]
    failed = sum(1 for ep in stats["endpoints"] if ep["status"] == "failed")

    if connected == 0:
        status = HealthStatus.UNHEALTHY
    elif connected < total:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    return ComponentHealth(
        name="relays",
        status=status,
        message=f"{connected}/{total} connected, {failed} failed",
        details={"connected": connected, "total": total, "failed": failed},
    )


async def check_dispatcher(dispatcher) -> ComponentHealth:
    """Проверка цикла обработки задач."""
    stats = dispatcher.get_stats()
    status = HealthStatus.HEALTHY if stats["running"] else HealthStatus.UNHEALTHY
    return ComponentHealth(
        name="dispatcher",
        status=status,
        message=f"queue={stats['queued']}, current={stats['current'] or '-'}",
        details=stats,
    )


async def check_memory(threshold_percent: float = 90.0) -> ComponentHealth:
    """Проверка памяти."""
    memory = psutil.virtual_memory()

    status = HealthStatus.HEALTHY
    if memory.percent > threshold_percent:
        status = HealthStatus.UNHEALTHY
    elif memory.percent > threshold_percent * 0.8:
        status = HealthStatus.DEGRADED

    return ComponentHealth(
        name="memory",
        status=status,
        message=f"{memory.percent:.1f}% used",
        details={
            "total": memory.total,
            "available": memory.available,
            "percent": memory.percent,
        },
    )
