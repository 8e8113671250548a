"""
Monitoring Module - Health Checks и Metrics
===========================================

[COMPONENTS]
- HealthChecker: Проверка здоровья relay, dispatcher и хоста
- MetricsCollector: Сбор и экспорт метрик (Prometheus / JSON)
"""

from .health import (
    HealthChecker,
    HealthStatus,
    ComponentHealth,
    check_dispatcher,
    check_memory,
    check_relays,
)

from .metrics import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
)

__all__ = [
    "HealthChecker",
    "HealthStatus",
    "ComponentHealth",
    "check_dispatcher",
    "check_memory",
    "check_relays",
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
]
