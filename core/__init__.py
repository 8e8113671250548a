"""
Core DVM Module
===============
Содержит сетевой слой и кодек NIP-90:
- Identity: ключи secp256k1 и Schnorr подписи
- Event / Filter: модель события NIP-01 и фильтры подписки
- Protocol: сборка и разбор сообщений DVM (5050 / 6050 / 7000 / 31990)
- RelayClient / RelayPool: соединения с relay, переподключение, fan-out
- PublishRetrier: повторная публикация с backoff
- Security: ledger обработанных задач
- Monitoring: health checks и metrics

JobDispatcher, SubscriptionManager и DVMNode импортируются из своих
модулей напрямую (core.dispatcher, core.subscription, core.node): они
зависят от agents, который сам импортирует core.protocol.
"""

from .crypto import Identity, compute_event_id, verify_signature
from .event import Event, EventError, EventKind, Filter
from .protocol import (
    InferenceParams,
    JobRequest,
    JobStatus,
    build_advertisement,
    build_feedback,
    build_result,
    parse_job_request,
)
from .relay import (
    PublishErrorKind,
    PublishResult,
    RelayClient,
    RelayError,
    RelayNotConnected,
)
from .pool import Endpoint, EndpointStatus, RelayPool
from .publisher import PublishRetrier

__all__ = [
    "Identity",
    "compute_event_id",
    "verify_signature",
    "Event",
    "EventError",
    "EventKind",
    "Filter",
    "InferenceParams",
    "JobRequest",
    "JobStatus",
    "build_advertisement",
    "build_feedback",
    "build_result",
    "parse_job_request",
    "PublishErrorKind",
    "PublishResult",
    "RelayClient",
    "RelayError",
    "RelayNotConnected",
    "Endpoint",
    "EndpointStatus",
    "RelayPool",
    "PublishRetrier",
]
