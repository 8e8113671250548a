"""
DVM Configuration
=================
Централизованная конфигурация для всех модулей DVM.

[CONFIG] Значения по умолчанию читаются из переменных окружения
(.env подгружается в main.py через python-dotenv):
- NOSTR_PRIVATE_KEY: приватный ключ узла (hex, 32 байта)
- NOSTR_RELAYS: список relay через запятую
- ALLOWED_PUBKEY: обслуживать только этого заказчика
- GROQ_API_KEY: ключ провайдера инференса
- DVM_MODELS: список поддерживаемых моделей через запятую
"""

from dataclasses import dataclass, field
from typing import List, Optional

import os


DEFAULT_RELAYS: List[str] = [
    "wss://purplepag.es",
    "wss://nos.lol",
    "wss://relay.damus.io",
    "wss://relay.snort.social",
    "wss://offchain.pub",
    "wss://nostr-pub.wellorder.net",
]

DEFAULT_MODELS: List[str] = [
    "gemma-7b-it",
    "llama3-70b-8192",
    "llama3-8b-8192",
    "mixtral-8x7b-32768",
]


class ConfigError(Exception):
    """Некорректная или неполная конфигурация при старте."""


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass
class RelayConfig:
    """Настройки пула relay."""

    relays: List[str] = field(default_factory=lambda: _env_list("NOSTR_RELAYS", DEFAULT_RELAYS))

    # Таймауты (секунды)
    connect_timeout: float = 10.0
    publish_timeout: float = 10.0
    query_timeout: float = 10.0

    # Health probe: переподключение всех relay не в состоянии CONNECTED
    health_check_interval: float = 30.0

    # После стольких неудач подряд relay помечается FAILED
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 300.0


@dataclass
class DVMConfig:
    """Настройки обработчика задач."""

    private_key: str = field(default_factory=lambda: os.getenv("NOSTR_PRIVATE_KEY", "").strip())

    # [AUTH] Если задан - все остальные заказчики молча игнорируются
    allowed_pubkey: Optional[str] = field(
        default_factory=lambda: os.getenv("ALLOWED_PUBKEY", "").strip() or None
    )

    # Пауза между задачами и между result/success (секунды)
    job_pacing: float = 2.0
    result_delay: float = 2.0

    inference_timeout: float = field(default_factory=lambda: _env_float("DVM_INFERENCE_TIMEOUT", 60.0))

    # Окно поиска собственных результатов при старте (часы)
    lookback_hours: float = 4.0

    # Подписка: окно since и детектор "зависших" relay
    subscription_window: float = 600.0
    stale_after: float = 300.0
    watchdog_interval: float = 30.0

    verify_signatures: bool = True
    max_detail_length: int = 200

    # Объявление (kind 31990)
    name: str = "Groq DVM"
    about: str = "LLM completion service powered by Groq's API"
    web: str = "https://api-endpoint/chat/<bech32>"


@dataclass
class PublishConfig:
    """Повторы исходящих публикаций."""

    max_attempts: int = 3
    base_delay: float = 1.0


@dataclass
class InferenceConfig:
    """Настройки провайдера инференса."""

    groq_api_key: str = field(default_factory=lambda: os.getenv("GROQ_API_KEY", "").strip())
    groq_base_url: str = field(
        default_factory=lambda: os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")
    )
    models: List[str] = field(default_factory=lambda: _env_list("DVM_MODELS", DEFAULT_MODELS))

    # Значения по умолчанию для необязательных параметров запроса
    default_temperature: float = 0.7
    default_max_tokens: int = 1024
    default_top_p: float = 1.0


@dataclass
class MonitoringConfig:
    """Метрики и health checks."""

    metrics_prefix: str = "dvm"
    health_check_interval: float = 30.0
    health_check_timeout: float = 5.0


@dataclass
class Config:
    """Главный конфигурационный класс."""

    relay: RelayConfig = field(default_factory=RelayConfig)
    dvm: DVMConfig = field(default_factory=DVMConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def validate(self) -> None:
        """Проверить обязательные параметры перед запуском узла."""
        if not self.dvm.private_key:
            raise ConfigError("NOSTR_PRIVATE_KEY environment variable must be set")
        if len(self.dvm.private_key) != 64:
            raise ConfigError("NOSTR_PRIVATE_KEY must be 64 hex characters")
        try:
            bytes.fromhex(self.dvm.private_key)
        except ValueError as e:
            raise ConfigError(f"NOSTR_PRIVATE_KEY is not valid hex: {e}") from e
        if not self.relay.relays:
            raise ConfigError("At least one relay must be configured")
        if not self.inference.models:
            raise ConfigError("At least one supported model must be configured")


# Глобальный экземпляр конфигурации
config = Config()
