"""
DVM Protocol - Кодек сообщений NIP-90
=====================================

[PROTOCOL] Четыре формы сообщений:
- 31990 HANDLER_INFO: объявление возможностей (k, web, d; JSON content)
- 5050 JOB_REQUEST: входящий запрос (i, param...)
- 6050 JOB_RESULT: результат (e, p, request; content = текст)
- 7000 JOB_FEEDBACK: статус (e, p, status)

[SECURITY] parse_job_request никогда не бросает исключений:
некорректный запрос логируется и отбрасывается (None).
Все исходящие события подписываются последним шагом (Event.create).
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .crypto import Identity
from .event import Event, EventKind

logger = logging.getLogger(__name__)


# Значения по умолчанию для необязательных параметров
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TOP_P = 1.0

ENCRYPTED_MARKER = "encrypted"

_FLOAT_PARAMS = ("temperature", "top_p", "frequency_penalty")
_INT_PARAMS = ("max_tokens", "top_k")


class JobStatus(str, Enum):
    """Статус в JOB_FEEDBACK."""
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class InferenceParams:
    """Параметры инференса из тегов param."""
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    top_p: float = DEFAULT_TOP_P
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        if self.top_k is not None:
            data["top_k"] = self.top_k
        if self.frequency_penalty is not None:
            data["frequency_penalty"] = self.frequency_penalty
        return data


@dataclass(frozen=True)
class JobRequest:
    """
    Принятая единица работы.

    [INVARIANT] job_id = id исходного события, не меняется.
    """
    job_id: str
    requester: str
    input: str
    input_type: str
    params: InferenceParams
    raw: Event
    relay_hint: Optional[str] = None
    marker: Optional[str] = None
    created_at: int = 0
    received_at: float = field(default_factory=time.time)

    @property
    def short_id(self) -> str:
        return self.job_id[:8]


def build_advertisement(
    identity: Identity,
    models: Iterable[str],
    name: str,
    about: str,
    web: str,
    created_at: Optional[int] = None,
) -> Event:
    """
    Объявление обработчика (NIP-89).

    Детерминировано во всём кроме created_at.
    """
    content = json.dumps(
        {
            "name": name,
            "about": about,
            "nip90Params": {"models": list(models)},
        },
        separators=(",", ":"),
    )
    tags = [
        ["d", f"dvm-{int(EventKind.JOB_REQUEST)}"],
        ["k", str(int(EventKind.JOB_REQUEST))],
        ["web", web],
    ]
    return Event.create(identity, EventKind.HANDLER_INFO, tags, content, created_at)


def _param_name(raw: str) -> str:
    return raw.strip().lower().replace("-", "_")


def _is_encrypted(event: Event, input_tag: Optional[tuple]) -> bool:
    if event.get_tag(ENCRYPTED_MARKER) is not None:
        return True
    return bool(input_tag and len(input_tag) > 4 and input_tag[4] == ENCRYPTED_MARKER)


def parse_job_request(event: Event, supported_models: Iterable[str]) -> Optional[JobRequest]:
    """
    Разобрать входящий JOB_REQUEST.

    Returns:
        JobRequest или None если запрос невалиден / не поддерживается
    """
    if event.kind != EventKind.JOB_REQUEST:
        logger.debug(f"[CODEC] [{event.short_id}] Unexpected kind {event.kind}")
        return None

    input_tag = event.get_tag("i")
    if _is_encrypted(event, input_tag):
        logger.info(f"[CODEC] [{event.short_id}] Encrypted job requests are not supported")
        return None

    if input_tag is None or len(input_tag) < 2 or not input_tag[1]:
        logger.info(f"[CODEC] [{event.short_id}] Missing input tag")
        return None

    params: Dict[str, str] = {}
    for tag in event.get_tags("param"):
        if len(tag) < 3:
            continue
        # Первое значение побеждает
        params.setdefault(_param_name(tag[1]), tag[2])

    model = params.get("model")
    if not model:
        logger.info(f"[CODEC] [{event.short_id}] Missing model parameter")
        return None
    if model not in set(supported_models):
        logger.info(f"[CODEC] [{event.short_id}] Unsupported model: {model}")
        return None

    values: Dict[str, Any] = {}
    try:
        for name in _FLOAT_PARAMS:
            if name in params:
                values[name] = float(params[name])
        for name in _INT_PARAMS:
            if name in params:
                values[name] = int(params[name])
    except ValueError as e:
        logger.info(f"[CODEC] [{event.short_id}] Invalid parameter value: {e}")
        return None

    return JobRequest(
        job_id=event.id,
        requester=event.pubkey,
        input=input_tag[1],
        input_type=input_tag[2] if len(input_tag) > 2 and input_tag[2] else "text",
        params=InferenceParams(
            model=model,
            temperature=values.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=values.get("max_tokens", DEFAULT_MAX_TOKENS),
            top_p=values.get("top_p", DEFAULT_TOP_P),
            top_k=values.get("top_k"),
            frequency_penalty=values.get("frequency_penalty"),
        ),
        raw=event,
        relay_hint=input_tag[3] if len(input_tag) > 3 and input_tag[3] else None,
        marker=input_tag[4] if len(input_tag) > 4 and input_tag[4] else None,
        created_at=event.created_at,
    )


def build_result(
    identity: Identity,
    job_id: str,
    requester: str,
    content: Optional[str],
    request_event: Event,
    created_at: Optional[int] = None,
) -> Event:
    """Результат задачи. Пустой ответ провайдера -> content == ""."""
    tags = [
        ["e", job_id],
        ["p", requester],
        ["request", request_event.to_json()],
    ]
    return Event.create(identity, EventKind.JOB_RESULT, tags, content or "", created_at)


def build_feedback(
    identity: Identity,
    job_id: str,
    requester: str,
    status: JobStatus,
    detail: Optional[str] = None,
    created_at: Optional[int] = None,
) -> Event:
    """Статус задачи (processing / success / error)."""
    tags = [
        ["e", job_id],
        ["p", requester],
        ["status", JobStatus(status).value, detail or ""],
    ]
    return Event.create(identity, EventKind.JOB_FEEDBACK, tags, "", created_at)
