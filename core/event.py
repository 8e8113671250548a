"""
Nostr Event - Модель события и фильтры подписки
===============================================

[PROTOCOL] Событие NIP-01:
- id: sha256 канонической сериализации (hex)
- pubkey: автор (x-only hex)
- created_at: unix timestamp (секунды)
- kind: тип события
- tags: список списков строк
- content: произвольная строка
- sig: Schnorr подпись над id

[IMMUTABLE] Event - frozen dataclass. Любое изменение после подписи
сделало бы его невалидным, поэтому подпись ставится при создании
через Event.create(...) и больше не меняется.
"""

import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

from .crypto import Identity, compute_event_id, verify_signature


class EventKind(IntEnum):
    """Типы событий, с которыми работает DVM."""
    JOB_REQUEST = 5050
    JOB_RESULT = 6050
    JOB_FEEDBACK = 7000
    HANDLER_INFO = 31990


class EventError(ValueError):
    """Событие не соответствует формату NIP-01."""


@dataclass(frozen=True)
class Event:
    """Подписанное событие Nostr."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: Tuple[Tuple[str, ...], ...]
    content: str
    sig: str

    @classmethod
    def create(
        cls,
        identity: Identity,
        kind: int,
        tags: List[List[str]],
        content: str = "",
        created_at: Optional[int] = None,
    ) -> "Event":
        """
        Собрать и подписать событие.

        [SECURITY] ID вычисляется по всем полям кроме id/sig,
        подпись - последний шаг.
        """
        ts = int(created_at if created_at is not None else time.time())
        tag_lists = [[str(v) for v in tag] for tag in tags]
        event_id = compute_event_id(identity.pubkey, ts, int(kind), tag_lists, content)
        return cls(
            id=event_id,
            pubkey=identity.pubkey,
            created_at=ts,
            kind=int(kind),
            tags=tuple(tuple(tag) for tag in tag_lists),
            content=content,
            sig=identity.sign(event_id),
        )

    def tag_lists(self) -> List[List[str]]:
        return [list(tag) for tag in self.tags]

    def to_dict(self) -> Dict[str, Any]:
        """Сериализация в словарь (формат NIP-01)."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tag_lists(),
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        """
        Десериализация из словаря.

        Raises:
            EventError: если поля отсутствуют или имеют неверный тип
        """
        if not isinstance(data, dict):
            raise EventError("event must be a JSON object")
        try:
            event_id = data["id"]
            pubkey = data["pubkey"]
            created_at = data["created_at"]
            kind = data["kind"]
            tags = data["tags"]
            content = data["content"]
            sig = data["sig"]
        except KeyError as e:
            raise EventError(f"missing field {e.args[0]!r}") from e

        if not all(isinstance(v, str) for v in (event_id, pubkey, content, sig)):
            raise EventError("id, pubkey, content and sig must be strings")
        if isinstance(created_at, bool) or not isinstance(created_at, int):
            raise EventError("created_at must be an integer")
        if isinstance(kind, bool) or not isinstance(kind, int):
            raise EventError("kind must be an integer")
        if not isinstance(tags, list) or not all(
            isinstance(tag, list) and all(isinstance(v, str) for v in tag) for tag in tags
        ):
            raise EventError("tags must be a list of string lists")

        return cls(
            id=event_id,
            pubkey=pubkey,
            created_at=created_at,
            kind=kind,
            tags=tuple(tuple(tag) for tag in tags),
            content=content,
            sig=sig,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "Event":
        try:
            return cls.from_dict(json.loads(raw))
        except json.JSONDecodeError as e:
            raise EventError(f"invalid JSON: {e}") from e

    def get_tag(self, name: str) -> Optional[Tuple[str, ...]]:
        """Первый тег с данным именем."""
        for tag in self.tags:
            if tag and tag[0] == name:
                return tag
        return None

    def get_tags(self, name: str) -> List[Tuple[str, ...]]:
        return [tag for tag in self.tags if tag and tag[0] == name]

    def tag_value(self, name: str) -> Optional[str]:
        """Значение (второй элемент) первого тега с данным именем."""
        tag = self.get_tag(name)
        if tag is None or len(tag) < 2:
            return None
        return tag[1]

    def has_valid_id(self) -> bool:
        return self.id == compute_event_id(
            self.pubkey, self.created_at, self.kind, self.tag_lists(), self.content
        )

    def verify(self) -> bool:
        """Проверить и ID, и подпись."""
        return self.has_valid_id() and verify_signature(self.pubkey, self.id, self.sig)

    @property
    def short_id(self) -> str:
        return self.id[:8]


@dataclass
class Filter:
    """
    Фильтр подписки (REQ).

    [USAGE]
    ```python
    Filter(kinds=[EventKind.JOB_RESULT], authors=[pubkey], since=now - 4 * 3600)
    Filter(kinds=[EventKind.JOB_FEEDBACK], tags={"e": [request_id]})
    ```
    """

    kinds: List[int] = field(default_factory=list)
    authors: List[str] = field(default_factory=list)
    ids: List[str] = field(default_factory=list)
    tags: Dict[str, List[str]] = field(default_factory=dict)
    since: Optional[int] = None
    until: Optional[int] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.ids:
            data["ids"] = list(self.ids)
        if self.kinds:
            data["kinds"] = [int(k) for k in self.kinds]
        if self.authors:
            data["authors"] = list(self.authors)
        for name, values in self.tags.items():
            data[f"#{name}"] = list(values)
        if self.since is not None:
            data["since"] = int(self.since)
        if self.until is not None:
            data["until"] = int(self.until)
        if self.limit is not None:
            data["limit"] = int(self.limit)
        return data

    def matches(self, event: Event) -> bool:
        """Локальная проверка события (relay могут присылать лишнее)."""
        if self.ids and event.id not in self.ids:
            return False
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.authors and event.pubkey not in self.authors:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        for name, values in self.tags.items():
            present = {tag[1] for tag in event.get_tags(name) if len(tag) > 1}
            if not present.intersection(values):
                return False
        return True
