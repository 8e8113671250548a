"""
Identity - Ключи и подписи Nostr
================================

[SECURITY] Этот модуль обеспечивает:
1. Идентичность узла: secp256k1 ключевая пара, pubkey = x-only (32 байта hex)
2. ID события: sha256 от канонической сериализации NIP-01
3. Подписи: BIP-340 Schnorr поверх ID события

[DECENTRALIZATION] Нет центра сертификации - любой участник
проверяет подпись по pubkey отправителя.
"""

import hashlib
import json
import logging
from typing import Any, List, Optional

from coincurve import PrivateKey, PublicKeyXOnly

logger = logging.getLogger(__name__)


def canonical_serialize(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: List[List[str]],
    content: str,
) -> bytes:
    """
    Каноническая сериализация события для вычисления ID.

    [NIP-01] [0, pubkey, created_at, kind, tags, content] без пробелов,
    UTF-8 без экранирования не-ASCII символов.
    """
    payload: List[Any] = [0, pubkey, created_at, kind, tags, content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: List[List[str]],
    content: str,
) -> str:
    """ID события = hex(sha256(canonical_serialize(...)))."""
    return hashlib.sha256(canonical_serialize(pubkey, created_at, kind, tags, content)).hexdigest()


def verify_signature(pubkey: str, event_id: str, signature: str) -> bool:
    """
    Проверить Schnorr подпись.

    Returns:
        False для любых некорректных входных данных (не бросает исключений)
    """
    try:
        key = PublicKeyXOnly(bytes.fromhex(pubkey))
        return key.verify(bytes.fromhex(signature), bytes.fromhex(event_id))
    except (ValueError, TypeError) as e:
        logger.debug(f"[CRYPTO] Signature check failed: {e}")
        return False


class Identity:
    """
    Ключевая пара узла.

    [USAGE]
    ```python
    identity = Identity.from_hex(config.dvm.private_key)
    sig = identity.sign(event_id)
    ```
    """

    def __init__(self, private_key: Optional[PrivateKey] = None):
        """
        Args:
            private_key: Существующий ключ или None для генерации нового
        """
        self._private_key: PrivateKey = private_key or PrivateKey()
        self.pubkey: str = self._private_key.public_key_xonly.format().hex()

    @classmethod
    def from_hex(cls, secret_hex: str) -> "Identity":
        """Восстановить идентичность из hex приватного ключа (64 символа)."""
        secret = bytes.fromhex(secret_hex.strip())
        if len(secret) != 32:
            raise ValueError("Private key must be exactly 32 bytes")
        return cls(PrivateKey(secret))

    @classmethod
    def generate(cls) -> "Identity":
        return cls()

    def export_hex(self) -> str:
        """Экспорт приватного ключа для сохранения."""
        return self._private_key.secret.hex()

    def sign(self, event_id: str) -> str:
        """Подписать 32-байтный ID события (hex) по BIP-340."""
        digest = bytes.fromhex(event_id)
        if len(digest) != 32:
            raise ValueError("Event id must be a 32-byte hex digest")
        return self._private_key.sign_schnorr(digest).hex()

    def __repr__(self) -> str:
        return f"Identity(pubkey={self.pubkey[:16]}...)"
