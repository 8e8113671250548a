"""
Echo Provider - Тестовый провайдер без сети.
"""

from typing import Dict, List

from core.protocol import InferenceParams

from .base import InferenceProvider


class EchoProvider(InferenceProvider):
    """Возвращает последнее сообщение пользователя с префиксом модели."""

    name = "echo"

    async def chat(self, messages: List[Dict[str, str]], params: InferenceParams) -> str:
        user_messages = [m.get("content", "") for m in messages if m.get("role") == "user"]
        last = user_messages[-1] if user_messages else ""
        return f"[{params.model}] {last}"
