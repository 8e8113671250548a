"""
Inference Provider - Базовый интерфейс LLM
==========================================

[CONTRACT] Провайдер получает сообщения чата и параметры инференса,
возвращает текст ответа. Любая ошибка - InferenceError; флаг
rate_limited позволяет вызывающему коду отличить перегрузку
апстрима от прочих сбоев.
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from core.protocol import InferenceParams


class InferenceError(Exception):
    """Ошибка вызова модели."""

    def __init__(self, message: str, rate_limited: bool = False):
        super().__init__(message)
        self.message = message
        self.rate_limited = rate_limited


class InferenceProvider(ABC):
    """
    Базовый класс провайдера.

    Наследники реализуют chat(). complete() оборачивает промпт в одно
    сообщение пользователя.
    """

    name: str = "base"

    @abstractmethod
    async def chat(self, messages: List[Dict[str, str]], params: InferenceParams) -> str:
        """
        Args:
            messages: [{"role": "user", "content": "..."}]
            params: Модель и параметры сэмплирования

        Returns:
            Текст ответа ("" если модель ничего не вернула)

        Raises:
            InferenceError
        """

    async def complete(self, prompt: str, params: InferenceParams) -> str:
        return await self.chat([{"role": "user", "content": prompt}], params)

    async def close(self) -> None:
        pass
