"""
Agents - Провайдеры инференса
=============================

[COMPONENTS]
- InferenceProvider: базовый интерфейс
- GroqProvider: облачный Groq API
- EchoProvider: офлайн провайдер для smoke-тестов
"""

from .base import InferenceError, InferenceProvider
from .echo import EchoProvider
from .groq import GroqProvider

__all__ = [
    "InferenceError",
    "InferenceProvider",
    "EchoProvider",
    "GroqProvider",
]
