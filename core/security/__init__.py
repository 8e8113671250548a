"""
Security Module - Защита от повторной обработки
===============================================

[COMPONENTS]
- DedupLedger: Множество обработанных задач, заполняемое из собственных результатов
"""

from .replay import (
    DedupLedger,
    DEFAULT_LOOKBACK_SECONDS,
)

__all__ = [
    "DedupLedger",
    "DEFAULT_LOOKBACK_SECONDS",
]
