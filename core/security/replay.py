"""
Deduplication Ledger - Защита от повторной обработки задач
==========================================================

[SECURITY] Повторная доставка одного и того же запроса (несколько relay,
переподписка, рестарт узла) не должна приводить к повторной обработке.

Решение:
- In-memory множество обработанных job id
- При старте множество заполняется из собственных опубликованных
  результатов (kind 6050 за lookback окно): каждый тег `e` результата
  ссылается на уже обработанную задачу
- Пишет в ledger только dispatcher (один writer)

[PERFORMANCE] has/mark - O(1). Опциональный max_size вытесняет самые
старые записи.
"""

import logging
import time
from collections import OrderedDict
from typing import Dict, Optional

from ..event import EventKind, Filter

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_SECONDS: float = 4 * 3600


class DedupLedger:
    """
    Множество уже обработанных задач.

    [USAGE]
        ledger = DedupLedger()
        await ledger.seed(pool, identity.pubkey, lookback_seconds=4 * 3600)

        if not ledger.has(job.job_id):
            # Обрабатываем задачу
            ...
            ledger.mark(job.job_id)
    """

    def __init__(self, max_size: Optional[int] = None):
        """
        Args:
            max_size: Лимит записей или None (без вытеснения)
        """
        self.max_size = max_size
        self._processed: "OrderedDict[str, float]" = OrderedDict()
        self.seeded_count = 0

    async def seed(
        self,
        pool,
        pubkey: str,
        lookback_seconds: float = DEFAULT_LOOKBACK_SECONDS,
    ) -> int:
        """
        Заполнить ledger из собственных результатов.

        Args:
            pool: RelayPool (нужен query)
            pubkey: Собственный pubkey узла
            lookback_seconds: Глубина окна

        Returns:
            Количество добавленных job id
        """
        since = int(time.time() - lookback_seconds)
        events = await pool.query([
            Filter(kinds=[EventKind.JOB_RESULT], authors=[pubkey], since=since)
        ])

        added = 0
        for event in events:
            if event.kind != EventKind.JOB_RESULT or event.pubkey != pubkey:
                continue
            for tag in event.get_tags("e"):
                if len(tag) > 1 and tag[1] and not self.has(tag[1]):
                    self.mark(tag[1])
                    added += 1

        self.seeded_count += added
        logger.info(
            f"[LEDGER] Seeded {added} processed jobs from {len(events)} results "
            f"(lookback {lookback_seconds / 3600:.1f}h)"
        )
        return added

    def has(self, job_id: str) -> bool:
        return job_id in self._processed

    def mark(self, job_id: str) -> None:
        """Отметить задачу как обработанную."""
        self._processed[job_id] = time.time()
        self._processed.move_to_end(job_id)
        if self.max_size is not None:
            while len(self._processed) > self.max_size:
                self._processed.popitem(last=False)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._processed

    def __len__(self) -> int:
        return len(self._processed)

    def get_stats(self) -> Dict:
        return {
            "processed": len(self._processed),
            "seeded": self.seeded_count,
            "max_size": self.max_size,
        }
