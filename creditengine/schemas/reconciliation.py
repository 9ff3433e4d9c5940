"""
Pydantic схемы для статуса сверки
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ReconciliationStats(BaseModel):
    """Накопленная статистика сверки"""

    ticks: int
    credited: int
    reorged: int
    skipped: int
    failed: int
    last_tick_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ReconciliationStatus(BaseModel):
    """Состояние цикла сверки"""

    scheduler_running: bool
    tick_in_progress: bool
    required_confirmations: int
    interval: float
    stats: ReconciliationStats
