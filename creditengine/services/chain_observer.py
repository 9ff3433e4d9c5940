"""
Контракт наблюдателя за блокчейном

Цикл сверки зависит только от ChainObserver: живой клиент Bitcoin Core
и детерминированный двойник для тестов реализуют один и тот же интерфейс.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel


class ChainQueryError(Exception):
    """Ошибка транспорта или RPC при запросе к блокчейну"""

    pass


class FinalityInfo(BaseModel):
    """
    Сведения о финальности транзакции

    found=False означает, что квитанции нет: транзакция выброшена,
    вытеснена реорганизацией или никогда не была в блоке. Это не ошибка.
    """

    found: bool
    observed_block: Optional[int] = None
    block_hash: Optional[str] = None
    confirmations: int = 0
    reverted: bool = False

    class Config:
        frozen = True

    @classmethod
    def not_found(cls) -> "FinalityInfo":
        return cls(found=False)


def compute_confirmations(head_height: int, observed_block: int) -> int:
    """
    Число подтверждений: блок транзакции и все блоки после него

    Если локальная голова отстала от блока транзакции, возвращается 0.
    """
    if head_height < observed_block:
        return 0
    return head_height - observed_block + 1


class ChainObserver(ABC):
    """Возможности наблюдателя: высота головы и финальность транзакции"""

    @abstractmethod
    def head_height(self) -> int:
        """Высота текущей головы цепи. ChainQueryError при сбое."""

    @abstractmethod
    def finality_info(self, tx_hash: str) -> FinalityInfo:
        """Финальность транзакции. ChainQueryError при сбое."""
