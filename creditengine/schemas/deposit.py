"""
Pydantic схемы для депозитов
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class Deposit(BaseModel):
    """Депозит"""

    id: int
    tx_hash: str = Field(..., description="Хеш транзакции")
    address: str = Field(..., description="Зачисляемый адрес")
    amount: int = Field(..., description="Сумма в минимальных единицах")
    confirmations: int = Field(
        ..., description="Последнее наблюдаемое число подтверждений"
    )
    tx_block: Optional[int] = Field(
        None, description="Блок транзакции, если наблюдался"
    )
    block_hash: Optional[str] = Field(None, description="Хеш блока, если наблюдался")
    status: str = Field(..., description="pending / credited / reorged / reversed")
    received_at: datetime
    credited_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DepositListResponse(BaseModel):
    """Ответ со списком депозитов"""

    deposits: List[Deposit]
    total: int


class AuditEntry(BaseModel):
    """Запись аудита"""

    deposit_id: int
    action: str
    created_at: datetime

    class Config:
        from_attributes = True


class ReverseResponse(BaseModel):
    """Результат сторнирования"""

    deposit: Deposit
    message: str
