"""
Pydantic схемы для счетов
"""

from pydantic import BaseModel, Field


class Account(BaseModel):
    """Баланс счета"""

    address: str
    balance: int = Field(..., description="Баланс в минимальных единицах")

    class Config:
        from_attributes = True
