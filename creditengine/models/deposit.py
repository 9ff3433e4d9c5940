"""
SQLAlchemy модель депозита
"""

import enum

from sqlalchemy import BigInteger, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from creditengine.database import Base


class DepositStatus(str, enum.Enum):
    """Статусы депозита"""

    PENDING = "pending"
    CREDITED = "credited"
    REORGED = "reorged"
    REVERSED = "reversed"


class Deposit(Base):
    """Модель входящего on-chain платежа"""

    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, index=True)
    tx_hash = Column(String(66), unique=True, nullable=False, index=True)
    address = Column(String(64), nullable=False, index=True)  # Зачисляемый счет
    amount = Column(BigInteger, nullable=False)  # В минимальных единицах (сатоши)
    confirmations = Column(Integer, nullable=False, default=0)
    # NULL до первого наблюдения в сети, никогда не подставляется 0
    tx_block = Column(Integer, nullable=True)
    block_hash = Column(String(66), nullable=True)
    status = Column(
        String(16), nullable=False, default=DepositStatus.PENDING.value, index=True
    )
    received_at = Column(DateTime, nullable=False, default=func.now(), index=True)
    credited_at = Column(DateTime, nullable=True)

    audits = relationship("Audit", back_populates="deposit", order_by="Audit.id")

    @property
    def is_observed(self) -> bool:
        """Видели ли мы транзакцию в сети хотя бы раз"""
        return self.block_hash is not None

    def __repr__(self):
        return (
            f"<Deposit(id={self.id}, tx_hash='{self.tx_hash[:12]}...', "
            f"status='{self.status}')>"
        )
