"""
SQLAlchemy модель записи аудита
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from creditengine.database import Base


class Audit(Base):
    """Запись о действии, изменившем статус депозита (только добавление)"""

    __tablename__ = "audits"

    id = Column(Integer, primary_key=True, index=True)
    deposit_id = Column(Integer, ForeignKey("deposits.id"), nullable=False, index=True)
    action = Column(String(32), nullable=False)  # credited / reorged / reversed
    created_at = Column(DateTime, nullable=False, default=func.now())

    deposit = relationship("Deposit", back_populates="audits")

    def __repr__(self):
        return f"<Audit(deposit_id={self.deposit_id}, action='{self.action}')>"
