"""
SQLAlchemy модель счета
"""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from creditengine.database import Base


class Account(Base):
    """Модель внутреннего счета"""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    address = Column(String(64), unique=True, nullable=False, index=True)
    balance = Column(BigInteger, nullable=False, default=0)  # Баланс в сатоши
    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<Account(address='{self.address}', balance={self.balance})>"
