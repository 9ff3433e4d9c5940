"""
Хранилище леджера: депозиты, балансы счетов и аудит

Единственный путь изменения балансов. Каждая операция выполняется в
отдельной транзакции; баланс, статус и запись аудита фиксируются вместе
или не фиксируются вовсе.
"""

import enum
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import asc, desc, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from creditengine.database import SessionLocal
from creditengine.models import Account, Audit, Deposit, DepositStatus
from creditengine.services.chain_observer import FinalityInfo

logger = logging.getLogger(__name__)

ACTION_CREDITED = "credited"
ACTION_REORGED = "reorged"
ACTION_REVERSED = "reversed"


class LedgerError(Exception):
    """Базовое исключение хранилища леджера"""

    pass


class StoreError(LedgerError):
    """Сбой транзакции: соединение, ограничение целостности и т.п."""

    pass


class DepositNotFoundError(LedgerError):
    """Депозит с таким id не существует"""

    pass


class InvalidStateError(LedgerError):
    """Операция недопустима в текущем статусе депозита"""

    pass


class CreditResult(str, enum.Enum):
    """Результат идемпотентного зачисления"""

    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStore:
    """Транзакционные операции над депозитами и счетами"""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """
        Одна транзакция БД

        Исключения предметной области пробрасываются как есть после rollback,
        ошибки SQLAlchemy оборачиваются в StoreError.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Ошибка транзакции леджера: {e}")
            raise StoreError(f"Транзакция отменена: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _lock_deposit(self, session: Session, deposit_id: int) -> Deposit:
        """
        Эксклюзивное удержание строки депозита до конца транзакции

        SELECT ... FOR UPDATE; на SQLite то же обеспечивает BEGIN IMMEDIATE
        (см. creditengine.database).
        """
        deposit = session.execute(
            select(Deposit).where(Deposit.id == deposit_id).with_for_update()
        ).scalar_one_or_none()
        if deposit is None:
            raise DepositNotFoundError(f"Депозит {deposit_id} не найден")
        return deposit

    @staticmethod
    def _append_audit(session: Session, deposit_id: int, action: str) -> None:
        session.add(Audit(deposit_id=deposit_id, action=action, created_at=_utcnow()))

    @staticmethod
    def _adjust_balance(session: Session, address: str, delta: int) -> bool:
        """
        Изменение баланса одним UPDATE ... SET balance = balance + :delta

        Строка счета не читается в Python, поэтому параллельные транзакции
        по разным депозитам одного адреса не затирают изменения друг друга.

        Returns:
            False, если счета еще нет
        """
        result = session.execute(
            update(Account)
            .where(Account.address == address)
            .values(balance=Account.balance + delta)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # Запись

    def create_deposit(
        self,
        tx_hash: str,
        address: str,
        amount: int,
        received_at: Optional[datetime] = None,
    ) -> Deposit:
        """
        Регистрация нового депозита в статусе pending

        Вызывается внешним детектором платежей; блок и хеш блока неизвестны.
        """
        if amount <= 0:
            raise ValueError("Сумма депозита должна быть положительной")

        with self._transaction() as session:
            deposit = Deposit(
                tx_hash=tx_hash,
                address=address,
                amount=amount,
                confirmations=0,
                tx_block=None,
                block_hash=None,
                status=DepositStatus.PENDING.value,
                received_at=received_at or _utcnow(),
                credited_at=None,
            )
            session.add(deposit)
            session.flush()
            logger.info(f"Зарегистрирован депозит {deposit.id} ({tx_hash})")
            return deposit

    def record_observation(self, deposit_id: int, info: FinalityInfo) -> bool:
        """
        Сохранение блока, хеша блока и подтверждений pending депозита

        Returns:
            False, если депозит уже вышел из pending (например, зачислен
            другим экземпляром сервиса); наблюдение тогда не сохраняется
        """
        with self._transaction() as session:
            result = session.execute(
                update(Deposit)
                .where(
                    Deposit.id == deposit_id,
                    Deposit.status == DepositStatus.PENDING.value,
                )
                .values(
                    tx_block=info.observed_block,
                    block_hash=info.block_hash,
                    confirmations=info.confirmations,
                )
            )
            if result.rowcount == 0:
                if session.get(Deposit, deposit_id) is None:
                    raise DepositNotFoundError(f"Депозит {deposit_id} не найден")
                return False
            return True

    def credit_if_not_credited(self, deposit: Deposit) -> CreditResult:
        """
        Идемпотентное зачисление депозита

        Статус читается под блокировкой строки, поэтому при любом числе
        параллельных вызовов баланс увеличивается ровно один раз. Сумма и
        адрес берутся из заблокированной строки, а не из переданного объекта.
        """
        with self._transaction() as session:
            locked = self._lock_deposit(session, deposit.id)

            if locked.status in (
                DepositStatus.CREDITED.value,
                DepositStatus.REVERSED.value,
            ):
                # Уже зачислен однажды: ничего не делаем
                session.rollback()
                logger.debug(f"Депозит {deposit.id} уже зачислен")
                return CreditResult.ALREADY_CREDITED

            if locked.status != DepositStatus.PENDING.value:
                raise InvalidStateError(
                    f"Депозит {locked.id} в статусе {locked.status} нельзя зачислить"
                )

            if not self._adjust_balance(session, locked.address, locked.amount):
                session.add(Account(address=locked.address, balance=locked.amount))
            locked.status = DepositStatus.CREDITED.value
            locked.credited_at = _utcnow()
            self._append_audit(session, locked.id, ACTION_CREDITED)

            logger.info(
                f"Депозит {locked.id} зачислен: {locked.amount} на {locked.address}"
            )
            return CreditResult.CREDITED

    def mark_deposit_reorged(self, deposit_id: int) -> None:
        """
        Перевод депозита в reorged

        Баланс не меняется. Повторный вызов для reorged депозита допустим и
        добавляет еще одну запись аудита. Зачисленный или сторнированный
        депозит в reorged не переводится.
        """
        with self._transaction() as session:
            result = session.execute(
                update(Deposit)
                .where(
                    Deposit.id == deposit_id,
                    Deposit.status.in_(
                        [DepositStatus.PENDING.value, DepositStatus.REORGED.value]
                    ),
                )
                .values(status=DepositStatus.REORGED.value)
            )
            if result.rowcount == 0:
                self._raise_for_missing_or_state(session, deposit_id, "reorged")

            self._append_audit(session, deposit_id, ACTION_REORGED)
            logger.warning(f"Депозит {deposit_id} помечен как reorged")

    def reverse_credit(self, deposit_id: int) -> Deposit:
        """
        Сторнирование зачисленного депозита (ручная операция оператора)

        Raises:
            InvalidStateError: депозит не в статусе credited
        """
        with self._transaction() as session:
            deposit = self._lock_deposit(session, deposit_id)
            if deposit.status != DepositStatus.CREDITED.value:
                raise InvalidStateError(
                    f"Депозит {deposit_id} не зачислен (статус {deposit.status})"
                )

            if not self._adjust_balance(session, deposit.address, -deposit.amount):
                raise StoreError(f"Счет {deposit.address} не найден")
            deposit.status = DepositStatus.REVERSED.value
            self._append_audit(session, deposit_id, ACTION_REVERSED)

            logger.warning(
                f"Депозит {deposit_id} сторнирован: -{deposit.amount} "
                f"с {deposit.address}"
            )
            return deposit

    def _raise_for_missing_or_state(
        self, session: Session, deposit_id: int, operation: str
    ) -> None:
        status = session.execute(
            select(Deposit.status).where(Deposit.id == deposit_id)
        ).scalar_one_or_none()
        if status is None:
            raise DepositNotFoundError(f"Депозит {deposit_id} не найден")
        raise InvalidStateError(
            f"Операция '{operation}' недопустима для депозита {deposit_id} "
            f"в статусе {status}"
        )

    # Чтение

    def list_deposits(self) -> List[Deposit]:
        """Все депозиты, новые сверху (для страницы статуса)"""
        with self._transaction() as session:
            return list(
                session.execute(
                    select(Deposit).order_by(
                        desc(Deposit.received_at), desc(Deposit.id)
                    )
                ).scalars()
            )

    def get_pending_deposits(self) -> List[Deposit]:
        """Депозиты в статусе pending в порядке поступления"""
        with self._transaction() as session:
            return list(
                session.execute(
                    select(Deposit)
                    .where(Deposit.status == DepositStatus.PENDING.value)
                    .order_by(asc(Deposit.received_at), asc(Deposit.id))
                ).scalars()
            )

    def get_deposit(self, deposit_id: int) -> Deposit:
        with self._transaction() as session:
            deposit = session.get(Deposit, deposit_id)
            if deposit is None:
                raise DepositNotFoundError(f"Депозит {deposit_id} не найден")
            return deposit

    def get_account(self, address: str) -> Optional[Account]:
        with self._transaction() as session:
            return session.execute(
                select(Account).where(Account.address == address)
            ).scalar_one_or_none()

    def list_audits(self, deposit_id: int) -> List[Audit]:
        """Журнал аудита депозита в порядке записи"""
        with self._transaction() as session:
            if session.get(Deposit, deposit_id) is None:
                raise DepositNotFoundError(f"Депозит {deposit_id} не найден")
            return list(
                session.execute(
                    select(Audit)
                    .where(Audit.deposit_id == deposit_id)
                    .order_by(asc(Audit.id))
                ).scalars()
            )


def get_ledger_store() -> LedgerStore:
    """Получение хранилища леджера (dependency в FastAPI)"""
    return LedgerStore(SessionLocal)
