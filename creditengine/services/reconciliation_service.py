"""
Сервис сверки депозитов с блокчейном
"""

import enum
import logging
import threading
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from creditengine.config import settings
from creditengine.models import Deposit
from creditengine.services.bitcoin_rpc import get_bitcoin_rpc
from creditengine.services.chain_observer import ChainObserver, ChainQueryError
from creditengine.services.ledger_store import (
    CreditResult,
    LedgerError,
    LedgerStore,
    get_ledger_store,
)

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Исключение для ошибок тика сверки"""

    pass


class ReconciliationInProgressError(ReconciliationError):
    """Тик сверки уже выполняется"""

    pass


class DepositAction(str, enum.Enum):
    """Чем закончилась обработка депозита в тике"""

    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"
    REORGED = "reorged"
    PENDING = "pending"
    SKIPPED = "skipped"  # сбой запроса к блокчейну, повтор на следующем тике
    FAILED = "failed"  # сбой хранилища, повтор на следующем тике
    NOT_PENDING = "not_pending"  # депозит уже обработан другим экземпляром


class DepositOutcome(BaseModel):
    """Событие обработки одного депозита"""

    deposit_id: int
    tx_hash: str
    action: DepositAction
    confirmations: Optional[int] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class ReconciliationReport(BaseModel):
    """Итог одного тика сверки"""

    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[DepositOutcome] = []
    counts: Dict[str, int] = {}

    def count(self, action: DepositAction) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == action)

    @property
    def processed(self) -> int:
        return len(self.outcomes)


class ReconciliationService:
    """
    Машина состояний депозита, один проход по всем pending депозитам

    Депозиты обрабатываются строго последовательно. Ошибка одного депозита
    не прерывает обработку остальных: запрос к цепи, упавший с
    ChainQueryError, или упавшая транзакция хранилища повторяются на
    следующем тике.
    """

    def __init__(
        self,
        store: LedgerStore,
        chain: ChainObserver,
        required_confirmations: Optional[int] = None,
    ):
        self.store = store
        self.chain = chain
        self.required_confirmations = (
            required_confirmations
            if required_confirmations is not None
            else settings.REQUIRED_CONFIRMATIONS
        )
        self._tick_lock = threading.Lock()
        self._stats = {
            "ticks": 0,
            "credited": 0,
            "reorged": 0,
            "skipped": 0,
            "failed": 0,
            "last_tick_at": None,
            "last_error": None,
        }

    @property
    def is_running(self) -> bool:
        """Выполняется ли сейчас тик"""
        return self._tick_lock.locked()

    @property
    def stats(self) -> Dict[str, Any]:
        """Накопленная статистика сверки"""
        return self._stats.copy()

    def process_once(self) -> ReconciliationReport:
        """
        Один тик сверки

        Raises:
            ReconciliationInProgressError: другой тик еще не завершен
            ReconciliationError: не удалось прочитать pending депозиты
        """
        if not self._tick_lock.acquire(blocking=False):
            raise ReconciliationInProgressError("Сверка уже выполняется")

        try:
            report = ReconciliationReport(started_at=datetime.now(timezone.utc))

            try:
                deposits = self.store.get_pending_deposits()
            except LedgerError as e:
                self._stats["last_error"] = str(e)
                logger.error(f"Не удалось получить pending депозиты: {e}")
                raise ReconciliationError(
                    f"Не удалось получить pending депозиты: {e}"
                ) from e

            for deposit in deposits:
                outcome = self.reconcile_deposit(deposit)
                report.outcomes.append(outcome)

            report.finished_at = datetime.now(timezone.utc)
            report.counts = {
                action.value: report.count(action) for action in DepositAction
            }
            self._update_stats(report)

            if report.processed:
                logger.info(
                    f"Тик сверки: депозитов={report.processed}, "
                    f"зачислено={report.count(DepositAction.CREDITED)}, "
                    f"reorged={report.count(DepositAction.REORGED)}, "
                    f"пропущено={report.count(DepositAction.SKIPPED)}, "
                    f"ошибок={report.count(DepositAction.FAILED)}"
                )
            return report

        finally:
            self._tick_lock.release()

    def reconcile_deposit(self, deposit: Deposit) -> DepositOutcome:
        """
        Переход одного pending депозита

        Правила применяются по порядку: запрос к цепи, отсутствие квитанции,
        смена блока, сохранение наблюдения, неуспешное исполнение, порог
        подтверждений.
        """
        try:
            info = self.chain.finality_info(deposit.tx_hash)
        except ChainQueryError as e:
            logger.warning(f"Запрос к цепи для {deposit.tx_hash} не удался: {e}")
            return self._outcome(deposit, DepositAction.SKIPPED, error=str(e))

        try:
            if not info.found:
                self.store.mark_deposit_reorged(deposit.id)
                return self._outcome(
                    deposit, DepositAction.REORGED, reason="receipt_not_found"
                )

            if deposit.block_hash is not None and deposit.block_hash != info.block_hash:
                logger.warning(
                    f"Блок депозита {deposit.id} сменился: "
                    f"{deposit.block_hash} -> {info.block_hash}"
                )
                self.store.mark_deposit_reorged(deposit.id)
                return self._outcome(
                    deposit,
                    DepositAction.REORGED,
                    confirmations=info.confirmations,
                    reason="block_hash_changed",
                )

            if not self.store.record_observation(deposit.id, info):
                logger.info(f"Депозит {deposit.id} уже вышел из pending, пропускаем")
                return self._outcome(
                    deposit, DepositAction.NOT_PENDING, confirmations=info.confirmations
                )

            if info.reverted:
                self.store.mark_deposit_reorged(deposit.id)
                return self._outcome(
                    deposit,
                    DepositAction.REORGED,
                    confirmations=info.confirmations,
                    reason="reverted",
                )

            if info.confirmations < self.required_confirmations:
                return self._outcome(
                    deposit, DepositAction.PENDING, confirmations=info.confirmations
                )

            result = self.store.credit_if_not_credited(deposit)
            action = (
                DepositAction.CREDITED
                if result == CreditResult.CREDITED
                else DepositAction.ALREADY_CREDITED
            )
            return self._outcome(deposit, action, confirmations=info.confirmations)

        except LedgerError as e:
            logger.error(f"Ошибка хранилища для депозита {deposit.id}: {e}")
            return self._outcome(
                deposit,
                DepositAction.FAILED,
                confirmations=info.confirmations,
                error=str(e),
            )

    @staticmethod
    def _outcome(
        deposit: Deposit, action: DepositAction, **fields: Any
    ) -> DepositOutcome:
        return DepositOutcome(
            deposit_id=deposit.id, tx_hash=deposit.tx_hash, action=action, **fields
        )

    def _update_stats(self, report: ReconciliationReport) -> None:
        self._stats["ticks"] += 1
        self._stats["credited"] += report.count(DepositAction.CREDITED)
        self._stats["reorged"] += report.count(DepositAction.REORGED)
        self._stats["skipped"] += report.count(DepositAction.SKIPPED)
        self._stats["failed"] += report.count(DepositAction.FAILED)
        self._stats["last_tick_at"] = report.finished_at
        failures = [
            outcome.error
            for outcome in report.outcomes
            if outcome.action in (DepositAction.SKIPPED, DepositAction.FAILED)
        ]
        if failures:
            self._stats["last_error"] = failures[-1]


@lru_cache
def get_reconciliation_service() -> ReconciliationService:
    """
    Общий экземпляр сервиса сверки

    Фоновая задача и API используют один экземпляр: статистика и блокировка
    тика у них общие.
    """
    return ReconciliationService(get_ledger_store(), get_bitcoin_rpc())
