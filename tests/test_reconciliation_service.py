"""
Тесты машины состояний сверки депозитов
"""

import os
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

from creditengine.database import create_db_engine, create_session_factory, init_db
from creditengine.models import DepositStatus
from creditengine.services.chain_observer import FinalityInfo
from creditengine.services.ledger_store import LedgerStore, StoreError
from creditengine.services.mock_chain import InMemoryChainObserver
from creditengine.services.reconciliation_service import (
    DepositAction,
    ReconciliationError,
    ReconciliationInProgressError,
    ReconciliationService,
)

REQUIRED_CONFIRMATIONS = 12


class ReconciliationTestCase(unittest.TestCase):
    """Сервис сверки поверх временной SQLite и in-memory цепи"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "ledger.db")
        self.engine = create_db_engine(f"sqlite:///{db_path}")
        init_db(self.engine)
        self.store = LedgerStore(create_session_factory(self.engine))
        self.chain = InMemoryChainObserver(head=100)
        self.service = ReconciliationService(
            self.store, self.chain, required_confirmations=REQUIRED_CONFIRMATIONS
        )

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    def status(self, deposit_id):
        return self.store.get_deposit(deposit_id).status

    def balance(self, address):
        account = self.store.get_account(address)
        return account.balance if account else None

    def audit_actions(self, deposit_id):
        return [audit.action for audit in self.store.list_audits(deposit_id)]


class TestReconciliationScenarios(ReconciliationTestCase):
    """Сценарии переходов pending депозита"""

    def test_confirmed_deposit_is_credited(self):
        """Голова 102, блок 90, порог 12: 13 подтверждений, зачисление"""
        self.chain.head = 102
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)
        self.chain.include_transaction("0xabc", block=90, block_hash="0xhash")

        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.CREDITED)
        self.assertEqual(report.outcomes[0].confirmations, 13)
        self.assertEqual(self.status(deposit.id), DepositStatus.CREDITED.value)
        self.assertEqual(self.balance("0xaddr"), 1000)
        self.assertEqual(self.audit_actions(deposit.id), ["credited"])

        stored = self.store.get_deposit(deposit.id)
        self.assertEqual(stored.tx_block, 90)
        self.assertEqual(stored.block_hash, "0xhash")
        self.assertEqual(stored.confirmations, 13)

    def test_missing_receipt_marks_reorged(self):
        """Голова 100, квитанции нет: reorged, баланс не меняется"""
        deposit = self.store.create_deposit("0xdef", "0xaddr", 2000)

        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.REORGED)
        self.assertEqual(report.outcomes[0].reason, "receipt_not_found")
        self.assertEqual(self.status(deposit.id), DepositStatus.REORGED.value)
        self.assertEqual(self.audit_actions(deposit.id), ["reorged"])
        self.assertIsNone(self.balance("0xaddr"))

    def test_missing_receipt_after_enough_confirmations_is_never_credited(self):
        """Сохраненные подтверждения выше порога не спасают исчезнувшую транзакцию"""
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)
        self.store.record_observation(
            deposit.id,
            FinalityInfo(
                found=True, observed_block=80, block_hash="0xhash", confirmations=21
            ),
        )

        self.service.process_once()
        self.chain.include_transaction("0xabc", block=80, block_hash="0xhash")
        report = self.service.process_once()

        self.assertEqual(report.processed, 0)
        self.assertEqual(self.status(deposit.id), DepositStatus.REORGED.value)
        self.assertIsNone(self.balance("0xaddr"))

    def test_block_hash_change_marks_reorged_despite_confirmations(self):
        """Смена блока важнее достаточного числа подтверждений"""
        self.chain.include_transaction("0xabc", block=95, block_hash="0xold")
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        first = self.service.process_once()
        self.assertEqual(first.outcomes[0].action, DepositAction.PENDING)

        self.chain.reorganize("0xabc", block=70, block_hash="0xnew")
        second = self.service.process_once()

        self.assertEqual(second.outcomes[0].action, DepositAction.REORGED)
        self.assertEqual(second.outcomes[0].reason, "block_hash_changed")
        self.assertGreaterEqual(
            second.outcomes[0].confirmations, REQUIRED_CONFIRMATIONS
        )
        self.assertEqual(self.status(deposit.id), DepositStatus.REORGED.value)
        self.assertIsNone(self.balance("0xaddr"))
        # Исходное наблюдение не перезаписывается
        self.assertEqual(self.store.get_deposit(deposit.id).block_hash, "0xold")

    def test_insufficient_confirmations_stays_pending(self):
        """Наблюдение сохраняется, депозит ждет следующего тика"""
        self.chain.include_transaction("0xabc", block=95, block_hash="0xhash")
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.PENDING)
        stored = self.store.get_deposit(deposit.id)
        self.assertEqual(stored.status, DepositStatus.PENDING.value)
        self.assertEqual(stored.tx_block, 95)
        self.assertEqual(stored.block_hash, "0xhash")
        self.assertEqual(stored.confirmations, 6)
        self.assertEqual(self.audit_actions(deposit.id), [])

    def test_deposit_converges_over_ticks(self):
        """Подтверждения растут с каждым блоком до порога"""
        self.chain.include_transaction("0xabc", block=95, block_hash="0xhash")
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        self.service.process_once()
        self.chain.mine(5)
        self.service.process_once()
        self.assertEqual(self.status(deposit.id), DepositStatus.PENDING.value)
        self.assertEqual(self.store.get_deposit(deposit.id).confirmations, 11)

        self.chain.mine(1)
        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.CREDITED)
        self.assertEqual(self.balance("0xaddr"), 1000)

    def test_reverted_transaction_marks_reorged(self):
        self.chain.include_transaction("0xabc", block=50, reverted=True)
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.REORGED)
        self.assertEqual(report.outcomes[0].reason, "reverted")
        stored = self.store.get_deposit(deposit.id)
        self.assertEqual(stored.status, DepositStatus.REORGED.value)
        self.assertEqual(stored.tx_block, 50)
        self.assertIsNone(self.balance("0xaddr"))

    def test_stale_head_gives_zero_confirmations(self):
        self.chain.include_transaction("0xabc", block=105, block_hash="0xhash")
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].confirmations, 0)
        self.assertEqual(self.status(deposit.id), DepositStatus.PENDING.value)

    def test_credited_deposit_not_processed_again(self):
        self.chain.head = 102
        self.chain.include_transaction("0xabc", block=90)
        self.store.create_deposit("0xabc", "0xaddr", 1000)

        self.service.process_once()
        report = self.service.process_once()

        self.assertEqual(report.processed, 0)
        self.assertEqual(self.balance("0xaddr"), 1000)

    def test_concurrent_credit_is_absorbed(self):
        """Депозит зачислен другим экземпляром между чтением и зачислением"""
        self.chain.head = 102
        self.chain.include_transaction("0xabc", block=90)
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)
        self.store.credit_if_not_credited(deposit)

        outcome = self.service.reconcile_deposit(deposit)

        self.assertEqual(outcome.action, DepositAction.NOT_PENDING)
        self.assertEqual(self.balance("0xaddr"), 1000)
        self.assertEqual(self.audit_actions(deposit.id), ["credited"])

    def test_reverted_after_concurrent_credit_is_not_a_failure(self):
        """Депозит зачислен другим экземпляром, затем транзакция отменена"""
        self.chain.head = 102
        self.chain.include_transaction("0xabc", block=90, reverted=True)
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)
        self.store.credit_if_not_credited(deposit)

        outcome = self.service.reconcile_deposit(deposit)

        self.assertEqual(outcome.action, DepositAction.NOT_PENDING)
        self.assertIsNone(outcome.error)
        self.assertEqual(self.status(deposit.id), DepositStatus.CREDITED.value)
        self.assertEqual(self.audit_actions(deposit.id), ["credited"])
        self.assertIsNone(self.service.stats["last_error"])


class TestReconciliationErrors(ReconciliationTestCase):
    """Изоляция ошибок внутри тика"""

    def test_chain_error_skips_deposit(self):
        """ChainQueryError: депозит пропущен и не помечен reorged"""
        self.chain.include_transaction("0xabc", block=50)
        self.chain.fail_transaction("0xabc")
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        report = self.service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.SKIPPED)
        self.assertIsNotNone(report.outcomes[0].error)
        stored = self.store.get_deposit(deposit.id)
        self.assertEqual(stored.status, DepositStatus.PENDING.value)
        self.assertIsNone(stored.tx_block)
        self.assertEqual(self.audit_actions(deposit.id), [])

        self.chain.recover_transaction("0xabc")
        report = self.service.process_once()
        self.assertEqual(report.outcomes[0].action, DepositAction.CREDITED)

    def test_one_failure_does_not_stop_other_deposits(self):
        self.chain.head = 102
        self.chain.include_transaction("0x1", block=90)
        self.chain.include_transaction("0x2", block=90)
        self.chain.fail_transaction("0x1")
        first = self.store.create_deposit("0x1", "a", 10)
        second = self.store.create_deposit("0x2", "b", 20)

        report = self.service.process_once()

        actions = {o.deposit_id: o.action for o in report.outcomes}
        self.assertEqual(actions[first.id], DepositAction.SKIPPED)
        self.assertEqual(actions[second.id], DepositAction.CREDITED)
        self.assertEqual(report.counts["skipped"], 1)
        self.assertEqual(report.counts["credited"], 1)

    def test_store_error_marks_deposit_failed(self):
        """Сбой транзакции: депозит остается pending до следующего тика"""
        store = MagicMock(wraps=self.store)
        store.record_observation.side_effect = StoreError("database is locked")
        service = ReconciliationService(
            store, self.chain, required_confirmations=REQUIRED_CONFIRMATIONS
        )
        self.chain.include_transaction("0xabc", block=50)
        deposit = self.store.create_deposit("0xabc", "0xaddr", 1000)

        report = service.process_once()

        self.assertEqual(report.outcomes[0].action, DepositAction.FAILED)
        self.assertIn("database is locked", report.outcomes[0].error)
        self.assertEqual(self.status(deposit.id), DepositStatus.PENDING.value)
        self.assertIsNone(self.balance("0xaddr"))

    def test_pending_read_failure_fails_tick(self):
        store = MagicMock()
        store.get_pending_deposits.side_effect = StoreError("connection lost")
        service = ReconciliationService(store, self.chain)

        with self.assertRaises(ReconciliationError):
            service.process_once()
        self.assertEqual(service.stats["last_error"], "connection lost")
        self.assertFalse(service.is_running)

    def test_concurrent_tick_rejected(self):
        """Второй тик во время первого отклоняется"""
        started = threading.Event()
        release = threading.Event()
        store = MagicMock()

        def slow_read():
            started.set()
            release.wait(timeout=5)
            return []

        store.get_pending_deposits.side_effect = slow_read
        service = ReconciliationService(store, self.chain)

        worker = threading.Thread(target=service.process_once)
        worker.start()
        started.wait(timeout=5)
        try:
            self.assertTrue(service.is_running)
            with self.assertRaises(ReconciliationInProgressError):
                service.process_once()
        finally:
            release.set()
            worker.join()

        self.assertFalse(service.is_running)


class TestReconciliationStats(ReconciliationTestCase):
    """Накопленная статистика"""

    def test_stats_accumulate(self):
        self.chain.head = 102
        self.chain.include_transaction("0x1", block=90)
        self.store.create_deposit("0x1", "a", 10)
        self.store.create_deposit("0x2", "b", 20)

        self.service.process_once()
        self.service.process_once()

        stats = self.service.stats
        self.assertEqual(stats["ticks"], 2)
        self.assertEqual(stats["credited"], 1)
        self.assertEqual(stats["reorged"], 1)
        self.assertIsNotNone(stats["last_tick_at"])

    def test_default_threshold_from_settings(self):
        from creditengine.config import settings

        service = ReconciliationService(self.store, self.chain)

        self.assertEqual(
            service.required_confirmations, settings.REQUIRED_CONFIRMATIONS
        )


if __name__ == "__main__":
    unittest.main()
