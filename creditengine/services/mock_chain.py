"""
Детерминированный in-memory блокчейн для тестов
"""

import logging
from typing import Dict, Optional, Set

from creditengine.services.chain_observer import (
    ChainObserver,
    ChainQueryError,
    FinalityInfo,
    compute_confirmations,
)

logger = logging.getLogger(__name__)


class InMemoryChainObserver(ChainObserver):
    """
    Тестовый двойник ChainObserver

    Голова цепи задается явно, транзакции включаются в блоки вручную.
    Сбои запросов можно включить для всей цепи или для отдельных транзакций.
    """

    def __init__(self, head: int = 0):
        self.head = head
        self.unavailable = False
        self._transactions: Dict[str, Dict] = {}
        self._failing: Set[str] = set()
        self.queries = 0

    def include_transaction(
        self,
        tx_hash: str,
        block: int,
        block_hash: Optional[str] = None,
        reverted: bool = False,
    ) -> None:
        """Включение транзакции в блок"""
        self._transactions[tx_hash] = {
            "block": block,
            "block_hash": block_hash or f"block-{block:08d}",
            "reverted": reverted,
        }

    def drop_transaction(self, tx_hash: str) -> None:
        """Транзакция исчезает из канонической цепи"""
        self._transactions.pop(tx_hash, None)

    def reorganize(self, tx_hash: str, block: int, block_hash: str) -> None:
        """Транзакция переезжает в другой блок после реорганизации"""
        info = self._transactions[tx_hash]
        info["block"] = block
        info["block_hash"] = block_hash

    def mine(self, blocks: int = 1) -> int:
        """Продвижение головы цепи"""
        self.head += blocks
        return self.head

    def fail_transaction(self, tx_hash: str) -> None:
        """Все запросы по транзакции будут падать с ChainQueryError"""
        self._failing.add(tx_hash)

    def recover_transaction(self, tx_hash: str) -> None:
        self._failing.discard(tx_hash)

    def head_height(self) -> int:
        if self.unavailable:
            raise ChainQueryError("Блокчейн недоступен")
        return self.head

    def finality_info(self, tx_hash: str) -> FinalityInfo:
        self.queries += 1
        if tx_hash in self._failing:
            raise ChainQueryError(f"Не удалось получить транзакцию {tx_hash}")

        head = self.head_height()
        info = self._transactions.get(tx_hash)
        if info is None:
            logger.debug(f"Транзакция {tx_hash} не найдена в цепи")
            return FinalityInfo.not_found()

        return FinalityInfo(
            found=True,
            observed_block=info["block"],
            block_hash=info["block_hash"],
            confirmations=compute_confirmations(head, info["block"]),
            reverted=info["reverted"],
        )
