"""
Bitcoin RPC клиент: живая реализация ChainObserver поверх Bitcoin Core
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from bitcoinrpc.authproxy import AuthServiceProxy, JSONRPCException

from creditengine.config import settings
from creditengine.services.chain_observer import (
    ChainObserver,
    ChainQueryError,
    FinalityInfo,
    compute_confirmations,
)

logger = logging.getLogger(__name__)

# RPC_INVALID_ADDRESS_OR_KEY: транзакция или блок неизвестны узлу
RPC_NOT_FOUND = -5


class BitcoinRPCError(ChainQueryError):
    """Исключение для ошибок Bitcoin RPC"""

    pass


def build_rpc_url(
    host: str, port: int, user: str, password: str, wallet: str = ""
) -> str:
    """URL узла; для multiwallet добавляется путь /wallet/<name>"""
    rpc_url = f"http://{user}:{password}@{host}:{port}/"
    if wallet:
        rpc_url += f"wallet/{wallet}"
    return rpc_url


class BitcoinRPCClient(ChainObserver):
    """
    Клиент для взаимодействия с Bitcoin Core через RPC

    Квитанцией депозита служит gettransaction кошелька: узел знает
    блок, высоту и конфликты (двойные траты) для своих адресов.
    Подключение создается лениво; после сбоя транспорта соединение
    сбрасывается и восстанавливается при следующем вызове.
    """

    def __init__(self, rpc_url: Optional[str] = None, timeout: Optional[int] = None):
        self._rpc_url = rpc_url or build_rpc_url(
            settings.BITCOIN_RPC_HOST,
            settings.BITCOIN_RPC_PORT,
            settings.BITCOIN_RPC_USER,
            settings.BITCOIN_RPC_PASSWORD,
            settings.BITCOIN_RPC_WALLET,
        )
        self._timeout = timeout or settings.BITCOIN_RPC_TIMEOUT
        self._connection = None

    def _connect(self) -> None:
        """Создание подключения к Bitcoin Core"""
        try:
            self._connection = AuthServiceProxy(self._rpc_url, timeout=self._timeout)
            # Проверяем подключение
            self._connection.getblockchaininfo()
            logger.info("Успешно подключено к Bitcoin Core")
        except Exception as e:
            self._connection = None
            logger.error(f"Ошибка подключения к Bitcoin Core: {e}")
            raise BitcoinRPCError(f"Не удалось подключиться к Bitcoin Core: {e}")

    def _execute_rpc_call(self, method: str, *args, missing_ok: bool = False) -> Any:
        """
        Выполнение RPC вызова

        Args:
            method: Имя RPC метода
            missing_ok: Вернуть None вместо ошибки, если объект неизвестен узлу

        Повторов нет: упавший запрос будет повторен на следующем тике сверки.
        """
        if not self._connection:
            self._connect()

        try:
            return getattr(self._connection, method)(*args)

        except JSONRPCException as e:
            error = getattr(e, "error", None) or {}
            if missing_ok and error.get("code") == RPC_NOT_FOUND:
                return None
            logger.error(f"JSON RPC ошибка в {method}: {e}")
            raise BitcoinRPCError(f"RPC ошибка: {e}")

        except Exception as e:
            # Таймаут или обрыв соединения: переподключимся при следующем вызове
            self._connection = None
            logger.warning(f"Ошибка соединения в {method}: {e}")
            raise BitcoinRPCError(f"Ошибка соединения в {method}: {e}")

    # Методы для работы с блокчейном

    def get_block_count(self) -> int:
        """Получение количества блоков в цепи"""
        return self._execute_rpc_call("getblockcount")

    def get_block_header(self, block_hash: str) -> Optional[Dict[str, Any]]:
        """Получение заголовка блока"""
        return self._execute_rpc_call(
            "getblockheader", block_hash, True, missing_ok=True
        )

    def get_wallet_transaction(self, txid: str) -> Optional[Dict[str, Any]]:
        """Получение транзакции кошелька, None если узел ее не знает"""
        return self._execute_rpc_call("gettransaction", txid, missing_ok=True)

    # ChainObserver

    def head_height(self) -> int:
        return int(self.get_block_count())

    def finality_info(self, tx_hash: str) -> FinalityInfo:
        """
        Финальность транзакции по данным кошелька

        - неизвестна узлу, в мемпуле или брошена: found=False
        - отрицательные подтверждения (конфликт с транзакцией в цепи): reverted
        - иначе подтверждения считаются от высоты блока и текущей головы
        """
        tx = self.get_wallet_transaction(tx_hash)
        if tx is None:
            return FinalityInfo.not_found()

        if tx.get("confirmations", 0) < 0:
            logger.warning(f"Транзакция {tx_hash} конфликтует с транзакцией в цепи")
            return FinalityInfo(found=True, reverted=True)

        block_hash = tx.get("blockhash")
        if not block_hash:
            return FinalityInfo.not_found()

        observed_block = tx.get("blockheight")
        if observed_block is None:
            header = self.get_block_header(block_hash)
            if header is None:
                # Блок уже вытеснен из цепи
                return FinalityInfo.not_found()
            observed_block = header["height"]

        head = self.head_height()
        return FinalityInfo(
            found=True,
            observed_block=int(observed_block),
            block_hash=block_hash,
            confirmations=compute_confirmations(head, int(observed_block)),
        )


@lru_cache
def get_bitcoin_rpc() -> BitcoinRPCClient:
    """Общий экземпляр клиента, создается при первом обращении"""
    return BitcoinRPCClient()
