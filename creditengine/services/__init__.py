# Business logic services package

from creditengine.services.bitcoin_rpc import BitcoinRPCClient, get_bitcoin_rpc
from creditengine.services.chain_observer import (
    ChainObserver,
    ChainQueryError,
    FinalityInfo,
)
from creditengine.services.ledger_store import LedgerStore, get_ledger_store
from creditengine.services.mock_chain import InMemoryChainObserver
from creditengine.services.reconciliation_service import (
    ReconciliationService,
    get_reconciliation_service,
)

__all__ = [
    "BitcoinRPCClient",
    "get_bitcoin_rpc",
    "ChainObserver",
    "ChainQueryError",
    "FinalityInfo",
    "InMemoryChainObserver",
    "LedgerStore",
    "get_ledger_store",
    "ReconciliationService",
    "get_reconciliation_service",
]
