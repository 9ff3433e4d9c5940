"""
API endpoints для счетов
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from creditengine.schemas.account import Account
from creditengine.services.ledger_store import (
    LedgerStore,
    StoreError,
    get_ledger_store,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("/{address}", response_model=Account)
async def get_account(address: str, store: LedgerStore = Depends(get_ledger_store)):
    """
    Получить баланс счета
    """
    try:
        account = store.get_account(address)
    except StoreError as e:
        logger.error(f"Ошибка получения счета {address}: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")

    if not account:
        raise HTTPException(status_code=404, detail=f"Счет {address} не найден")
    return account
