"""
API endpoints для депозитов
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from creditengine.schemas.deposit import (
    AuditEntry,
    Deposit,
    DepositListResponse,
    ReverseResponse,
)
from creditengine.services.ledger_store import (
    DepositNotFoundError,
    InvalidStateError,
    LedgerStore,
    StoreError,
    get_ledger_store,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deposits", tags=["deposits"])


@router.get("", response_model=DepositListResponse)
async def list_deposits(store: LedgerStore = Depends(get_ledger_store)):
    """
    Получить все депозиты, новые сверху
    """
    try:
        deposits = store.list_deposits()
    except StoreError as e:
        logger.error(f"Ошибка получения депозитов: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")

    return DepositListResponse(deposits=deposits, total=len(deposits))


@router.get("/pending", response_model=DepositListResponse)
async def list_pending_deposits(store: LedgerStore = Depends(get_ledger_store)):
    """
    Получить депозиты, ожидающие финальности
    """
    try:
        deposits = store.get_pending_deposits()
    except StoreError as e:
        logger.error(f"Ошибка получения pending депозитов: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")

    return DepositListResponse(deposits=deposits, total=len(deposits))


@router.get("/{deposit_id}", response_model=Deposit)
async def get_deposit(deposit_id: int, store: LedgerStore = Depends(get_ledger_store)):
    """
    Получить депозит по id
    """
    try:
        return store.get_deposit(deposit_id)
    except DepositNotFoundError:
        raise HTTPException(status_code=404, detail=f"Депозит {deposit_id} не найден")
    except StoreError as e:
        logger.error(f"Ошибка получения депозита {deposit_id}: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")


@router.get("/{deposit_id}/audits", response_model=List[AuditEntry])
async def get_deposit_audits(
    deposit_id: int, store: LedgerStore = Depends(get_ledger_store)
):
    """
    Получить журнал аудита депозита
    """
    try:
        return store.list_audits(deposit_id)
    except DepositNotFoundError:
        raise HTTPException(status_code=404, detail=f"Депозит {deposit_id} не найден")
    except StoreError as e:
        logger.error(f"Ошибка получения аудита депозита {deposit_id}: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")


@router.post("/{deposit_id}/reverse", response_model=ReverseResponse)
async def reverse_deposit(
    deposit_id: int, store: LedgerStore = Depends(get_ledger_store)
):
    """
    Сторнировать зачисленный депозит (ручная операция оператора)
    """
    try:
        deposit = store.reverse_credit(deposit_id)
    except DepositNotFoundError:
        raise HTTPException(status_code=404, detail=f"Депозит {deposit_id} не найден")
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        logger.error(f"Ошибка сторнирования депозита {deposit_id}: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")

    return ReverseResponse(
        deposit=deposit, message=f"Депозит {deposit_id} сторнирован"
    )
