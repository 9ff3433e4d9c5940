"""
API endpoints для управления сверкой
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException

from creditengine.background import scheduler
from creditengine.schemas.reconciliation import ReconciliationStatus
from creditengine.services.reconciliation_service import (
    ReconciliationError,
    ReconciliationInProgressError,
    ReconciliationReport,
    ReconciliationService,
    get_reconciliation_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/status", response_model=ReconciliationStatus)
async def get_reconciliation_status(
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Получение состояния цикла сверки

    Returns:
        Состояние планировщика, статистика и порог подтверждений
    """
    return ReconciliationStatus(
        scheduler_running=scheduler.is_running,
        tick_in_progress=service.is_running,
        required_confirmations=service.required_confirmations,
        interval=scheduler.interval,
        stats=service.stats,
    )


@router.post("/run", response_model=ReconciliationReport)
async def run_reconciliation(
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Внеочередной тик сверки

    Returns:
        Итог тика по каждому pending депозиту
    """
    try:
        return await asyncio.to_thread(service.process_once)
    except ReconciliationInProgressError:
        raise HTTPException(status_code=409, detail="Сверка уже выполняется")
    except ReconciliationError as e:
        logger.error(f"Ошибка внеочередной сверки: {e}")
        raise HTTPException(status_code=500, detail=str(e))
