"""
Главное FastAPI приложение сервиса зачисления депозитов
"""

import logging
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from creditengine.api import accounts, deposits, reconciliation
from creditengine.background import lifespan
from creditengine.config import settings
from creditengine.services.ledger_store import LedgerStore, StoreError, get_ledger_store

logger = logging.getLogger(__name__)

# Создаем FastAPI приложение
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Сверка on-chain депозитов и их однократное зачисление",
    docs_url="/docs",
    redoc_url="/redoc",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# Настройка шаблонов Jinja2
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# Подключение API роутеров
app.include_router(deposits.router, prefix=settings.API_V1_STR)
app.include_router(accounts.router, prefix=settings.API_V1_STR)
app.include_router(reconciliation.router, prefix=settings.API_V1_STR)


@app.get("/", response_class=HTMLResponse)
async def root(request: Request, store: LedgerStore = Depends(get_ledger_store)):
    """Страница статуса депозитов (только чтение)"""
    try:
        deposit_list = store.list_deposits()
    except StoreError as e:
        logger.error(f"Ошибка получения депозитов для страницы статуса: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")

    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "deposits": deposit_list,
            "required_confirmations": settings.REQUIRED_CONFIRMATIONS,
        },
    )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": settings.PROJECT_NAME}


def run() -> None:
    """Запуск сервиса через uvicorn"""
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "creditengine.main:app", host="0.0.0.0", port=8080, reload=settings.DEBUG
    )


if __name__ == "__main__":
    run()
