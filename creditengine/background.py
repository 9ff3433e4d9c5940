"""
Background задача периодической сверки депозитов
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI

from creditengine.config import settings
from creditengine.database import engine, init_db
from creditengine.services.reconciliation_service import (
    ReconciliationService,
    get_reconciliation_service,
)

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """
    Периодический запуск тиков сверки

    Тик выполняется в отдельном потоке: вызовы RPC и БД блокирующие, а
    страница статуса должна отвечать во время тика. Остановка срабатывает
    только между тиками; начатый тик доходит до конца.
    """

    def __init__(
        self,
        service_factory: Callable[[], ReconciliationService] = (
            get_reconciliation_service
        ),
        interval: Optional[float] = None,
    ):
        self._service_factory = service_factory
        self.interval = (
            interval if interval is not None else settings.RECONCILE_INTERVAL
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.info(f"Запущена периодическая сверка с интервалом {self.interval}с")

        while not self._stop_event.is_set():
            try:
                service = self._service_factory()
                await asyncio.to_thread(service.process_once)
            except Exception as e:
                # Тик будет повторен через интервал
                logger.error(f"Ошибка в периодической задаче сверки: {e}")

            # Ждем до следующей итерации или до остановки
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Периодическая сверка остановлена")

    async def start(self) -> None:
        """Запуск фоновой задачи"""
        if self.is_running:
            logger.warning("Сверка уже запущена")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Остановка между тиками: ждем завершения текущего тика"""
        if self._task is None:
            logger.warning("Сверка не запущена")
            return

        logger.info("Останавливаем сверку...")
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None


# Глобальный планировщик приложения
scheduler = ReconciliationScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Контекстный менеджер жизненного цикла приложения

    Создает таблицы, запускает сверку при старте и останавливает
    ее при завершении
    """
    # Startup
    logger.info("Запуск приложения...")

    init_db(engine)

    if settings.RECONCILE_ENABLED:
        await scheduler.start()
    else:
        logger.info("Периодическая сверка отключена настройкой RECONCILE_ENABLED")

    try:
        yield
    finally:
        # Shutdown
        logger.info("Остановка приложения...")
        if scheduler.is_running:
            await scheduler.stop()
        logger.info("Приложение остановлено")
