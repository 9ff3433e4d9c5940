"""
Настройка базы данных SQLAlchemy
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from creditengine.config import settings

# Базовый класс для моделей
Base = declarative_base()


def _enable_sqlite_write_lock(engine: Engine) -> None:
    """
    Каждая транзакция SQLite начинается с BEGIN IMMEDIATE

    В SQLite нет SELECT ... FOR UPDATE, поэтому эксклюзивное удержание
    строки на время транзакции заменяется блокировкой записи всей БД.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # pysqlite не должен сам отправлять BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Создание движка БД с блокировками, нужными для идемпотентного зачисления"""
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )
    if is_sqlite:
        _enable_sqlite_write_lock(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Фабрика сессий; объекты остаются читаемыми после commit"""
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )


def init_db(engine: Engine) -> None:
    """Создание таблиц deposits, accounts, audits"""
    # Импорт регистрирует модели в Base.metadata
    from creditengine import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# Создаем движок базы данных
engine = create_db_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Создаем фабрику сессий
SessionLocal = create_session_factory(engine)

