"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine (лениво, при первом обращении)
- Контекстный менеджер для сессий
- Единая точка доступа к БД для всех сервисов
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from meeting_pipeline.common.config import get_settings

# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine(get_settings().database_dsn, pool_pre_ping=True)
    return _engine


def configure_engine(engine: Engine) -> None:
    """
    Подменить engine (тесты, локальный inline-прогон на SQLite).
    """
    global _engine, _session_factory
    _engine = engine
    _session_factory = None


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory


def create_schema() -> None:
    """
    Создать таблицы без Alembic (dev/inline режим и тесты).
    """
    from meeting_pipeline.storage.models import Base

    Base.metadata.create_all(get_engine())


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session() -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    session: Session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
