"""
Database Session Management

Async SQLAlchemy engine and session factory. Workers build their own
short-lived engine per task via ``build_session_factory``.
"""

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def build_session_factory(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Engine + session factory pair for one worker invocation. Caller disposes the engine."""
    task_engine = create_async_engine(database_url)
    return task_engine, async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    pass


SET_TENANT_SQL = text("SELECT set_config('app.current_tenant_id', :tid, true)")


def apply_tenant_scope(session: AsyncSession, tenant_id: str) -> None:
    """
    Set the RLS tenant variable at the start of every transaction on ``session``.
    The setting is transaction-local, and services commit per unit of work.
    """
    if session.bind is None or session.bind.dialect.name != "postgresql":
        return

    @event.listens_for(session.sync_session, "after_begin")
    def _set_tenant(sync_session, transaction, connection):
        connection.execute(SET_TENANT_SQL, {"tid": tenant_id})
