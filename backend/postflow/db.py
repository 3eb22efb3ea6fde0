"""
Database engine and session factory.

Only the postgres storage backend touches these; the memory backend never
imports this module. Celery workers build their own engine per task with
``make_engine(settings, pooled=False)`` because each task runs in a fresh
event loop.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from .settings import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base for the pipeline tables (projects and their children)."""


def make_engine(settings: Settings, *, pooled: bool = True) -> AsyncEngine:
    if not pooled:
        return create_async_engine(settings.async_database_url, echo=settings.db_echo, poolclass=NullPool)
    return create_async_engine(
        settings.async_database_url,
        echo=settings.db_echo,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(get_settings())
AsyncSessionLocal = make_session_factory(engine)
