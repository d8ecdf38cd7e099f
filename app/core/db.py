from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Type

from pydantic import BaseModel, TypeAdapter
from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from app.core.config import settings


class Base(DeclarativeBase):
    pass


# BIGSERIAL on postgres, INTEGER PRIMARY KEY (rowid alias) on sqlite
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PydanticJSON(TypeDecorator):
    """
    Stores a pydantic model (or a list of them) in a JSON column.

    Values are validated when loaded and dumped with ``mode="json"`` when
    stored, so callers never see raw dicts past the model boundary.
    """

    impl = JSONType
    cache_ok = True

    def __init__(self, model: Type[BaseModel], many: bool = False):
        super().__init__()
        self.model = model
        self.many = many
        self._adapter = TypeAdapter(list[model] if many else model)

    def process_bind_param(self, value: Any, dialect) -> Any:
        if value is None:
            return None
        value = self._adapter.validate_python(value)
        return self._adapter.dump_python(value, mode="json", exclude_none=True)

    def process_result_value(self, value: Any, dialect) -> Any:
        if value is None:
            return None
        return self._adapter.validate_python(value)


def make_engine(url: str, echo: bool = False):
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


engine = make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
