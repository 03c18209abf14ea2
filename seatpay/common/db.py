"""Database bootstrap helpers."""

from datetime import datetime, timezone

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from seatpay.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# JSONB on Postgres, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from the database."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch_ms(value: datetime | None) -> int:
    """Epoch milliseconds for a timestamp, `0` when absent."""

    value = as_utc(value)
    if value is None:
        return 0
    return int(value.timestamp() * 1000)
