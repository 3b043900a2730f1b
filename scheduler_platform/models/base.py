from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from scheduler_platform.core.datetime_utils import utc_now

# BIGINT surrogate keys; SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map: dict[type, Any] = {}


class TimestampMixin:
    """Mixin that adds created/updated timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime | None] = mapped_column(default=None, onupdate=utc_now)


def enum_values(enum_cls: type) -> list[str]:
    """values_callable for str enums stored by value."""
    return [member.value for member in enum_cls]
