"""SQLModel base classes and mixins for ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from niya.core.utils import utcnow_naive


def new_id() -> str:
    return uuid.uuid4().hex


class TimestampMixin(SQLModel):
    """Adds created/updated timestamps (app-managed)."""

    created_at: datetime = Field(default_factory=utcnow_naive)
    updated_at: datetime = Field(default_factory=utcnow_naive)


class Model(TimestampMixin, SQLModel):
    """Base with integer `id`/timestamps for SQLModel tables.

    Inherit this along with `table=True` on concrete models.
    """

    id: int | None = Field(default=None, primary_key=True)


class UUIDModel(TimestampMixin, SQLModel):
    """Base with an opaque string id, for entities whose ids travel to clients."""

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
