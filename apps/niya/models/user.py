"""User model; accounts are provisioned by the login flow, not by this service."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlmodel import Field

from niya.models.base import Model


class User(Model, table=True):
    """Application user account."""

    __tablename__ = "users"
    __table_args__ = (sa.Index("ix_users_email", "email", unique=True),)

    email: str = Field(sa_column=sa.Column(sa.String(length=255), nullable=False, unique=True))
    name: str | None = Field(default=None, sa_column=sa.Column(sa.String(length=255)))
    is_active: bool = Field(default=True, sa_column=sa.Column(sa.Boolean, nullable=False))
    last_active_at: datetime | None = Field(
        default=None, sa_column=sa.Column(sa.DateTime, nullable=True)
    )


__all__ = ["User"]
