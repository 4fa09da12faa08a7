from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pathforge.db.base import Base, TimestampMixin


class StoredToken(TimestampMixin, Base):
    __tablename__ = "stored_tokens"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
