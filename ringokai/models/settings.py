"""Key/value system settings and the shared token budget row."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from .base import Base

TOKEN_BUDGET_ROW_ID = 1


class SystemSetting(Base):
    """Administrative setting stored as a string value under a unique key."""

    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<SystemSetting(key='{self.key}', value='{self.value}')>"

    @classmethod
    def get_many(cls, session: Session, keys: list[str]) -> dict[str, str]:
        """Return ``{key: value}`` for the requested keys that exist."""

        rows = session.scalars(select(cls).where(cls.key.in_(keys))).all()
        return {row.key: row.value for row in rows}


class TokenBudgetRow(Base):
    """Singleton row holding the banked upper-tier reward credits."""

    __tablename__ = "token_budget"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<TokenBudgetRow(id={self.id}, balance={self.balance})>"


__all__ = ["SystemSetting", "TokenBudgetRow", "TOKEN_BUDGET_ROW_ID"]
