"""Database model for lottery draws."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db.utils import dt_iso, ensure_utc
from .base import Base
from .id_type import ID_TYPE
from .status import DrawOutcome, enum_values

if TYPE_CHECKING:
    from .participant import Participant


class Draw(Base):
    """A single lottery draw with a pre-committed, time-locked outcome."""

    __tablename__ = "draws"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    """Primary key."""

    owner_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    """Participant who requested the draw."""

    outcome: Mapped[DrawOutcome] = mapped_column(
        Enum(
            DrawOutcome,
            native_enum=False,
            length=20,
            values_callable=enum_values,
            validate_strings=True,
            name="draw_outcome",
        ),
        nullable=False,
    )
    """Outcome chosen when the draw was created; hidden until ``reveal_at``."""

    reveal_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    """Moment from which the outcome may be shown and the reward claimed."""

    reward_claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    """Claim stamp; set once, by the first reveal after ``reveal_at``."""

    result_notified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    """Set by the notification sweep once the result has been announced."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    owner: Mapped["Participant"] = relationship(back_populates="draws")

    __table_args__ = (Index("ix_draws_reveal_at", "reveal_at"),)

    def __init__(
        self,
        *,
        outcome: DrawOutcome,
        reveal_at: datetime,
        owner: Optional["Participant"] = None,
        owner_id: Optional[int] = None,
        reward_claimed_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        if owner is not None:
            self.owner = owner
        if owner_id is not None:
            self.owner_id = owner_id
        self.outcome = outcome
        self.reveal_at = reveal_at
        self.reward_claimed_at = reward_claimed_at
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return "<Draw(id={id}, owner_id={owner}, reveal_at={reveal}, claimed={claimed})>".format(
            id=self.id,
            owner=self.owner_id,
            reveal=dt_iso(self.reveal_at),
            claimed=self.reward_claimed_at is not None,
        )

    def is_revealed(self, now: datetime) -> bool:
        """Return ``True`` once ``now`` has reached ``reveal_at``."""

        return ensure_utc(now) >= ensure_utc(self.reveal_at)

    @property
    def is_claimed(self) -> bool:
        return self.reward_claimed_at is not None


__all__ = ["Draw"]
