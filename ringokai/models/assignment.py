"""Database models for gift assignments and purchase proofs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .participant import Participant

ASSIGNMENT_PENDING = "pending"
ASSIGNMENT_SUBMITTED = "submitted"
ASSIGNMENT_COMPLETED = "completed"
ACTIVE_ASSIGNMENT_STATUSES = (ASSIGNMENT_PENDING, ASSIGNMENT_SUBMITTED)

PURCHASE_SUBMITTED = "submitted"
PURCHASE_APPROVED = "approved"
PURCHASE_REJECTED = "rejected"

# Partial-index predicate shared by SQLite and PostgreSQL.
_ACTIVE_PREDICATE = text("status IN ('pending', 'submitted')")


class Assignment(Base):
    """Reservation binding one buyer to one gift recipient for a cycle."""

    __tablename__ = "assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    """Primary key."""

    buyer_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    """Participant buying the gift."""

    target_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    """Participant receiving the gift."""

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ASSIGNMENT_PENDING
    )
    """One of ``"pending"``, ``"submitted"`` or ``"completed"``."""

    purchase_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    """Reference to the proof of purchase supplied on submission."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recipient_notified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    buyer: Mapped["Participant"] = relationship(
        back_populates="assignments_as_buyer", foreign_keys=[buyer_id]
    )
    target: Mapped["Participant"] = relationship(
        back_populates="assignments_as_target", foreign_keys=[target_id]
    )
    purchases: Mapped[list["Purchase"]] = relationship(back_populates="assignment")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'submitted', 'completed')",
            name="assignment_status_valid",
        ),
        CheckConstraint("buyer_id <> target_id", name="assignment_not_self"),
        Index(
            "uq_assignments_active_target",
            "target_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index(
            "uq_assignments_active_buyer",
            "buyer_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    def __init__(
        self,
        *,
        buyer_id: int,
        target_id: int,
        status: str = ASSIGNMENT_PENDING,
        purchase_ref: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.buyer_id = buyer_id
        self.target_id = target_id
        self.status = status
        self.purchase_ref = purchase_ref
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return "<Assignment(id={id}, buyer_id={buyer}, target_id={target}, status={status})>".format(
            id=self.id,
            buyer=self.buyer_id,
            target=self.target_id,
            status=self.status,
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ASSIGNMENT_STATUSES

    @classmethod
    def active_for_buyer(
        cls, session: Session, buyer_id: int
    ) -> Optional["Assignment"]:
        """Return the buyer's pending or submitted assignment, if any."""

        stmt = (
            select(cls)
            .where(
                cls.buyer_id == buyer_id,
                cls.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
            .order_by(cls.id)
        )
        return session.scalars(stmt).first()

    @classmethod
    def active_target_ids(cls, session: Session) -> set[int]:
        """Return the ids of every participant currently reserved as a target."""

        stmt = select(cls.target_id).where(cls.status.in_(ACTIVE_ASSIGNMENT_STATUSES))
        return set(session.scalars(stmt))


class Purchase(Base):
    """Proof of purchase submitted by a buyer, awaiting an approver."""

    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    buyer_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assignment_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("assignments.id", ondelete="SET NULL"), nullable=True
    )
    proof_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PURCHASE_SUBMITTED
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    buyer: Mapped["Participant"] = relationship(back_populates="purchases")
    assignment: Mapped[Optional["Assignment"]] = relationship(
        back_populates="purchases"
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Purchase(id={self.id}, buyer_id={self.buyer_id}, "
            f"assignment_id={self.assignment_id}, status={self.status})>"
        )


__all__ = [
    "Assignment",
    "Purchase",
    "ACTIVE_ASSIGNMENT_STATUSES",
    "ASSIGNMENT_PENDING",
    "ASSIGNMENT_SUBMITTED",
    "ASSIGNMENT_COMPLETED",
    "PURCHASE_SUBMITTED",
    "PURCHASE_APPROVED",
    "PURCHASE_REJECTED",
]
