from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship, validates

from .base import Base
from .id_type import ID_TYPE
from .status import ParticipantStatus

if TYPE_CHECKING:
    from .assignment import Assignment, Purchase
    from .draw import Draw

TICKET_TYPES = ("bronze", "silver", "gold", "red")
"""Ticket colours, in ascending value."""


def ticket_column_name(ticket_type: str) -> str:
    """Return the ``Participant`` attribute that stores ``ticket_type`` counts."""

    if ticket_type not in TICKET_TYPES:
        raise ValueError(f"Unknown ticket type: {ticket_type!r}")
    return f"tickets_{ticket_type}"


class Participant(Base):
    """A member of the gift-exchange community."""

    def __init__(
        self,
        email: str,
        status: ParticipantStatus = ParticipantStatus.AWAITING_TOS_AGREEMENT,
        nickname: Optional[str] = None,
        referral_code: Optional[str] = None,
        referral_count: int = 0,
        wishlist_url: Optional[str] = None,
        tickets_bronze: int = 0,
        tickets_silver: int = 0,
        tickets_gold: int = 0,
        tickets_red: int = 0,
        can_use_ticket: bool = False,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        """Create a new :class:`Participant` record.

        Parameters
        ----------
        email : str
            Login email; normalized to lower case.
        status : ParticipantStatus, optional
            Initial lifecycle status. New sign-ups start at
            ``AWAITING_TOS_AGREEMENT``.
        nickname : str, optional
            Display name.
        referral_code : str, optional
            Code other participants can claim to credit this participant.
        referral_count : int, optional
            Number of referrals already credited.
        wishlist_url : str, optional
            Link to the participant's public wish list.
        tickets_bronze, tickets_silver, tickets_gold, tickets_red : int, optional
            Initial ticket inventory. ``total_tickets`` is derived from these.
        can_use_ticket : bool, optional
            Whether a ticket may be spent to skip the purchase step.
        created_at : datetime, optional
            Explicit creation timestamp.
        updated_at : datetime, optional
            Explicit last update timestamp.
        """

        self.email = email
        self.status = status
        self.nickname = nickname
        self.referral_code = referral_code
        self.referral_count = referral_count
        self.wishlist_url = wishlist_url
        self.tickets_bronze = tickets_bronze
        self.tickets_silver = tickets_silver
        self.tickets_gold = tickets_gold
        self.tickets_red = tickets_red
        self.total_tickets = (
            tickets_bronze + tickets_silver + tickets_gold + tickets_red
        )
        self.can_use_ticket = can_use_ticket
        self.tos_agreed = False
        self.guide_checked = False
        if created_at is not None:
            self.created_at = created_at
        if updated_at is not None:
            self.updated_at = updated_at

    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[ParticipantStatus] = mapped_column(
        Enum(
            ParticipantStatus,
            native_enum=False,
            length=40,
            validate_strings=True,
            name="participant_status",
        ),
        nullable=False,
        default=ParticipantStatus.AWAITING_TOS_AGREEMENT,
        index=True,
    )
    tos_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    guide_checked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    referral_code: Mapped[Optional[str]] = mapped_column(
        String(32), unique=True, nullable=True
    )
    referred_by_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("participants.id", ondelete="SET NULL"), nullable=True
    )
    referral_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wishlist_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tickets_bronze: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_silver: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_gold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_red: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    can_use_ticket: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # relationships
    draws: Mapped[list["Draw"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan"
    )
    wishlist: Mapped[Optional["Wishlist"]] = relationship(
        back_populates="participant", cascade="all, delete-orphan", uselist=False
    )
    assignments_as_buyer: Mapped[list["Assignment"]] = relationship(
        back_populates="buyer",
        foreign_keys="Assignment.buyer_id",
        cascade="all, delete-orphan",
    )
    assignments_as_target: Mapped[list["Assignment"]] = relationship(
        back_populates="target",
        foreign_keys="Assignment.target_id",
        cascade="all, delete-orphan",
    )
    purchases: Mapped[list["Purchase"]] = relationship(
        back_populates="buyer", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("referral_count >= 0", name="referral_count_non_negative"),
        CheckConstraint(
            "tickets_bronze >= 0 AND tickets_silver >= 0 "
            "AND tickets_gold >= 0 AND tickets_red >= 0",
            name="ticket_counts_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Participant(id={self.id}, email='{self.email}', "
            f"status={self.status.value if self.status else None}, "
            f"referral_count={self.referral_count}, "
            f"total_tickets={self.total_tickets})>"
        )

    @validates("email")
    def _normalize_email(self, _key: str, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("email must not be empty")
        return normalized

    @classmethod
    def get_by_email(cls, session: Session, email: str) -> Optional["Participant"]:
        """Retrieve a participant by their login email."""

        return session.scalar(select(cls).where(cls.email == email.strip().lower()))

    @classmethod
    def get_by_referral_code(
        cls, session: Session, referral_code: str
    ) -> Optional["Participant"]:
        """Retrieve a participant by their referral code."""

        return session.scalar(select(cls).where(cls.referral_code == referral_code))

    @property
    def ticket_counts(self) -> dict[str, int]:
        """Ticket inventory keyed by colour."""
        return {t: getattr(self, ticket_column_name(t)) for t in TICKET_TYPES}

    def tickets_consistent(self) -> bool:
        """``True`` when ``total_tickets`` equals the sum of the four counters."""
        return self.total_tickets == sum(self.ticket_counts.values())


class Wishlist(Base):
    """Details of the gift a participant would like to receive."""

    __tablename__ = "wishlists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(
        ID_TYPE,
        ForeignKey("participants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    primary_item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_item_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    budget_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    budget_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    participant: Mapped["Participant"] = relationship(back_populates="wishlist")

    def __repr__(self) -> str:
        return (
            f"<Wishlist(id={self.id}, participant_id={self.participant_id}, "
            f"primary_item_name='{self.primary_item_name}')>"
        )

    def to_json(self) -> dict:
        return {
            "primary_item_name": self.primary_item_name,
            "primary_item_url": self.primary_item_url,
            "budget_min": self.budget_min,
            "budget_max": self.budget_max,
            "note": self.note,
        }
