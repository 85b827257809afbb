"""Enumerations shared by the models and the lifecycle helpers."""

from __future__ import annotations

import enum
from typing import Iterable, Optional


class ParticipantStatus(enum.Enum):
    """Lifecycle status of a participant, declared in flow order."""

    AWAITING_TOS_AGREEMENT = "AWAITING_TOS_AGREEMENT"
    AWAITING_GUIDE_CHECK = "AWAITING_GUIDE_CHECK"
    READY_TO_PURCHASE = "READY_TO_PURCHASE"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    READY_TO_REGISTER_WISHLIST = "READY_TO_REGISTER_WISHLIST"
    READY_TO_DRAW = "READY_TO_DRAW"
    REVEALING = "REVEALING"
    WAITING_FOR_FULFILLMENT = "WAITING_FOR_FULFILLMENT"
    CYCLE_COMPLETE = "CYCLE_COMPLETE"

    @property
    def index(self) -> int:
        """Position of the status in the flow (0-based)."""
        return _STATUS_ORDER[self]

    def precedes(self, other: "ParticipantStatus") -> bool:
        return self.index < other.index

    @classmethod
    def earliest(
        cls, statuses: Iterable["ParticipantStatus"]
    ) -> Optional["ParticipantStatus"]:
        """Return the status that comes first in the flow, or ``None`` if empty."""
        return min(statuses, key=lambda s: s.index, default=None)

    @classmethod
    def parse(cls, value: "str | ParticipantStatus") -> "ParticipantStatus":
        """Coerce ``value`` to a member, raising ``ValueError`` for unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown participant status: {value!r}") from None


_STATUS_ORDER = {status: idx for idx, status in enumerate(ParticipantStatus)}


class DrawOutcome(enum.Enum):
    """Mutually exclusive draw results."""

    POISON = "poison"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    RED = "red"

    @property
    def is_upper_tier(self) -> bool:
        return self in UPPER_TIER_OUTCOMES


UPPER_TIER_OUTCOMES = frozenset(
    {DrawOutcome.SILVER, DrawOutcome.GOLD, DrawOutcome.RED}
)


def enum_values(enum_cls) -> list[str]:
    """``values_callable`` for SQLAlchemy ``Enum`` columns that persist values."""
    return [member.value for member in enum_cls]


__all__ = [
    "ParticipantStatus",
    "DrawOutcome",
    "UPPER_TIER_OUTCOMES",
    "enum_values",
]
