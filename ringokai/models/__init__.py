from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .status import DrawOutcome, ParticipantStatus  # noqa: F401
from .participant import Participant, Wishlist  # noqa: F401
from .draw import Draw  # noqa: F401
from .assignment import Assignment, Purchase  # noqa: F401
from .settings import SystemSetting, TokenBudgetRow  # noqa: F401

__all__ = [
    "Base",
    "DrawOutcome",
    "ParticipantStatus",
    "Participant",
    "Wishlist",
    "Draw",
    "Assignment",
    "Purchase",
    "SystemSetting",
    "TokenBudgetRow",
]
