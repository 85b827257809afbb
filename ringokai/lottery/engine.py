"""Two-stage weighted lottery gated by the shared token budget."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import lifecycle
from ..config import Settings, load_settings
from ..errors import InternalError, InvalidStateError, NotFoundError
from ..models.draw import Draw
from ..models.participant import Participant
from ..models.status import DrawOutcome, ParticipantStatus
from .token_budget import TokenBudget
from .weights import AppleWeights, load_weights, personal_weights

logger = logging.getLogger(__name__)

BRONZE_SHORTCUT_PROBABILITY = 0.70
"""Chance that a draw ends as bronze before the advanced roll is consulted."""


class RandomSource(Protocol):
    def random(self) -> float: ...


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DrawTicket:
    """Value object returned to the caller of :meth:`LotteryEngine.draw`.

    Attributes
    ----------
    draw : Draw
        The persisted draw row.
    outcome : DrawOutcome
        The pre-committed outcome. Callers must not show it before
        ``reveal_at``.
    reveal_at : datetime
        When the outcome becomes visible.
    """

    draw: Draw
    outcome: DrawOutcome
    reveal_at: datetime

    @property
    def draw_id(self) -> int:
        return self.draw.id


class LotteryEngine:
    """Resolve draw requests into outcomes and persist them as :class:`Draw` rows."""

    def __init__(
        self,
        session: Session,
        *,
        rng: Optional[RandomSource] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        budget: Optional[TokenBudget] = None,
    ) -> None:
        """Create a lottery engine bound to a SQLAlchemy session.

        Parameters
        ----------
        session : Session
            Active SQLAlchemy session used for lookups and persistence.
        rng : Optional[RandomSource], default: None
            Source of uniform floats in ``[0, 1)``. Defaults to
            :class:`random.SystemRandom`.
        clock : Optional[Clock], default: None
            Returns the current aware UTC time.
        settings : Optional[Settings], default: None
            Runtime settings; loaded from the environment when omitted.
        budget : Optional[TokenBudget], default: None
            Token budget to gate upper-tier outcomes. A budget bound to
            ``session`` is created when omitted.
        """

        self._session = session
        self._rng = rng or random.SystemRandom()
        self._clock = clock or utc_now
        self._settings = settings or load_settings()
        self._budget = budget or TokenBudget(session)

    def draw(self, participant_id: int) -> DrawTicket:
        """Run one draw for ``participant_id``.

        Notes
        -----
        The steps are:

        1. Claim the draw by moving the participant from ``READY_TO_DRAW`` to
           ``REVEALING`` in one conditional update. A concurrent request that
           already made that move wins; this one fails before touching the
           token budget. Bypass identities draw from any status.
        2. Derive personal weights from the stored base weights and the
           participant's referral count.
        3. Roll the outcome with :meth:`roll`, which may credit or debit the
           token budget.
        4. Persist the :class:`Draw` with ``reveal_at = now + reveal_delay``.
           If this fails, the token mutation from step 3 is reversed and the
           claimed status is restored.

        Raises
        ------
        NotFoundError
            If the participant does not exist.
        InvalidStateError
            If the participant may not draw now, including when a concurrent
            draw claimed the status first.
        InternalError
            If the draw could not be stored.
        """

        participant = self._session.get(Participant, participant_id)
        if participant is None:
            raise NotFoundError(f"Participant {participant_id} not found")

        bypass = lifecycle.is_draw_bypass(participant.email, self._settings)
        if not bypass and participant.status != lifecycle.DRAWABLE_STATUS:
            raise InvalidStateError("Drawing is not available right now")

        claimed = lifecycle.advance(
            self._session,
            participant.id,
            lifecycle.DRAWABLE_STATUS,
            ParticipantStatus.REVEALING,
        )
        if not claimed and not bypass:
            raise InvalidStateError("Drawing is not available right now")

        weights = personal_weights(
            load_weights(self._session), participant.referral_count
        )
        outcome, token_delta = self.roll(weights)

        now = self._clock()
        reveal_at = now + self._settings.reveal_delay
        draw = Draw(owner_id=participant.id, outcome=outcome, reveal_at=reveal_at)
        try:
            with self._session.begin_nested():
                self._session.add(draw)
        except SQLAlchemyError as exc:
            self._compensate(token_delta)
            if claimed:
                lifecycle.force_status(
                    self._session, participant.id, lifecycle.DRAWABLE_STATUS
                )
            raise InternalError("Failed to store the draw") from exc

        if not claimed and participant.status != ParticipantStatus.REVEALING:
            # Bypass identities may draw from any status.
            lifecycle.force_status(
                self._session, participant.id, ParticipantStatus.REVEALING
            )

        logger.info(
            "Draw %s stored for participant %s (reveal at %s)",
            draw.id,
            participant.id,
            reveal_at.isoformat(),
        )
        return DrawTicket(draw=draw, outcome=outcome, reveal_at=reveal_at)

    def roll(self, weights: AppleWeights) -> tuple[DrawOutcome, int]:
        """Pick an outcome and apply its token side effect.

        Returns
        -------
        tuple[DrawOutcome, int]
            The outcome and the change applied to the token budget
            (``+1`` poison, ``-1`` upper-tier, ``0`` otherwise).
        """

        if self._rng.random() < BRONZE_SHORTCUT_PROBABILITY:
            return DrawOutcome.BRONZE, 0

        upper = weights.upper
        roll = self._rng.random() * (weights.poison + upper)
        if roll < weights.poison:
            self._budget.credit(1)
            return DrawOutcome.POISON, 1

        if not self._budget.try_debit():
            # Empty budget looks exactly like a direct bronze to the player.
            logger.debug("Upper-tier roll with empty budget; resolving to bronze")
            return DrawOutcome.BRONZE, 0

        return self._pick_upper_tier(weights), -1

    def _pick_upper_tier(self, weights: AppleWeights) -> DrawOutcome:
        roll = self._rng.random() * weights.upper
        if roll < weights.silver:
            return DrawOutcome.SILVER
        if roll < weights.silver + weights.gold:
            return DrawOutcome.GOLD
        return DrawOutcome.RED

    def _compensate(self, token_delta: int) -> None:
        if token_delta < 0:
            logger.warning("Refunding token after failed draw insert")
            self._budget.credit(-token_delta)
        elif token_delta > 0:
            logger.warning("Reverting poison credit after failed draw insert")
            self._budget.try_debit()


__all__ = ["LotteryEngine", "DrawTicket", "BRONZE_SHORTCUT_PROBABILITY"]
