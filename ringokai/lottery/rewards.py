"""Reveal finalization: show a due outcome and pay its reward exactly once."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import lifecycle
from ..db.utils import dt_iso, ensure_utc
from ..errors import ForbiddenError, InternalError, NotFoundError
from ..models.draw import Draw
from ..models.participant import Participant, ticket_column_name
from ..models.status import DrawOutcome, ParticipantStatus
from .engine import Clock, utc_now

logger = logging.getLogger(__name__)

TICKET_REWARDS: dict[DrawOutcome, int] = {
    DrawOutcome.BRONZE: 0,
    DrawOutcome.SILVER: 2,
    DrawOutcome.GOLD: 3,
    DrawOutcome.RED: 5,
    DrawOutcome.POISON: 0,
}
"""Tickets granted per outcome, credited to the counter of the same colour."""


def next_status_after(outcome: DrawOutcome) -> ParticipantStatus:
    """Status a participant moves to once ``outcome`` is revealed."""

    if outcome == DrawOutcome.POISON:
        return ParticipantStatus.READY_TO_PURCHASE
    return ParticipantStatus.WAITING_FOR_FULFILLMENT


@dataclass
class RevealView:
    """Public fields of a draw as seen by its owner."""

    draw_id: int
    outcome: Optional[DrawOutcome]
    is_revealed: bool
    reveal_at: datetime
    server_time: datetime
    reward_applied: bool = False
    """``True`` only for the call that won the claim and paid the reward."""

    def to_json(self) -> dict:
        return {
            "id": self.draw_id,
            "result": self.outcome.value if self.outcome is not None else None,
            "isRevealed": self.is_revealed,
            "revealAt": dt_iso(self.reveal_at),
            "serverTime": dt_iso(self.server_time),
        }


class RewardLedger:
    """Finalize revealed draws into ticket inventory and lifecycle moves."""

    def __init__(self, session: Session, *, clock: Optional[Clock] = None) -> None:
        self._session = session
        self._clock = clock or utc_now

    def reveal(self, draw_id: int, requester_id: int) -> RevealView:
        """Return the draw's public view, finalizing it if it is due.

        Before ``reveal_at`` nothing is written and the outcome is withheld.
        Afterwards the first caller to stamp ``reward_claimed_at`` pays the
        reward; every caller (winner or not) then nudges the owner out of
        ``REVEALING`` with a status-conditioned update. That move is skipped
        when the owner has a newer draw, which governs the status instead.

        Raises
        ------
        NotFoundError
            If the draw does not exist.
        ForbiddenError
            If ``requester_id`` does not own the draw.
        InternalError
            If the claim or the reward update fails in the database.
        """

        draw = self._session.get(Draw, draw_id)
        if draw is None:
            raise NotFoundError(f"Draw {draw_id} not found")
        if draw.owner_id != requester_id:
            raise ForbiddenError("Draw belongs to another participant")

        now = self._clock()
        reveal_at = ensure_utc(draw.reveal_at)
        if not draw.is_revealed(now):
            return RevealView(
                draw_id=draw.id,
                outcome=None,
                is_revealed=False,
                reveal_at=reveal_at,
                server_time=now,
            )

        claimed = self._claim(draw, now)
        if claimed:
            self._apply_reward(draw.owner_id, draw.outcome)
        else:
            logger.debug("Draw %s already claimed; skipping reward", draw.id)

        # Only the owner's latest draw decides where REVEALING leads.
        newer_draw = (
            select(Draw.id)
            .where(Draw.owner_id == draw.owner_id, Draw.id > draw.id)
            .exists()
        )
        lifecycle.advance(
            self._session,
            draw.owner_id,
            ParticipantStatus.REVEALING,
            next_status_after(draw.outcome),
            where=(~newer_draw,),
        )

        return RevealView(
            draw_id=draw.id,
            outcome=draw.outcome,
            is_revealed=True,
            reveal_at=reveal_at,
            server_time=now,
            reward_applied=claimed,
        )

    def _claim(self, draw: Draw, now: datetime) -> bool:
        """Stamp ``reward_claimed_at`` if it is still empty; ``True`` on success."""

        stmt = (
            update(Draw)
            .where(Draw.id == draw.id, Draw.reward_claimed_at.is_(None))
            .values(reward_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise InternalError(f"Failed to claim draw {draw.id}") from exc

        self._session.expire(draw, ["reward_claimed_at"])
        return result.rowcount == 1

    def _apply_reward(self, participant_id: int, outcome: DrawOutcome) -> None:
        units = TICKET_REWARDS[outcome]
        if units == 0:
            return

        column = getattr(Participant, ticket_column_name(outcome.value))
        stmt = (
            update(Participant)
            .where(Participant.id == participant_id)
            .values(
                {
                    column: column + units,
                    Participant.total_tickets: Participant.total_tickets + units,
                }
            )
            .execution_options(synchronize_session=False)
        )
        try:
            self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise InternalError(
                f"Failed to apply reward to participant {participant_id}"
            ) from exc

        participant = self._session.identity_map.get(
            self._session.identity_key(Participant, participant_id)
        )
        if participant is not None:
            self._session.expire(participant)
        logger.info(
            "Granted %d %s tickets to participant %s",
            units,
            outcome.value,
            participant_id,
        )


__all__ = ["RewardLedger", "RevealView", "TICKET_REWARDS", "next_status_after"]
