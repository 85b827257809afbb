"""Participant lifecycle: ordered statuses, guarded transitions and policy checks."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence, Union

from sqlalchemy import ColumnElement, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, load_settings
from .errors import InternalError
from .models.participant import Participant
from .models.status import ParticipantStatus

logger = logging.getLogger(__name__)

S = ParticipantStatus

TRANSITIONS: dict[ParticipantStatus, frozenset[ParticipantStatus]] = {
    S.AWAITING_TOS_AGREEMENT: frozenset({S.AWAITING_GUIDE_CHECK}),
    S.AWAITING_GUIDE_CHECK: frozenset({S.READY_TO_PURCHASE}),
    S.READY_TO_PURCHASE: frozenset({S.AWAITING_APPROVAL, S.READY_TO_DRAW}),
    S.AWAITING_APPROVAL: frozenset({S.READY_TO_REGISTER_WISHLIST, S.READY_TO_PURCHASE}),
    S.READY_TO_REGISTER_WISHLIST: frozenset({S.READY_TO_DRAW}),
    S.READY_TO_DRAW: frozenset({S.REVEALING}),
    S.REVEALING: frozenset({S.WAITING_FOR_FULFILLMENT, S.READY_TO_PURCHASE}),
    S.WAITING_FOR_FULFILLMENT: frozenset({S.CYCLE_COMPLETE}),
    S.CYCLE_COMPLETE: frozenset({S.READY_TO_PURCHASE, S.READY_TO_DRAW}),
}
"""Legal status moves.

``READY_TO_PURCHASE``/``CYCLE_COMPLETE`` -> ``READY_TO_DRAW`` is the ticket
shortcut; ``AWAITING_APPROVAL`` -> ``READY_TO_PURCHASE`` is a rejected purchase.
"""

DRAWABLE_STATUS = S.READY_TO_DRAW
BUYER_ELIGIBLE_STATUSES = frozenset({S.READY_TO_PURCHASE, S.AWAITING_APPROVAL})

TARGET_PRIORITY: dict[ParticipantStatus, int] = {
    S.WAITING_FOR_FULFILLMENT: 0,
    S.READY_TO_DRAW: 1,
    S.READY_TO_REGISTER_WISHLIST: 2,
    S.CYCLE_COMPLETE: 3,
}
"""Statuses that may receive a gift, most deserving first."""


def can_transition(current: ParticipantStatus, target: ParticipantStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def advance(
    session: Session,
    participant_id: int,
    expected: Union[ParticipantStatus, Iterable[ParticipantStatus]],
    target: ParticipantStatus,
    *,
    where: Sequence[ColumnElement[bool]] = (),
    **values,
) -> bool:
    """Move a participant to ``target`` only if its status is still ``expected``.

    The check and the write are one ``UPDATE ... WHERE status = ...`` so two
    callers racing on the same participant cannot both succeed.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    participant_id : int
        Participant to update.
    expected : ParticipantStatus or iterable of ParticipantStatus
        Status (or statuses) the participant must currently be in.
    target : ParticipantStatus
        Status to move to. Must be a legal transition from every ``expected``.
    where : sequence of SQL expressions, optional
        Additional conditions the row must satisfy for the move to happen.
    **values
        Extra column values written in the same statement.

    Returns
    -------
    bool
        ``True`` if a row was updated.

    Raises
    ------
    ValueError
        If the transition is not part of the lifecycle.
    InternalError
        If the database rejects the update.
    """

    expected_set = (
        {expected} if isinstance(expected, ParticipantStatus) else set(expected)
    )
    for source in expected_set:
        if not can_transition(source, target):
            raise ValueError(
                f"Illegal lifecycle transition {source.value} -> {target.value}"
            )

    stmt = (
        update(Participant)
        .where(
            Participant.id == participant_id,
            Participant.status.in_(expected_set),
            *where,
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
    except SQLAlchemyError as exc:
        raise InternalError(f"Failed to update participant {participant_id}") from exc

    moved = result.rowcount == 1
    if moved:
        logger.info("Participant %s moved to %s", participant_id, target.value)
        _expire_participant(session, participant_id)
    else:
        logger.debug(
            "Participant %s not in %s; %s skipped",
            participant_id,
            sorted(s.value for s in expected_set),
            target.value,
        )
    return moved


def force_status(
    session: Session, participant_id: int, target: ParticipantStatus
) -> bool:
    """Set a status without transition checks. Administrative resets only."""

    result = session.execute(
        update(Participant)
        .where(Participant.id == participant_id)
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    _expire_participant(session, participant_id)
    logger.warning("Participant %s forced to %s", participant_id, target.value)
    return result.rowcount == 1


def _expire_participant(session: Session, participant_id: int) -> None:
    # Drop stale in-memory state after a bulk UPDATE.
    participant = session.identity_map.get(
        session.identity_key(Participant, participant_id)
    )
    if participant is not None:
        session.expire(participant)


def redirect_step(
    current: Optional[ParticipantStatus],
    required: Union[ParticipantStatus, Iterable[ParticipantStatus]],
) -> Optional[ParticipantStatus]:
    """Return the step a participant must finish before reaching ``required``.

    When ``current`` comes earlier in the flow than the earliest of
    ``required``, the participant is sent back to ``current``. Otherwise
    ``None`` is returned and the caller decides (usually a generic fallback).
    """

    if current is None:
        return None
    required_set = (
        [required] if isinstance(required, ParticipantStatus) else list(required)
    )
    if current in required_set:
        return None
    earliest = ParticipantStatus.earliest(required_set)
    if earliest is not None and current.precedes(earliest):
        return current
    return None


def is_draw_bypass(email: Optional[str], settings: Optional[Settings] = None) -> bool:
    """Whether ``email`` belongs to a configured test identity.

    Such identities skip the ``READY_TO_DRAW`` requirement of the lottery and
    nothing else.
    """

    if not email:
        return False
    active = settings or load_settings()
    return email.strip().lower() in active.bypass_emails


__all__ = [
    "TRANSITIONS",
    "DRAWABLE_STATUS",
    "BUYER_ELIGIBLE_STATUSES",
    "TARGET_PRIORITY",
    "can_transition",
    "advance",
    "force_status",
    "redirect_step",
    "is_draw_bypass",
]
