"""Pair buyers with gift recipients, one active reservation per side."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import lifecycle
from ..errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
)
from ..lottery.engine import Clock, utc_now
from ..models.assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    ASSIGNMENT_COMPLETED,
    ASSIGNMENT_PENDING,
    ASSIGNMENT_SUBMITTED,
    Assignment,
)
from ..models.participant import Participant

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
MASK = "••••"


def mask_identifier(identifier: object) -> str:
    """Shorten an identifier to its first and last four characters.

    Identifiers of eight characters or fewer are hidden entirely.
    """

    text = str(identifier)
    if len(text) <= 8:
        return MASK
    return f"{text[:4]}{MASK}{text[-4:]}"


class AssignmentMatcher:
    """Select and reserve a gift recipient for a buyer."""

    def __init__(
        self,
        session: Session,
        *,
        clock: Optional[Clock] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Create a matcher bound to a SQLAlchemy session.

        Parameters
        ----------
        session : Session
            Active SQLAlchemy session.
        clock : Optional[Clock], default: None
            Returns the current aware UTC time.
        max_attempts : int, default: 5
            How many insert conflicts are tolerated before giving up.
        """

        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session = session
        self._clock = clock or utc_now
        self._max_attempts = max_attempts

    def get_or_create_assignment(self, buyer_id: int) -> Assignment:
        """Return the buyer's active assignment, reserving a new one if needed.

        Notes
        -----
        1. An existing pending/submitted assignment is returned unchanged.
        2. Otherwise the buyer must be ``READY_TO_PURCHASE`` or
           ``AWAITING_APPROVAL``.
        3. Candidates are participants in a gift-receiving status with a wish
           list, other than the buyer and not reserved by anyone else.
        4. The highest-priority candidate is inserted as a pending
           assignment. The partial unique indexes on ``assignments`` reject a
           target or buyer that a concurrent run reserved in the meantime;
           such a conflict excludes that target and selection is retried.

        Raises
        ------
        NotFoundError
            If the buyer does not exist or no candidate remains.
        InvalidStateError
            If the buyer is not in a purchasing status.
        InternalError
            If the database fails for a reason other than a conflict.
        """

        existing = Assignment.active_for_buyer(self._session, buyer_id)
        if existing is not None:
            return existing

        buyer = self._session.get(Participant, buyer_id)
        if buyer is None:
            raise NotFoundError(f"Participant {buyer_id} not found")
        if buyer.status not in lifecycle.BUYER_ELIGIBLE_STATUSES:
            raise InvalidStateError("No assignment is needed at this stage")

        excluded: set[int] = set()
        for attempt in range(1, self._max_attempts + 1):
            target = self._pick_target(buyer_id, excluded)
            if target is None:
                break
            try:
                return self._reserve(buyer_id, target.id)
            except ConflictError:
                logger.warning(
                    "Assignment conflict for buyer %s on target %s (attempt %d)",
                    buyer_id,
                    target.id,
                    attempt,
                )
                existing = Assignment.active_for_buyer(self._session, buyer_id)
                if existing is not None:
                    return existing
                excluded.add(target.id)

        raise NotFoundError("Nothing available to assign")

    def _pick_target(
        self, buyer_id: int, excluded: set[int]
    ) -> Optional[Participant]:
        taken = self._taken_target_ids() | excluded
        candidates = [
            candidate
            for candidate in self._candidates(buyer_id)
            if candidate.id not in taken
        ]
        candidates.sort(
            key=lambda p: (lifecycle.TARGET_PRIORITY.get(p.status, 99), p.id)
        )
        return candidates[0] if candidates else None

    def _candidates(self, buyer_id: int) -> list[Participant]:
        stmt = select(Participant).where(
            Participant.status.in_(list(lifecycle.TARGET_PRIORITY)),
            Participant.wishlist_url.isnot(None),
            Participant.id != buyer_id,
        )
        try:
            return list(self._session.scalars(stmt))
        except SQLAlchemyError as exc:
            raise InternalError("Failed to load assignment candidates") from exc

    def _taken_target_ids(self) -> set[int]:
        try:
            return Assignment.active_target_ids(self._session)
        except SQLAlchemyError as exc:
            raise InternalError("Failed to load reserved targets") from exc

    def _reserve(self, buyer_id: int, target_id: int) -> Assignment:
        assignment = Assignment(buyer_id=buyer_id, target_id=target_id)
        try:
            with self._session.begin_nested():
                self._session.add(assignment)
        except IntegrityError as exc:
            raise ConflictError(
                f"Target {target_id} or buyer {buyer_id} already reserved"
            ) from exc
        except SQLAlchemyError as exc:
            raise InternalError("Failed to create assignment") from exc

        logger.info(
            "Assignment %s created: buyer %s -> target %s",
            assignment.id,
            buyer_id,
            target_id,
        )
        return assignment

    def submit(self, assignment_id: int, buyer_id: int, proof_ref: str) -> Assignment:
        """Mark a pending assignment as submitted with ``proof_ref``.

        The move is one-way and happens at most once.

        Raises
        ------
        NotFoundError
            If the assignment does not exist.
        ForbiddenError
            If another buyer owns it.
        InvalidStateError
            If it is no longer pending. Nothing is written in that case.
        """

        assignment = self._session.get(Assignment, assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        if assignment.buyer_id != buyer_id:
            raise ForbiddenError("Assignment belongs to another buyer")
        if assignment.status != ASSIGNMENT_PENDING:
            raise InvalidStateError("This assignment has already been updated")

        moved = self._transition(
            assignment,
            ASSIGNMENT_PENDING,
            ASSIGNMENT_SUBMITTED,
            purchase_ref=proof_ref,
            submitted_at=self._clock(),
        )
        if not moved:
            raise InvalidStateError("This assignment has already been updated")
        return assignment

    def complete(self, assignment_id: int) -> bool:
        """Close an active assignment after the approver accepted the purchase."""

        assignment = self._session.get(Assignment, assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        return self._transition(
            assignment,
            ACTIVE_ASSIGNMENT_STATUSES,
            ASSIGNMENT_COMPLETED,
            completed_at=self._clock(),
        )

    def reopen(self, assignment_id: int) -> bool:
        """Return a submitted assignment to pending after a rejected purchase."""

        assignment = self._session.get(Assignment, assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        return self._transition(
            assignment,
            ASSIGNMENT_SUBMITTED,
            ASSIGNMENT_PENDING,
            purchase_ref=None,
            submitted_at=None,
        )

    def _transition(
        self,
        assignment: Assignment,
        expected: "str | tuple[str, ...]",
        target: str,
        **values: Any,
    ) -> bool:
        expected_set = (expected,) if isinstance(expected, str) else tuple(expected)
        stmt = (
            update(Assignment)
            .where(
                Assignment.id == assignment.id,
                Assignment.status.in_(expected_set),
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise InternalError(f"Failed to update assignment {assignment.id}") from exc

        self._session.expire(assignment)
        moved = result.rowcount == 1
        if moved:
            logger.info("Assignment %s moved to %s", assignment.id, target)
        return moved

    def describe(self, assignment: Assignment) -> dict[str, Any]:
        """Return the buyer-facing view of an assignment and its target."""

        target = self._session.get(Participant, assignment.target_id)
        if target is None:
            raise NotFoundError(f"Participant {assignment.target_id} not found")
        wishlist = target.wishlist
        return {
            "id": assignment.id,
            "status": assignment.status,
            "purchaseRef": assignment.purchase_ref,
            "target": {
                "participantId": target.id,
                "maskedId": mask_identifier(target.email),
                "wishlistUrl": target.wishlist_url,
                "status": target.status.value,
                "details": wishlist.to_json() if wishlist is not None else None,
            },
        }


__all__ = ["AssignmentMatcher", "mask_identifier", "DEFAULT_MAX_ATTEMPTS"]
