import logging
import math
import re
import secrets
from typing import Any, Mapping, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import lifecycle
from .config import Settings
from .errors import (
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
)
from .lottery.engine import Clock, DrawTicket, LotteryEngine, RandomSource, utc_now
from .lottery.rewards import RevealView, RewardLedger
from .lottery.weights import AppleWeights
from .lottery import weights as weight_store
from .matching.matcher import AssignmentMatcher
from .models import (
    Assignment,
    Draw,
    Participant,
    ParticipantStatus,
    Purchase,
    Wishlist,
)
from .models.assignment import (
    ASSIGNMENT_COMPLETED,
    PURCHASE_APPROVED,
    PURCHASE_REJECTED,
    PURCHASE_SUBMITTED,
)
from .models.participant import TICKET_TYPES, ticket_column_name

logger = logging.getLogger(__name__)

S = ParticipantStatus

URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
TICKET_SPEND_PRIORITY = ("red", "gold", "silver", "bronze")
TICKET_SOURCE_STATUSES = (S.READY_TO_PURCHASE, S.CYCLE_COMPLETE)
REFERRAL_CODE_ATTEMPTS = 5


def register_participant(
    session: Session,
    email: str,
    *,
    nickname: Optional[str] = None,
    referral_code: Optional[str] = None,
) -> Participant:
    """Create a participant at the start of the lifecycle.

    When ``referral_code`` is supplied the new participant is credited to the
    owner of that code via :func:`claim_referral`.

    Raises
    ------
    ValueError
        If a participant already exists for ``email``.
    """

    if Participant.get_by_email(session, email) is not None:
        raise ValueError("A participant with this email already exists")

    participant = Participant(email=email, nickname=nickname)
    session.add(participant)
    session.flush()

    if referral_code:
        claim_referral(session, participant.id, referral_code)
    return participant


def agree_to_terms(session: Session, participant_id: int) -> ParticipantStatus:
    """Record the terms agreement and move on to the guide."""

    return _onboarding_step(
        session,
        participant_id,
        S.AWAITING_TOS_AGREEMENT,
        S.AWAITING_GUIDE_CHECK,
        tos_agreed=True,
    )


def check_guide(session: Session, participant_id: int) -> ParticipantStatus:
    """Record that the guide was read; the participant may now buy a gift."""

    return _onboarding_step(
        session,
        participant_id,
        S.AWAITING_GUIDE_CHECK,
        S.READY_TO_PURCHASE,
        guide_checked=True,
    )


def _onboarding_step(
    session: Session,
    participant_id: int,
    expected: ParticipantStatus,
    target: ParticipantStatus,
    **values: Any,
) -> ParticipantStatus:
    _require_participant(session, participant_id)
    if not lifecycle.advance(session, participant_id, expected, target, **values):
        raise InvalidStateError("Invalid action for current status")
    return target


def run_draw(
    session: Session,
    participant_id: int,
    *,
    rng: Optional[RandomSource] = None,
    clock: Optional[Clock] = None,
    settings: Optional[Settings] = None,
) -> DrawTicket:
    """Run a lottery draw for ``participant_id``.

    Thin wrapper around :meth:`LotteryEngine.draw`; see there for the
    algorithm and the errors raised.
    """

    engine = LotteryEngine(session, rng=rng, clock=clock, settings=settings)
    ticket = engine.draw(participant_id)
    session.flush()
    return ticket


def reveal_draw(
    session: Session,
    draw_id: int,
    requester_id: int,
    *,
    clock: Optional[Clock] = None,
) -> RevealView:
    """Show a draw to its owner, finalizing the reward once it is due."""

    view = RewardLedger(session, clock=clock).reveal(draw_id, requester_id)
    session.flush()
    return view


def load_weights(session: Session) -> AppleWeights:
    """Return the administrator-configured base weights."""

    return weight_store.load_weights(session)


def update_weights(
    session: Session,
    weights: Union[AppleWeights, Mapping[str, object]],
    *,
    require_total: Optional[float] = None,
) -> AppleWeights:
    """Replace the five base weights; see :func:`ringokai.lottery.weights.update_weights`."""

    return weight_store.update_weights(session, weights, require_total=require_total)


def get_or_create_assignment(
    session: Session, buyer_id: int, *, clock: Optional[Clock] = None
) -> Assignment:
    """Return (or reserve) the gift recipient assignment for ``buyer_id``."""

    assignment = AssignmentMatcher(session, clock=clock).get_or_create_assignment(
        buyer_id
    )
    session.flush()
    return assignment


def submit_assignment(
    session: Session,
    assignment_id: int,
    buyer_id: int,
    proof_ref: str,
    *,
    clock: Optional[Clock] = None,
) -> Assignment:
    """Submit proof of purchase for a pending assignment."""

    assignment = AssignmentMatcher(session, clock=clock).submit(
        assignment_id, buyer_id, proof_ref
    )
    session.flush()
    return assignment


def submit_purchase(
    session: Session,
    buyer_id: int,
    assignment_id: int,
    proof_ref: str,
    *,
    notes: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> Purchase:
    """Record a purchase proof and hand it to the approver.

    This function performs the following steps:
    1. Submits the assignment (pending -> submitted) with ``proof_ref``.
    2. Stores a :class:`Purchase` row awaiting review.
    3. Moves the buyer from ``READY_TO_PURCHASE`` to ``AWAITING_APPROVAL``.

    Returns:
        The persisted ``Purchase``.
    """

    proof_ref = (proof_ref or "").strip()
    if not proof_ref:
        raise ValueError("proof_ref is required")

    participant = _require_participant(session, buyer_id)
    if participant.status not in lifecycle.BUYER_ELIGIBLE_STATUSES:
        raise InvalidStateError("Purchases cannot be submitted at this stage")

    assignment = AssignmentMatcher(session, clock=clock).submit(
        assignment_id, buyer_id, proof_ref
    )
    purchase = Purchase(
        buyer_id=buyer_id,
        assignment_id=assignment.id,
        proof_ref=proof_ref,
        status=PURCHASE_SUBMITTED,
        notes=notes,
    )
    session.add(purchase)
    session.flush()

    if participant.status == S.READY_TO_PURCHASE:
        lifecycle.advance(session, buyer_id, S.READY_TO_PURCHASE, S.AWAITING_APPROVAL)
    return purchase


def review_purchase(
    session: Session,
    purchase_id: int,
    *,
    approve: bool,
    clock: Optional[Clock] = None,
) -> Purchase:
    """Apply the approver's decision on a submitted purchase.

    Approval completes the assignment and lets the buyer register a wish
    list. Rejection reopens the assignment so the buyer can submit again.

    Raises
    ------
    NotFoundError
        If the purchase does not exist.
    InvalidStateError
        If the purchase was already reviewed.
    """

    now = (clock or utc_now)()
    purchase = session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFoundError(f"Purchase {purchase_id} not found")

    result = session.execute(
        update(Purchase)
        .where(Purchase.id == purchase_id, Purchase.status == PURCHASE_SUBMITTED)
        .values(
            status=PURCHASE_APPROVED if approve else PURCHASE_REJECTED,
            reviewed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.expire(purchase)
    if result.rowcount != 1:
        raise InvalidStateError("Purchase has already been reviewed")

    matcher = AssignmentMatcher(session, clock=clock)
    if approve:
        if purchase.assignment_id is not None:
            matcher.complete(purchase.assignment_id)
        lifecycle.advance(
            session, purchase.buyer_id, S.AWAITING_APPROVAL, S.READY_TO_REGISTER_WISHLIST
        )
    else:
        if purchase.assignment_id is not None:
            matcher.reopen(purchase.assignment_id)
        lifecycle.advance(
            session, purchase.buyer_id, S.AWAITING_APPROVAL, S.READY_TO_PURCHASE
        )

    session.flush()
    logger.info(
        "Purchase %s %s", purchase_id, "approved" if approve else "rejected"
    )
    return purchase


def _budget_value(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(round(value))


def register_wishlist(
    session: Session,
    participant_id: int,
    *,
    wishlist_url: str,
    primary_item_name: str,
    primary_item_url: Optional[str] = None,
    budget_min: Optional[float] = None,
    budget_max: Optional[float] = None,
    note: Optional[str] = None,
) -> ParticipantStatus:
    """Store the participant's wish list and unlock the draw when due.

    Participants in ``READY_TO_REGISTER_WISHLIST`` move to ``READY_TO_DRAW``;
    anyone else just has their wish list updated.

    Returns
    -------
    ParticipantStatus
        The participant's status after the update.

    Raises
    ------
    ValueError
        If a URL is not http(s) or the item name is empty.
    """

    wishlist_url = (wishlist_url or "").strip()
    if not URL_PATTERN.match(wishlist_url):
        raise ValueError("A valid wish list URL is required")
    primary_item_name = (primary_item_name or "").strip()
    if not primary_item_name:
        raise ValueError("primary_item_name is required")
    item_url = (primary_item_url or "").strip() or None
    if item_url is not None and not URL_PATTERN.match(item_url):
        raise ValueError("primary_item_url must be an http(s) URL")

    participant = _require_participant(session, participant_id)

    wishlist = participant.wishlist
    if wishlist is None:
        wishlist = Wishlist(primary_item_name=primary_item_name)
        participant.wishlist = wishlist
    wishlist.primary_item_name = primary_item_name
    wishlist.primary_item_url = item_url
    wishlist.budget_min = _budget_value(budget_min)
    wishlist.budget_max = _budget_value(budget_max)
    wishlist.note = (note or "").strip() or None
    participant.wishlist_url = wishlist_url
    try:
        session.flush()
    except SQLAlchemyError as exc:
        raise InternalError("Failed to store wish list") from exc

    if participant.status == S.READY_TO_REGISTER_WISHLIST:
        lifecycle.advance(
            session, participant.id, S.READY_TO_REGISTER_WISHLIST, S.READY_TO_DRAW
        )
        return S.READY_TO_DRAW
    return participant.status


def mark_fulfilled(session: Session, participant_id: int) -> bool:
    """Close the cycle for a participant whose gift has been delivered.

    Only participants in ``WAITING_FOR_FULFILLMENT`` are affected; they may
    spend a ticket afterwards.
    """

    _require_participant(session, participant_id)
    return lifecycle.advance(
        session,
        participant_id,
        S.WAITING_FOR_FULFILLMENT,
        S.CYCLE_COMPLETE,
        can_use_ticket=True,
    )


def use_ticket(
    session: Session, participant_id: int, ticket_type: Optional[str] = None
) -> str:
    """Spend one exemption ticket to go straight to the draw.

    Without ``ticket_type`` the most valuable available colour is used. The
    write is conditioned on ``can_use_ticket`` and on the counter being
    positive, so a ticket can only be spent once per permission.

    Returns
    -------
    str
        The colour of the ticket spent.
    """

    participant = _require_participant(session, participant_id)
    if not participant.can_use_ticket:
        raise InvalidStateError("Tickets cannot be used right now")

    counts = participant.ticket_counts
    if ticket_type is None:
        chosen = next((t for t in TICKET_SPEND_PRIORITY if counts[t] > 0), None)
        if chosen is None:
            raise InvalidStateError("No tickets available")
    else:
        if ticket_type not in TICKET_TYPES:
            raise ValueError(f"Unknown ticket type: {ticket_type!r}")
        chosen = ticket_type
        if counts[chosen] <= 0:
            raise InvalidStateError("Not enough tickets of the requested type")

    if not lifecycle.can_transition(participant.status, S.READY_TO_DRAW):
        raise InvalidStateError("Tickets cannot be used from the current status")

    column = getattr(Participant, ticket_column_name(chosen))
    result = session.execute(
        update(Participant)
        .where(
            Participant.id == participant_id,
            Participant.can_use_ticket.is_(True),
            Participant.status.in_(TICKET_SOURCE_STATUSES),
            column > 0,
        )
        .values(
            {
                column: column - 1,
                Participant.total_tickets: Participant.total_tickets - 1,
                Participant.can_use_ticket: False,
                Participant.status: S.READY_TO_DRAW,
            }
        )
        .execution_options(synchronize_session=False)
    )
    session.expire(participant)
    if result.rowcount != 1:
        raise InvalidStateError("Ticket was already used")
    logger.info("Participant %s spent a %s ticket", participant_id, chosen)
    return chosen


def ensure_referral_code(session: Session, participant_id: int) -> str:
    """Return the participant's referral code, generating one if missing.

    Candidate codes are written with ``WHERE referral_code IS NULL`` and
    retried on a uniqueness collision.
    """

    participant = _require_participant(session, participant_id)
    if participant.referral_code:
        return participant.referral_code

    for _ in range(REFERRAL_CODE_ATTEMPTS):
        candidate = secrets.token_hex(5)
        try:
            with session.begin_nested():
                session.execute(
                    update(Participant)
                    .where(
                        Participant.id == participant_id,
                        Participant.referral_code.is_(None),
                    )
                    .values(referral_code=candidate)
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            logger.debug("Referral code collision; retrying")
            continue
        session.expire(participant)
        if participant.referral_code:
            return participant.referral_code

    raise InternalError("Unable to generate a unique referral code")


def claim_referral(session: Session, participant_id: int, referral_code: str) -> bool:
    """Credit the owner of ``referral_code`` with referring ``participant_id``.

    A participant can be referred once, and never by themselves. The
    referrer's ``referral_count`` is incremented in SQL.

    Returns
    -------
    bool
        ``True`` if the referral was recorded.
    """

    code = (referral_code or "").strip()
    if not code:
        raise ValueError("referral_code is required")

    participant = _require_participant(session, participant_id)
    referrer = Participant.get_by_referral_code(session, code)
    if referrer is None or referrer.id == participant.id:
        return False

    bound = session.execute(
        update(Participant)
        .where(
            Participant.id == participant.id,
            Participant.referred_by_id.is_(None),
        )
        .values(referred_by_id=referrer.id)
        .execution_options(synchronize_session=False)
    )
    if bound.rowcount != 1:
        return False

    session.execute(
        update(Participant)
        .where(Participant.id == referrer.id)
        .values(referral_count=Participant.referral_count + 1)
        .execution_options(synchronize_session=False)
    )
    session.expire(participant)
    session.expire(referrer)
    logger.info("Participant %s referred by %s", participant.id, referrer.id)
    return True


def collect_due_notifications(
    session: Session,
    *,
    limit: int = 50,
    clock: Optional[Clock] = None,
) -> dict[str, list[dict[str, Any]]]:
    """Gather announcements that are due and stamp them as sent.

    Two kinds are collected: draws whose ``reveal_at`` has passed and whose
    result was not yet announced, and completed assignments whose recipient
    was not yet told. Delivery is the caller's job.
    """

    if limit <= 0:
        raise ValueError("limit must be a positive integer")
    now = (clock or utc_now)()

    draws = session.scalars(
        select(Draw)
        .where(Draw.result_notified_at.is_(None), Draw.reveal_at <= now)
        .order_by(Draw.reveal_at.asc(), Draw.id.asc())
        .limit(limit)
    ).all()
    assignments = session.scalars(
        select(Assignment)
        .where(
            Assignment.status == ASSIGNMENT_COMPLETED,
            Assignment.recipient_notified_at.is_(None),
        )
        .order_by(Assignment.id.asc())
        .limit(limit)
    ).all()

    for draw in draws:
        draw.result_notified_at = now
    for assignment in assignments:
        assignment.recipient_notified_at = now
    session.flush()

    return {
        "draw_results": [
            {"participant_id": d.owner_id, "draw_id": d.id, "result": d.outcome.value}
            for d in draws
        ],
        "wishlist_fulfilled": [
            {"participant_id": a.target_id, "assignment_id": a.id} for a in assignments
        ],
    }


def reset_participant(
    session: Session,
    participant_id: int,
    target_status: Union[str, ParticipantStatus] = S.READY_TO_PURCHASE,
    *,
    requester_email: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> dict[str, int]:
    """Administrative reset of a test participant.

    Deletes the participant's assignments (as buyer and target), purchases
    and draws, then forces ``target_status``. When ``requester_email`` is
    given it must be a configured bypass identity.
    """

    if requester_email is not None and not lifecycle.is_draw_bypass(
        requester_email, settings
    ):
        raise ForbiddenError("Only test identities may reset participants")

    status = ParticipantStatus.parse(target_status)
    _require_participant(session, participant_id)

    purchases = session.execute(
        delete(Purchase).where(Purchase.buyer_id == participant_id)
    ).rowcount
    assignments = session.execute(
        delete(Assignment).where(
            (Assignment.buyer_id == participant_id)
            | (Assignment.target_id == participant_id)
        )
    ).rowcount
    draws = session.execute(
        delete(Draw).where(Draw.owner_id == participant_id)
    ).rowcount
    lifecycle.force_status(session, participant_id, status)
    session.expire_all()
    return {"purchases": purchases, "assignments": assignments, "draws": draws}


def _require_participant(session: Session, participant_id: int) -> Participant:
    participant = session.get(Participant, participant_id)
    if participant is None:
        raise NotFoundError(f"Participant {participant_id} not found")
    return participant


def participant_overview(session: Session, participant_id: int) -> dict[str, Any]:
    """Summary of a participant's progress for the profile screen."""

    participant = _require_participant(session, participant_id)
    latest_draw: Optional[Draw] = session.scalars(
        select(Draw)
        .where(Draw.owner_id == participant_id)
        .order_by(Draw.created_at.desc(), Draw.id.desc())
    ).first()
    return {
        "status": participant.status.value,
        "step": participant.status.index,
        "tickets": participant.ticket_counts,
        "total_tickets": participant.total_tickets,
        "can_use_ticket": participant.can_use_ticket,
        "referral_count": participant.referral_count,
        "latest_draw_id": latest_draw.id if latest_draw is not None else None,
    }
