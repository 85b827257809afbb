import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from sqlalchemy import select

from ringokai.config import Settings
from ringokai.db.engine import get_sessionmaker, make_engine
from ringokai.errors import ForbiddenError, InvalidStateError, NotFoundError
from ringokai.lottery.weights import DEFAULT_APPLE_WEIGHTS
from ringokai.models import (
    Assignment,
    Base,
    Draw,
    DrawOutcome,
    Participant,
    ParticipantStatus,
    Purchase,
)
from ringokai.workflows import (
    agree_to_terms,
    check_guide,
    claim_referral,
    collect_due_notifications,
    ensure_referral_code,
    get_or_create_assignment,
    load_weights,
    mark_fulfilled,
    participant_overview,
    register_participant,
    register_wishlist,
    reset_participant,
    reveal_draw,
    review_purchase,
    run_draw,
    submit_assignment,
    submit_purchase,
    update_weights,
    use_ticket,
)

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
S = ParticipantStatus
SETTINGS = Settings(
    bypass_emails=frozenset({"qa@example.com"}),
    reveal_delay=timedelta(minutes=60),
)


class ScriptedRandom:
    def __init__(self, *values: float):
        self._values = list(values)

    def random(self) -> float:
        return self._values.pop(0)


class WorkflowTestBase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def _participant(self, session, name, status, *, wishlist=True, **kwargs):
        participant = Participant(
            email=f"{name}@example.com",
            status=status,
            wishlist_url=f"https://wishlist.example.com/{name}" if wishlist else None,
            **kwargs,
        )
        session.add(participant)
        session.flush()
        return participant


class OnboardingWorkflowTestCase(WorkflowTestBase):
    def test_register_and_onboard(self):
        with self.Session.begin() as session:
            participant = register_participant(session, "New@Example.com", nickname="Neo")
            self.assertEqual(participant.email, "new@example.com")
            self.assertEqual(participant.status, S.AWAITING_TOS_AGREEMENT)

            self.assertEqual(agree_to_terms(session, participant.id), S.AWAITING_GUIDE_CHECK)
            self.assertTrue(participant.tos_agreed)
            with self.assertRaises(InvalidStateError):
                agree_to_terms(session, participant.id)

            self.assertEqual(check_guide(session, participant.id), S.READY_TO_PURCHASE)
            self.assertTrue(participant.guide_checked)

    def test_duplicate_email_rejected(self):
        with self.Session.begin() as session:
            register_participant(session, "dup@example.com")
            with self.assertRaises(ValueError):
                register_participant(session, " DUP@example.com")

    def test_unknown_participant(self):
        with self.Session.begin() as session:
            with self.assertRaises(NotFoundError):
                agree_to_terms(session, 404)


class GiftCycleWorkflowTestCase(WorkflowTestBase):
    def test_full_cycle(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE, wishlist=False)
            target = self._participant(session, "target", S.WAITING_FOR_FULFILLMENT)

            assignment = get_or_create_assignment(session, buyer.id, clock=lambda: NOW)
            self.assertEqual(assignment.target_id, target.id)

            purchase = submit_purchase(
                session, buyer.id, assignment.id, "order-77", clock=lambda: NOW
            )
            self.assertEqual(purchase.status, "submitted")
            self.assertEqual(buyer.status, S.AWAITING_APPROVAL)
            self.assertEqual(assignment.status, "submitted")

            review_purchase(session, purchase.id, approve=True, clock=lambda: NOW)
            self.assertEqual(purchase.status, "approved")
            self.assertEqual(assignment.status, "completed")
            self.assertEqual(buyer.status, S.READY_TO_REGISTER_WISHLIST)

            status = register_wishlist(
                session,
                buyer.id,
                wishlist_url="https://wishlist.example.com/buyer",
                primary_item_name="Notebook",
                budget_min=999.6,
                budget_max=2000,
            )
            self.assertEqual(status, S.READY_TO_DRAW)
            self.assertEqual(buyer.wishlist.budget_min, 1000)

            ticket = run_draw(
                session,
                buyer.id,
                rng=ScriptedRandom(0.9, 0.0),
                clock=lambda: NOW,
                settings=SETTINGS,
            )
            self.assertEqual(buyer.status, S.REVEALING)

            hidden = reveal_draw(session, ticket.draw_id, buyer.id, clock=lambda: NOW)
            self.assertFalse(hidden.is_revealed)

            shown = reveal_draw(
                session, ticket.draw_id, buyer.id, clock=lambda: NOW + timedelta(hours=1)
            )
            self.assertEqual(shown.outcome, DrawOutcome.POISON)
            self.assertEqual(buyer.status, S.READY_TO_PURCHASE)

            overview = participant_overview(session, buyer.id)
            self.assertEqual(overview["status"], "READY_TO_PURCHASE")
            self.assertEqual(overview["latest_draw_id"], ticket.draw_id)

    def test_rejected_purchase_reopens_assignment(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE, wishlist=False)
            self._participant(session, "target", S.READY_TO_DRAW)
            assignment = get_or_create_assignment(session, buyer.id)
            purchase = submit_purchase(session, buyer.id, assignment.id, "order-1")

            review_purchase(session, purchase.id, approve=False)
            self.assertEqual(purchase.status, "rejected")
            self.assertEqual(assignment.status, "pending")
            self.assertEqual(buyer.status, S.READY_TO_PURCHASE)

            with self.assertRaises(InvalidStateError):
                review_purchase(session, purchase.id, approve=True)

            again = submit_purchase(session, buyer.id, assignment.id, "order-2")
            self.assertEqual(assignment.purchase_ref, "order-2")
            self.assertNotEqual(again.id, purchase.id)

    def test_submit_assignment_twice(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE, wishlist=False)
            self._participant(session, "target", S.READY_TO_DRAW)
            assignment = get_or_create_assignment(session, buyer.id)

            submit_assignment(session, assignment.id, buyer.id, "proof-1")
            with self.assertRaises(InvalidStateError):
                submit_assignment(session, assignment.id, buyer.id, "proof-2")
            self.assertEqual(assignment.purchase_ref, "proof-1")

    def test_submit_purchase_requires_proof(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE, wishlist=False)
            with self.assertRaises(ValueError):
                submit_purchase(session, buyer.id, 1, "   ")

    def test_review_unknown_purchase(self):
        with self.Session.begin() as session:
            with self.assertRaises(NotFoundError):
                review_purchase(session, 99, approve=True)

    def test_wishlist_validation(self):
        with self.Session.begin() as session:
            participant = self._participant(
                session, "p", S.READY_TO_REGISTER_WISHLIST, wishlist=False
            )
            with self.assertRaises(ValueError):
                register_wishlist(
                    session,
                    participant.id,
                    wishlist_url="ftp://example.com/list",
                    primary_item_name="Mug",
                )
            with self.assertRaises(ValueError):
                register_wishlist(
                    session,
                    participant.id,
                    wishlist_url="https://example.com/list",
                    primary_item_name="  ",
                )
            self.assertEqual(participant.status, S.READY_TO_REGISTER_WISHLIST)

    def test_wishlist_update_keeps_status(self):
        with self.Session.begin() as session:
            participant = self._participant(session, "p", S.WAITING_FOR_FULFILLMENT)
            status = register_wishlist(
                session,
                participant.id,
                wishlist_url="https://example.com/new",
                primary_item_name="Mug",
                budget_max=-5,
            )
            self.assertEqual(status, S.WAITING_FOR_FULFILLMENT)
            self.assertEqual(participant.wishlist_url, "https://example.com/new")
            self.assertIsNone(participant.wishlist.budget_max)


class TicketWorkflowTestCase(WorkflowTestBase):
    def test_mark_fulfilled_then_use_ticket(self):
        with self.Session.begin() as session:
            participant = self._participant(
                session,
                "p",
                S.WAITING_FOR_FULFILLMENT,
                tickets_bronze=2,
                tickets_gold=1,
            )
            self.assertTrue(mark_fulfilled(session, participant.id))
            self.assertEqual(participant.status, S.CYCLE_COMPLETE)
            self.assertTrue(participant.can_use_ticket)

            self.assertEqual(use_ticket(session, participant.id), "gold")
            self.assertEqual(participant.status, S.READY_TO_DRAW)
            self.assertEqual(participant.tickets_gold, 0)
            self.assertEqual(participant.total_tickets, 2)
            self.assertFalse(participant.can_use_ticket)
            self.assertTrue(participant.tickets_consistent())

            with self.assertRaises(InvalidStateError):
                use_ticket(session, participant.id)

    def test_use_specific_ticket(self):
        with self.Session.begin() as session:
            participant = self._participant(
                session,
                "p",
                S.READY_TO_PURCHASE,
                tickets_silver=1,
                can_use_ticket=True,
            )
            with self.assertRaises(InvalidStateError):
                use_ticket(session, participant.id, "red")
            with self.assertRaises(ValueError):
                use_ticket(session, participant.id, "platinum")
            self.assertEqual(use_ticket(session, participant.id, "silver"), "silver")
            self.assertEqual(participant.tickets_silver, 0)

    def test_no_tickets(self):
        with self.Session.begin() as session:
            participant = self._participant(
                session, "p", S.CYCLE_COMPLETE, can_use_ticket=True
            )
            with self.assertRaises(InvalidStateError):
                use_ticket(session, participant.id)

    def test_mark_fulfilled_wrong_status(self):
        with self.Session.begin() as session:
            participant = self._participant(session, "p", S.READY_TO_DRAW)
            self.assertFalse(mark_fulfilled(session, participant.id))
            self.assertFalse(participant.can_use_ticket)


class ReferralWorkflowTestCase(WorkflowTestBase):
    def test_referral_code_is_stable(self):
        with self.Session.begin() as session:
            participant = self._participant(session, "p", S.READY_TO_PURCHASE)
            code = ensure_referral_code(session, participant.id)
            self.assertEqual(len(code), 10)
            self.assertEqual(ensure_referral_code(session, participant.id), code)

    def test_referral_code_collision_retries(self):
        with self.Session.begin() as session:
            taken = self._participant(session, "taken", S.READY_TO_PURCHASE)
            taken.referral_code = "aaaaaaaaaa"
            participant = self._participant(session, "p", S.READY_TO_PURCHASE)
            session.flush()

            with mock.patch(
                "ringokai.workflows.secrets.token_hex",
                side_effect=["aaaaaaaaaa", "bbbbbbbbbb"],
            ):
                code = ensure_referral_code(session, participant.id)
            self.assertEqual(code, "bbbbbbbbbb")

    def test_register_with_referral(self):
        with self.Session.begin() as session:
            referrer = self._participant(session, "ref", S.READY_TO_PURCHASE)
            code = ensure_referral_code(session, referrer.id)

            newcomer = register_participant(session, "new@example.com", referral_code=code)
            self.assertEqual(newcomer.referred_by_id, referrer.id)
            self.assertEqual(referrer.referral_count, 1)

            # Second claim for the same participant is ignored.
            self.assertFalse(claim_referral(session, newcomer.id, code))
            self.assertEqual(referrer.referral_count, 1)

    def test_self_and_unknown_referrals_ignored(self):
        with self.Session.begin() as session:
            participant = self._participant(session, "p", S.READY_TO_PURCHASE)
            code = ensure_referral_code(session, participant.id)
            self.assertFalse(claim_referral(session, participant.id, code))
            self.assertFalse(claim_referral(session, participant.id, "nope"))
            self.assertEqual(participant.referral_count, 0)


class AdminWorkflowTestCase(WorkflowTestBase):
    def test_weights_roundtrip_with_total(self):
        with self.Session.begin() as session:
            self.assertEqual(load_weights(session), DEFAULT_APPLE_WEIGHTS)
            new = {"poison": 40, "bronze": 40, "silver": 15, "gold": 4.5, "red": 0.5}
            update_weights(session, new, require_total=100)
            self.assertEqual(load_weights(session).poison, 40.0)

            with self.assertRaises(ValueError):
                update_weights(session, {**new, "poison": 39}, require_total=100)
            self.assertEqual(load_weights(session).poison, 40.0)

    def test_collect_due_notifications(self):
        with self.Session.begin() as session:
            owner = self._participant(session, "owner", S.REVEALING)
            due = Draw(owner_id=owner.id, outcome=DrawOutcome.GOLD, reveal_at=NOW - timedelta(minutes=1))
            later = Draw(owner_id=owner.id, outcome=DrawOutcome.BRONZE, reveal_at=NOW + timedelta(hours=1))
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            done = Assignment(buyer_id=buyer.id, target_id=owner.id, status="completed")
            session.add_all([due, later, done])
            session.flush()

            first = collect_due_notifications(session, clock=lambda: NOW)
            self.assertEqual(
                first["draw_results"],
                [{"participant_id": owner.id, "draw_id": due.id, "result": "gold"}],
            )
            self.assertEqual(
                first["wishlist_fulfilled"],
                [{"participant_id": owner.id, "assignment_id": done.id}],
            )

            second = collect_due_notifications(session, clock=lambda: NOW)
            self.assertEqual(second, {"draw_results": [], "wishlist_fulfilled": []})

            with self.assertRaises(ValueError):
                collect_due_notifications(session, limit=0)

    def test_reset_participant(self):
        with self.Session.begin() as session:
            qa = self._participant(session, "qa", S.REVEALING)
            other = self._participant(session, "other", S.READY_TO_PURCHASE)
            session.add(Draw(owner_id=qa.id, outcome=DrawOutcome.RED, reveal_at=NOW))
            assignment = Assignment(buyer_id=other.id, target_id=qa.id)
            session.add(assignment)
            session.flush()
            session.add(Purchase(buyer_id=qa.id, proof_ref="x"))
            session.flush()
            qa_id = qa.id

            with self.assertRaises(ForbiddenError):
                reset_participant(
                    session, qa_id, requester_email="other@example.com", settings=SETTINGS
                )

            counts = reset_participant(
                session,
                qa_id,
                "ready_to_draw",
                requester_email="qa@example.com",
                settings=SETTINGS,
            )
            self.assertEqual(counts, {"purchases": 1, "assignments": 1, "draws": 1})
            self.assertEqual(session.get(Participant, qa_id).status, S.READY_TO_DRAW)
            self.assertEqual(session.scalars(select(Draw)).all(), [])


if __name__ == "__main__":
    unittest.main()
