import unittest
from datetime import datetime, timezone
from unittest import mock

from sqlalchemy import func, select

from ringokai.db.engine import get_sessionmaker, make_engine
from ringokai.errors import ForbiddenError, InvalidStateError, NotFoundError
from ringokai.matching import AssignmentMatcher, mask_identifier
from ringokai.models import Assignment, Base, Participant, ParticipantStatus, Wishlist

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
S = ParticipantStatus


class AssignmentMatcherTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def _participant(self, session, name, status, *, wishlist=True):
        participant = Participant(
            email=f"{name}@example.com",
            status=status,
            wishlist_url=f"https://wishlist.example.com/{name}" if wishlist else None,
        )
        session.add(participant)
        session.flush()
        return participant

    def _matcher(self, session):
        return AssignmentMatcher(session, clock=lambda: NOW)

    def test_picks_highest_priority_target(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            self._participant(session, "complete", S.CYCLE_COMPLETE)
            self._participant(session, "drawer", S.READY_TO_DRAW)
            waiting = self._participant(session, "waiting", S.WAITING_FOR_FULFILLMENT)
            self._participant(session, "nolist", S.WAITING_FOR_FULFILLMENT, wishlist=False)

            assignment = self._matcher(session).get_or_create_assignment(buyer.id)

            self.assertEqual(assignment.target_id, waiting.id)
            self.assertEqual(assignment.buyer_id, buyer.id)
            self.assertEqual(assignment.status, "pending")

    def test_ties_break_by_lowest_id(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            first = self._participant(session, "first", S.READY_TO_DRAW)
            self._participant(session, "second", S.READY_TO_DRAW)

            assignment = self._matcher(session).get_or_create_assignment(buyer.id)
            self.assertEqual(assignment.target_id, first.id)

    def test_repeat_call_returns_same_assignment(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            self._participant(session, "target", S.READY_TO_DRAW)
            matcher = self._matcher(session)

            first = matcher.get_or_create_assignment(buyer.id)
            second = matcher.get_or_create_assignment(buyer.id)

            self.assertEqual(first.id, second.id)
            self.assertEqual(session.scalar(select(func.count(Assignment.id))), 1)

    def test_reserved_target_is_skipped(self):
        with self.Session.begin() as session:
            buyer_a = self._participant(session, "buyer-a", S.READY_TO_PURCHASE)
            buyer_b = self._participant(session, "buyer-b", S.AWAITING_APPROVAL)
            waiting = self._participant(session, "waiting", S.WAITING_FOR_FULFILLMENT)
            drawer = self._participant(session, "drawer", S.READY_TO_DRAW)
            matcher = self._matcher(session)

            first = matcher.get_or_create_assignment(buyer_a.id)
            second = matcher.get_or_create_assignment(buyer_b.id)

            self.assertEqual(first.target_id, waiting.id)
            self.assertEqual(second.target_id, drawer.id)

    def test_buyer_is_never_own_target(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            with self.assertRaises(NotFoundError):
                self._matcher(session).get_or_create_assignment(buyer.id)

    def test_constraint_conflict_moves_to_next_target(self):
        with self.Session.begin() as session:
            buyer_a = self._participant(session, "buyer-a", S.READY_TO_PURCHASE)
            buyer_b = self._participant(session, "buyer-b", S.READY_TO_PURCHASE)
            waiting = self._participant(session, "waiting", S.WAITING_FOR_FULFILLMENT)
            drawer = self._participant(session, "drawer", S.READY_TO_DRAW)
            matcher = self._matcher(session)
            matcher.get_or_create_assignment(buyer_a.id)

            # Simulate a stale read: the already reserved target looks free.
            with mock.patch.object(
                AssignmentMatcher, "_taken_target_ids", return_value=set()
            ):
                with self.assertLogs("ringokai.matching.matcher", level="WARNING"):
                    assignment = matcher.get_or_create_assignment(buyer_b.id)

            self.assertEqual(assignment.target_id, drawer.id)
            active_on_waiting = session.scalar(
                select(func.count(Assignment.id)).where(
                    Assignment.target_id == waiting.id
                )
            )
            self.assertEqual(active_on_waiting, 1)

    def test_losing_race_for_sole_candidate(self):
        with self.Session.begin() as session:
            buyer_a = self._participant(session, "buyer-a", S.READY_TO_PURCHASE)
            buyer_b = self._participant(session, "buyer-b", S.READY_TO_PURCHASE)
            self._participant(session, "waiting", S.WAITING_FOR_FULFILLMENT)
            matcher = self._matcher(session)
            matcher.get_or_create_assignment(buyer_a.id)

            with mock.patch.object(
                AssignmentMatcher, "_taken_target_ids", return_value=set()
            ):
                with self.assertRaises(NotFoundError):
                    matcher.get_or_create_assignment(buyer_b.id)

            self.assertIsNone(Assignment.active_for_buyer(session, buyer_b.id))

    def test_ineligible_buyer(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_DRAW)
            self._participant(session, "target", S.WAITING_FOR_FULFILLMENT)
            with self.assertRaises(InvalidStateError):
                self._matcher(session).get_or_create_assignment(buyer.id)

    def test_unknown_buyer(self):
        with self.Session.begin() as session:
            with self.assertRaises(NotFoundError):
                self._matcher(session).get_or_create_assignment(12345)

    def test_submit_is_one_way(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            self._participant(session, "target", S.READY_TO_DRAW)
            matcher = self._matcher(session)
            assignment = matcher.get_or_create_assignment(buyer.id)

            submitted = matcher.submit(assignment.id, buyer.id, "order-1")
            self.assertEqual(submitted.status, "submitted")
            self.assertEqual(submitted.purchase_ref, "order-1")
            self.assertIsNotNone(submitted.submitted_at)

            with self.assertRaises(InvalidStateError):
                matcher.submit(assignment.id, buyer.id, "order-2")
            self.assertEqual(assignment.purchase_ref, "order-1")

    def test_submit_by_other_buyer_is_forbidden(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            other = self._participant(session, "other", S.READY_TO_PURCHASE, wishlist=False)
            self._participant(session, "target", S.READY_TO_DRAW)
            matcher = self._matcher(session)
            assignment = matcher.get_or_create_assignment(buyer.id)

            with self.assertRaises(ForbiddenError):
                matcher.submit(assignment.id, other.id, "order-1")
            self.assertEqual(assignment.status, "pending")

    def test_submit_unknown_assignment(self):
        with self.Session.begin() as session:
            with self.assertRaises(NotFoundError):
                self._matcher(session).submit(7, 1, "order-1")

    def test_reopen_and_complete(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            self._participant(session, "target", S.READY_TO_DRAW)
            matcher = self._matcher(session)
            assignment = matcher.get_or_create_assignment(buyer.id)
            matcher.submit(assignment.id, buyer.id, "order-1")

            self.assertTrue(matcher.reopen(assignment.id))
            self.assertEqual(assignment.status, "pending")
            self.assertIsNone(assignment.purchase_ref)
            self.assertFalse(matcher.reopen(assignment.id))

            self.assertTrue(matcher.complete(assignment.id))
            self.assertEqual(assignment.status, "completed")
            self.assertFalse(matcher.complete(assignment.id))

    def test_describe_masks_target(self):
        with self.Session.begin() as session:
            buyer = self._participant(session, "buyer", S.READY_TO_PURCHASE)
            target = self._participant(session, "recipient", S.READY_TO_DRAW)
            target.wishlist = Wishlist(primary_item_name="Tea set", budget_max=3000)
            session.flush()
            matcher = self._matcher(session)
            assignment = matcher.get_or_create_assignment(buyer.id)

            view = matcher.describe(assignment)

        self.assertEqual(view["target"]["maskedId"], "reci••••.com")
        self.assertEqual(view["target"]["details"]["primary_item_name"], "Tea set")
        self.assertEqual(view["target"]["details"]["budget_max"], 3000)

    def test_mask_identifier_hides_short_values(self):
        self.assertEqual(mask_identifier("abc"), "••••")
        self.assertEqual(mask_identifier("12345678"), "••••")
        self.assertEqual(mask_identifier(123456789), "1234••••6789")


if __name__ == "__main__":
    unittest.main()
