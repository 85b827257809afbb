import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from ringokai.config import Settings
from ringokai.db.engine import get_sessionmaker, make_engine
from ringokai.errors import InvalidStateError
from ringokai.lottery.engine import LotteryEngine
from ringokai.lottery.rewards import RewardLedger
from ringokai.lottery.token_budget import TokenBudget
from ringokai.models import Base, Draw, DrawOutcome, Participant, ParticipantStatus

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
SETTINGS = Settings(bypass_emails=frozenset(), reveal_delay=timedelta(minutes=60))


class ScriptedRandom:
    def __init__(self, *values: float):
        self._values = list(values)

    def random(self) -> float:
        return self._values.pop(0)


class TwoSessionTestCase(unittest.TestCase):
    """Interleave two sessions on a file database.

    The second session reads its rows and commits before the first one
    writes, so it acts on stale cached objects without holding a lock.
    """

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self._tmpdir.name, "ringokai.db")
        self.engine = make_engine(f"sqlite+pysqlite:///{path}")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)
        self.late_session = self.Session()

    def tearDown(self):
        self.late_session.close()
        self.engine.dispose()
        self._tmpdir.cleanup()

    def _participant(self, status):
        with self.Session.begin() as session:
            participant = Participant(email="racer@example.com", status=status)
            session.add(participant)
            session.flush()
            return participant.id

    def _lottery(self, session, *values):
        return LotteryEngine(
            session, rng=ScriptedRandom(*values), clock=lambda: NOW, settings=SETTINGS
        )

    def test_second_draw_from_stale_session_is_rejected(self):
        participant_id = self._participant(ParticipantStatus.READY_TO_DRAW)

        stale = self.late_session.get(Participant, participant_id)
        self.late_session.commit()
        self.assertEqual(stale.status, ParticipantStatus.READY_TO_DRAW)

        with self.Session.begin() as session:
            ticket = self._lottery(session, 0.9, 0.0).draw(participant_id)
            self.assertEqual(ticket.outcome, DrawOutcome.POISON)

        with self.assertRaises(InvalidStateError):
            with self.late_session.begin():
                self._lottery(self.late_session, 0.9, 0.0).draw(participant_id)

        with self.Session() as session:
            draws = session.scalar(
                select(func.count(Draw.id)).where(Draw.owner_id == participant_id)
            )
            self.assertEqual(draws, 1)
            self.assertEqual(TokenBudget(session).balance(), 1)
            participant = session.get(Participant, participant_id)
            self.assertEqual(participant.status, ParticipantStatus.REVEALING)

    def test_reveal_from_two_sessions_credits_once(self):
        participant_id = self._participant(ParticipantStatus.REVEALING)
        with self.Session.begin() as session:
            draw = Draw(
                owner_id=participant_id,
                outcome=DrawOutcome.GOLD,
                reveal_at=NOW - timedelta(minutes=5),
            )
            session.add(draw)
            session.flush()
            draw_id = draw.id

        stale = self.late_session.get(Draw, draw_id)
        self.late_session.commit()
        self.assertIsNone(stale.reward_claimed_at)

        with self.Session.begin() as session:
            first = RewardLedger(session, clock=lambda: NOW).reveal(
                draw_id, participant_id
            )
        with self.late_session.begin():
            second = RewardLedger(self.late_session, clock=lambda: NOW).reveal(
                draw_id, participant_id
            )

        self.assertTrue(first.reward_applied)
        self.assertFalse(second.reward_applied)
        self.assertEqual(second.outcome, DrawOutcome.GOLD)

        with self.Session() as session:
            participant = session.get(Participant, participant_id)
            self.assertEqual(participant.tickets_gold, 3)
            self.assertEqual(participant.total_tickets, 3)
            self.assertEqual(
                participant.status, ParticipantStatus.WAITING_FOR_FULFILLMENT
            )


if __name__ == "__main__":
    unittest.main()
