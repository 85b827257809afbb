from datetime import datetime, timedelta, timezone

from ringokai.db.engine import get_sessionmaker, make_engine
from ringokai.lottery.token_budget import TokenBudget
from ringokai.lottery.weights import DEFAULT_APPLE_WEIGHTS, update_weights
from ringokai.models import (
    Assignment,
    Base,
    Draw,
    DrawOutcome,
    Participant,
    ParticipantStatus,
    Wishlist,
)

S = ParticipantStatus


def _participant(nickname: str, status: ParticipantStatus, **kwargs) -> Participant:
    handle = nickname.lower()
    participant = Participant(
        email=f"{handle}@example.com",
        nickname=nickname,
        status=status,
        wishlist_url=f"https://wishlist.example.com/{handle}",
        **kwargs,
    )
    participant.tos_agreed = status != S.AWAITING_TOS_AGREEMENT
    participant.guide_checked = status.index > S.AWAITING_GUIDE_CHECK.index
    participant.wishlist = Wishlist(
        primary_item_name=f"{nickname}'s favourite book",
        budget_min=1000,
        budget_max=3000,
    )
    return participant


def main() -> None:
    """Reset the development database and fill it with one of every stage."""
    engine = make_engine()

    # SQLite cannot drop the self-referencing participants table with FKs on.
    with engine.connect() as conn:
        if conn.dialect.name == "sqlite":
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        Base.metadata.drop_all(bind=conn)
        if conn.dialect.name == "sqlite":
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")
        conn.commit()

    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)
    now = datetime.now(timezone.utc)

    with Session.begin() as session:
        update_weights(session, DEFAULT_APPLE_WEIGHTS)
        budget = TokenBudget(session)
        budget.credit(3)

        alice = _participant("Alice", S.READY_TO_PURCHASE, referral_code="alice00001")
        bob = _participant("Bob", S.WAITING_FOR_FULFILLMENT, tickets_silver=2)
        carol = _participant("Carol", S.READY_TO_DRAW)
        dave = _participant("Dave", S.REVEALING, referral_count=2)
        erin = _participant("Erin", S.CYCLE_COMPLETE, tickets_gold=3, can_use_ticket=True)
        newbie = Participant(email="newbie@example.com", nickname="Newbie")
        session.add_all([alice, bob, carol, dave, erin, newbie])
        session.flush()

        session.add(Assignment(buyer_id=alice.id, target_id=bob.id))
        session.add(
            Draw(
                owner_id=dave.id,
                outcome=DrawOutcome.SILVER,
                reveal_at=now + timedelta(minutes=5),
            )
        )

    print("Seeded development data.")


if __name__ == "__main__":
    main()
