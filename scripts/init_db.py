from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from ringokai.db.engine import get_sessionmaker, make_engine
from ringokai.lottery.token_budget import TokenBudget


def upgrade_db(target_revision: str = "head") -> None:
    """Apply Alembic migrations up to ``target_revision``."""
    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def ensure_token_budget() -> int:
    """Create the singleton token budget row and return its balance."""
    engine = make_engine()
    Session = get_sessionmaker(engine)
    with Session.begin() as session:
        budget = TokenBudget(session)
        budget.ensure_row()
        return budget.balance()


def main() -> None:
    upgrade_db()
    balance = ensure_token_budget()
    tables = inspect(make_engine()).get_table_names()
    print("Current tables:", ", ".join(sorted(tables)))
    print("Token budget balance:", balance)


if __name__ == "__main__":
    main()
