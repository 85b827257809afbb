"""Compare the live database schema with the ringokai models.

Exit codes: 0 when they match, 1 when autogenerate would emit operations,
2 when the comparison itself failed.
"""

from __future__ import annotations

import argparse
import sys
from typing import Iterable, Optional

from alembic.autogenerate import api as ag_api
from alembic.runtime.migration import MigrationContext
from sqlalchemy.exc import SQLAlchemyError

from ringokai.db.engine import make_engine
from ringokai.models import Base


def _render(ops: Iterable, depth: int = 0) -> list[str]:
    lines: list[str] = []
    for op in ops:
        lines.append(f"{'  ' * depth}- {op}")
        nested = getattr(op, "ops", None)
        if nested:
            lines.extend(_render(nested, depth + 1))
    return lines


def check(database_url: Optional[str] = None) -> int:
    engine = make_engine(database_url)
    target = engine.url.render_as_string(hide_password=True)
    try:
        with engine.connect() as connection:
            context = MigrationContext.configure(
                connection=connection,
                opts={
                    "compare_type": True,
                    "compare_server_default": True,
                    "render_as_batch": connection.dialect.name == "sqlite",
                },
            )
            upgrade_ops = ag_api.produce_migrations(context, Base.metadata).upgrade_ops
    except SQLAlchemyError as exc:
        print(f"[{target}] schema check failed: {exc}", file=sys.stderr)
        return 2
    finally:
        engine.dispose()

    if upgrade_ops is None:
        print(f"[{target}] schema check failed: no upgrade operations produced", file=sys.stderr)
        return 2
    if upgrade_ops.is_empty():
        print(f"[{target}] schema matches the models")
        return 0

    print(f"[{target}] schema differs from the models:")
    print("\n".join(_render(upgrade_ops.ops or [])))
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--url", help="database URL (defaults to DB_URL)")
    args = parser.parse_args(argv)
    return check(args.url)


if __name__ == "__main__":
    raise SystemExit(main())
