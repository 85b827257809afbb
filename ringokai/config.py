"""Runtime settings loaded from the environment (and ``.env`` when present)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

DEFAULT_REVEAL_DELAY_MINUTES = 60


@dataclass(frozen=True)
class Settings:
    """Settings consumed by the lottery and lifecycle code.

    Attributes
    ----------
    bypass_emails : frozenset[str]
        Lower-cased identities exempt from the draw-eligibility check.
    reveal_delay : timedelta
        Time between a draw and the moment its outcome becomes visible.
    """

    bypass_emails: frozenset[str] = field(default_factory=frozenset)
    reveal_delay: timedelta = timedelta(minutes=DEFAULT_REVEAL_DELAY_MINUTES)


def _parse_emails(raw: Optional[str]) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(
        item.strip().lower() for item in raw.split(",") if item.strip()
    )


def _parse_minutes(raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        return DEFAULT_REVEAL_DELAY_MINUTES
    minutes = int(raw)
    if minutes < 0:
        raise ValueError("RINGOKAI_REVEAL_DELAY_MINUTES must not be negative")
    return minutes


@lru_cache(maxsize=1)
def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        load_dotenv()

    return Settings(
        bypass_emails=_parse_emails(os.getenv("RINGOKAI_BYPASS_EMAILS")),
        reveal_delay=timedelta(
            minutes=_parse_minutes(os.getenv("RINGOKAI_REVEAL_DELAY_MINUTES"))
        ),
    )
