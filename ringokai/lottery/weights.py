"""Draw weights: persisted admin configuration and per-participant adjustment."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from typing import Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import InternalError
from ..models.settings import SystemSetting
from ..models.status import DrawOutcome

logger = logging.getLogger(__name__)

WEIGHT_ORDER = ("poison", "bronze", "silver", "gold", "red")

WEIGHT_KEY_MAP = {name: f"rtp_{name}_weight" for name in WEIGHT_ORDER}
"""Setting key used to persist each weight."""

_WEIGHT_DESCRIPTIONS = {
    name: f"Base probability weight for {name} apple" for name in WEIGHT_ORDER
}

MAX_REFERRAL_REDUCTION = 20.0
REFERRAL_REDUCTION_STEP = 1.5
POISON_FLOOR = 15.0
REDISTRIBUTION_SHARES = {"bronze": 0.50, "silver": 0.25, "gold": 0.20, "red": 0.05}
"""How poison weight removed by referrals is handed to the other outcomes."""


@dataclass(frozen=True)
class AppleWeights:
    """Relative weights of the five draw outcomes.

    Values are relative; they do not need to sum to 100.
    """

    poison: float
    bronze: float
    silver: float
    gold: float
    red: float

    @property
    def total(self) -> float:
        return self.poison + self.bronze + self.silver + self.gold + self.red

    @property
    def upper(self) -> float:
        """Combined weight of the silver, gold and red outcomes."""
        return self.silver + self.gold + self.red

    def weight_of(self, outcome: DrawOutcome) -> float:
        return getattr(self, outcome.value)

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


DEFAULT_APPLE_WEIGHTS = AppleWeights(
    poison=50.0, bronze=35.0, silver=10.0, gold=4.9, red=0.1
)


def _parse_weight(raw: object) -> Optional[float]:
    """Return a positive finite float parsed from ``raw`` or ``None``."""

    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def load_weights(session: Session) -> AppleWeights:
    """Read the configured weights, falling back to defaults per outcome.

    A missing, non-numeric or non-positive stored value is replaced by the
    matching entry of :data:`DEFAULT_APPLE_WEIGHTS`. A database error yields
    the defaults as a whole.
    """

    try:
        stored = SystemSetting.get_many(session, list(WEIGHT_KEY_MAP.values()))
    except SQLAlchemyError:
        logger.exception("Failed to load draw weights; using defaults")
        return DEFAULT_APPLE_WEIGHTS

    values: dict[str, float] = DEFAULT_APPLE_WEIGHTS.as_dict()
    for name, key in WEIGHT_KEY_MAP.items():
        if key not in stored:
            continue
        parsed = _parse_weight(stored[key])
        if parsed is None:
            logger.warning("Ignoring malformed weight %s=%r", key, stored[key])
            continue
        values[name] = parsed
    return AppleWeights(**values)


def validate_weights(
    weights: "AppleWeights | Mapping[str, object]",
    *,
    require_total: Optional[float] = None,
) -> AppleWeights:
    """Coerce ``weights`` to :class:`AppleWeights` and check every value.

    Raises
    ------
    ValueError
        If a weight is missing, not a finite number, or not positive; or if
        ``require_total`` is given and the weights do not sum to it (±0.01).
    """

    raw = weights.as_dict() if isinstance(weights, AppleWeights) else dict(weights)
    values: dict[str, float] = {}
    for name in WEIGHT_ORDER:
        if name not in raw:
            raise ValueError(f"Missing weight for {name!r}")
        parsed = _parse_weight(raw[name])
        if parsed is None:
            raise ValueError(f"Weight for {name!r} must be a positive number")
        values[name] = parsed

    result = AppleWeights(**values)
    if require_total is not None and abs(result.total - require_total) > 0.01:
        raise ValueError(
            f"Weights must sum to {require_total:g} (got {result.total:g})"
        )
    return result


def update_weights(
    session: Session,
    weights: "AppleWeights | Mapping[str, object]",
    *,
    require_total: Optional[float] = None,
) -> AppleWeights:
    """Replace all five stored weights in one flush.

    Validation happens before anything is written, so a rejected update
    leaves the stored configuration untouched.
    """

    validated = validate_weights(weights, require_total=require_total)
    existing = {
        row.key: row
        for row in (
            session.get(SystemSetting, key) for key in WEIGHT_KEY_MAP.values()
        )
        if row is not None
    }
    for name, key in WEIGHT_KEY_MAP.items():
        value = str(getattr(validated, name))
        row = existing.get(key)
        if row is None:
            session.add(
                SystemSetting(
                    key=key, value=value, description=_WEIGHT_DESCRIPTIONS[name]
                )
            )
        else:
            row.value = value
    try:
        session.flush()
    except SQLAlchemyError as exc:
        raise InternalError("Failed to persist draw weights") from exc

    logger.info("Draw weights updated: %s", validated.as_dict())
    return validated


def expected_payout_percent(weights: AppleWeights) -> float:
    """Share of the total weight that is not poison, as a percentage."""

    total = weights.total
    if total <= 0:
        return 0.0
    return 100.0 * (total - weights.poison) / total


def personal_weights(base: AppleWeights, referral_count: int) -> AppleWeights:
    """Shift poison weight towards the other outcomes for referring participants.

    ``reduction = min(20, referral_count * 1.5)``; poison drops by that
    amount but never below 15, while the full ``reduction`` is spread over
    bronze/silver/gold/red at 50/25/20/5 percent.
    """

    if referral_count < 0:
        raise ValueError("referral_count must be non-negative")
    if referral_count == 0:
        return base

    reduction = min(MAX_REFERRAL_REDUCTION, referral_count * REFERRAL_REDUCTION_STEP)
    return replace(
        base,
        poison=max(POISON_FLOOR, base.poison - reduction),
        bronze=base.bronze + reduction * REDISTRIBUTION_SHARES["bronze"],
        silver=base.silver + reduction * REDISTRIBUTION_SHARES["silver"],
        gold=base.gold + reduction * REDISTRIBUTION_SHARES["gold"],
        red=base.red + reduction * REDISTRIBUTION_SHARES["red"],
    )


__all__ = [
    "AppleWeights",
    "DEFAULT_APPLE_WEIGHTS",
    "WEIGHT_KEY_MAP",
    "WEIGHT_ORDER",
    "load_weights",
    "validate_weights",
    "update_weights",
    "expected_payout_percent",
    "personal_weights",
]
