"""Lottery engine, token budget, weights and reward finalization."""

from .engine import BRONZE_SHORTCUT_PROBABILITY, DrawTicket, LotteryEngine
from .rewards import TICKET_REWARDS, RevealView, RewardLedger, next_status_after
from .token_budget import TokenBudget
from .weights import (
    DEFAULT_APPLE_WEIGHTS,
    AppleWeights,
    expected_payout_percent,
    load_weights,
    personal_weights,
    update_weights,
    validate_weights,
)

__all__ = [
    "AppleWeights",
    "BRONZE_SHORTCUT_PROBABILITY",
    "DEFAULT_APPLE_WEIGHTS",
    "DrawTicket",
    "LotteryEngine",
    "RevealView",
    "RewardLedger",
    "TICKET_REWARDS",
    "TokenBudget",
    "expected_payout_percent",
    "load_weights",
    "next_status_after",
    "personal_weights",
    "update_weights",
    "validate_weights",
]
