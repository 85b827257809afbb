"""Buyer-to-recipient assignment matching."""

from .matcher import DEFAULT_MAX_ATTEMPTS, AssignmentMatcher, mask_identifier

__all__ = ["AssignmentMatcher", "DEFAULT_MAX_ATTEMPTS", "mask_identifier"]
