"""Venue classification for a position.

A position's venue class decides which price venues the oracle may ask.
The hint can come from several joined records, resolved in this order:

1. the explicit stored flag (``is_alpha_token``),
2. a keyword in the originating signal source ("ALPHA" / "MEME"),
3. whether a contract address is known (none => aggregated venue).

Stored flags go stale when an upstream writer guesses wrong, so the
monitor also checks the flag against the signal keyword every tick and
persists the keyword's answer when they disagree.
"""
from typing import Optional

from autoexit.core.position import Classification

ALPHA_KEYWORD = "ALPHA"
POOL_KEYWORD = "MEME"


def keyword_classification(signal_source: Optional[str]) -> Optional[Classification]:
    source = (signal_source or "").upper()
    if ALPHA_KEYWORD in source:
        return Classification.ALPHA
    if POOL_KEYWORD in source:
        return Classification.POOL
    return None


def resolve_classification(stored_flag: Optional[bool],
                           signal_source: Optional[str],
                           contract_address: Optional[str]) -> Classification:
    if stored_flag is not None:
        return Classification.ALPHA if stored_flag else Classification.POOL
    by_keyword = keyword_classification(signal_source)
    if by_keyword is not None:
        return by_keyword
    if not contract_address:
        return Classification.ALPHA
    return Classification.UNKNOWN


def detect_misclassification(stored_flag: Optional[bool],
                             signal_source: Optional[str]) -> Optional[bool]:
    """Return the corrected ``is_alpha_token`` flag, or None when no fix is needed."""
    by_keyword = keyword_classification(signal_source)
    if by_keyword is None:
        return None
    expected = by_keyword is Classification.ALPHA
    if stored_flag is expected:
        return None
    return expected
