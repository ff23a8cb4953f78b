"""Vendor canonicalization shared by Pass1 and the Rule Learner.

Both sides must derive rule keys through :func:`normalize_vendor`; a rule
learned from a correction is only found again by Pass1 when the two agree on
the key.
"""

from __future__ import annotations

import re
import unicodedata

from .models import NormalizedTransaction

_PROCESSOR_PREFIX = re.compile(r"^(?:sq|tst|pp|paypal|sp)\s*\*\s*")
_STORE_MARKERS = (
    re.compile(r"#\s*\d+"),
    re.compile(r"\bstore\s*\d+\b"),
    re.compile(r"\bno\.?\s*\d+\b"),
)
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_NUMBER = re.compile(r"^\d{3,}$")
# A comma or a padding run before the last token marks a trailing location
# segment ("COFFEE   OAKLAND CA", "Diner, Austin TX"); without one a final
# two-letter word ("Cafe De", "Plug In") belongs to the name.
_LOCATION_BREAK = re.compile(r",|\s{2,}")
_LAST_TOKEN = re.compile(r"\S+$")

_CORPORATE_SUFFIXES = frozenset({"llc", "inc", "corp", "ltd", "co", "company"})
_US_STATES = frozenset(
    {
        "al", "ak", "az", "ar", "ca", "co", "ct", "de", "fl", "ga", "hi", "id", "il",
        "in", "ia", "ks", "ky", "la", "me", "md", "ma", "mi", "mn", "ms", "mo", "mt",
        "ne", "nv", "nh", "nj", "nm", "ny", "nc", "nd", "oh", "ok", "or", "pa", "ri",
        "sc", "sd", "tn", "tx", "ut", "vt", "va", "wa", "wv", "wi", "wy", "dc",
    }
)  # fmt: skip
# Shorter results fall back to the key before suffix removal ("co" alone is
# rarely a vendor).
_MIN_KEY_AFTER_SUFFIX = 4


def _has_location_segment(s: str) -> bool:
    last = _LAST_TOKEN.search(s)
    return last is not None and bool(_LOCATION_BREAK.search(s[: last.start()]))


def _strip_location_tokens(tokens: list[str], *, has_location: bool) -> list[str]:
    while len(tokens) > 1 and _TRAILING_NUMBER.match(tokens[-1]):
        tokens = tokens[:-1]
    if has_location and len(tokens) > 1 and tokens[-1] in _US_STATES:
        tokens = tokens[:-1]
    return tokens


def normalize_vendor(raw: str | None) -> str:
    """Return the canonical vendor key for ``raw`` (``""`` when unusable).

    Steps: NFKC + casefold; drop payment-processor prefixes (``SQ *``,
    ``TST*``); strip store/location markers (``#1234``, ``store 12``, trailing
    store numbers, and a state code ending a comma- or padding-separated
    location); replace punctuation with spaces; collapse whitespace; drop
    corporate suffixes unless that leaves too little.

    >>> normalize_vendor("STARBUCKS #1234")
    'starbucks'
    >>> normalize_vendor("SQ *Blue Bottle Coffee  Oakland CA")
    'blue bottle coffee oakland'
    """

    if raw is None:
        return ""
    s = unicodedata.normalize("NFKC", str(raw)).casefold().strip()
    if not s:
        return ""

    s = _PROCESSOR_PREFIX.sub("", s)
    for pattern in _STORE_MARKERS:
        s = pattern.sub(" ", s)
    has_location = _has_location_segment(s.strip())
    s = _NON_WORD.sub(" ", s)
    tokens = _WHITESPACE.sub(" ", s).strip().split(" ")
    tokens = [t for t in tokens if t]
    if not tokens:
        return ""
    tokens = _strip_location_tokens(tokens, has_location=has_location)

    key = " ".join(tokens)
    without_suffix = " ".join(t for t in tokens if t not in _CORPORATE_SUFFIXES)
    if len(without_suffix) <= _MIN_KEY_AFTER_SUFFIX:
        return key
    return without_suffix


def vendor_source(tx: NormalizedTransaction) -> str:
    """Text a vendor key is derived from: merchant name, else description."""

    merchant = (tx.merchant_name or "").strip()
    return merchant or tx.description


def vendor_key(tx: NormalizedTransaction) -> str:
    return normalize_vendor(vendor_source(tx))


__all__ = ["normalize_vendor", "vendor_key", "vendor_source"]
