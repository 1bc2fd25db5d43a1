"""Utility helpers for the gvoice-bridge service."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from urllib.parse import quote

DEFAULT_COUNTRY_CODE = "1"
_NON_DIGIT_RE = re.compile(r"[^0-9]")


def normalize_phone(raw: str) -> str:
    """Return the canonical store key for a loosely formatted phone number.

    Everything except the ASCII digits 0-9 is dropped, including other Unicode
    digits such as fullwidth or Arabic-Indic forms. A bare 10-digit national
    number gets the default country code prepended; any other length is
    returned as-is, including the empty string for labels with no digits at
    all (an unidentifiable conversation).

    Not idempotent over arbitrary digit strings: only length 10 is ever
    prefixed, so an 11-digit result passes through unchanged on a second call.
    """
    digits = _NON_DIGIT_RE.sub("", raw or "")
    if len(digits) == 10:
        return DEFAULT_COUNTRY_CODE + digits
    return digits


def item_id_for_phone(normalized: str) -> str:
    """Build the web client's thread item id (``t.+<digits>``) for a stored key.

    Callers pass the result as ``itemId`` to ``GET /conversation``.
    """
    return f"t.+{normalized}"


def quote_item_id(item_id: str) -> str:
    return quote(item_id, safe=".")


def utcnow_naive() -> datetime:
    """Current UTC time without tzinfo, matching how SQLite hands datetimes back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
