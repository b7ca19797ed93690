"""
Parcel Graph NYC - BBL (Borough-Block-Lot) normalization.

Sources disagree on how a BBL is written: the rolling sales files report
borough/block/lot as separate, unpadded fields; PLUTO ships the BBL as a
float ("1012340001.00000000"); other feeds group digits with separators.
Everything here reduces those variants to one 10-character string so that
identifiers from different sources compare equal.

All functions return None on input they cannot place. They never raise.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from config.settings import (
    BBL_LENGTH,
    BLOCK_PREFIX_LENGTH,
    BLOCK_WIDTH,
    BOROUGH_CODES,
    BOROUGH_TOKENS,
    CONDO_UNIT_LOT_MIN,
    LOT_WIDTH,
)

_SEPARATORS = re.compile(r"[.,\-/\s]+")
_NON_DIGITS = re.compile(r"\D")


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN
        return True
    return str(value).strip() == ""


def _digits(value) -> str:
    if _is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return _NON_DIGITS.sub("", str(value))


def borough_code(token) -> Optional[str]:
    """Map a borough token (code, abbreviation or name) to its 1-digit code."""
    if _is_blank(token):
        return None
    if isinstance(token, float) and token.is_integer():
        token = int(token)
    return BOROUGH_TOKENS.get(str(token).strip().upper())


def borough_name(code) -> Optional[str]:
    normalized = borough_code(code)
    return BOROUGH_CODES.get(normalized) if normalized else None


def create_bbl(borough, block, lot) -> Optional[str]:
    """
    Build a BBL from its components.

    Block and lot are lenient: stray punctuation is dropped and whatever
    digits remain are zero-padded. Returns None when the borough token is
    not recognized or a component cannot fit its fixed width.
    """
    boro = borough_code(borough)
    if boro is None:
        return None

    block_digits = _digits(block).lstrip("0")
    lot_digits = _digits(lot).lstrip("0")
    if len(block_digits) > BLOCK_WIDTH or len(lot_digits) > LOT_WIDTH:
        return None

    return boro + block_digits.zfill(BLOCK_WIDTH) + lot_digits.zfill(LOT_WIDTH)


def normalize_bbl(raw) -> Optional[str]:
    """
    Normalize an already-combined BBL to its 10-character form.

    - "1012340001.00000000" (float artifact) -> "1012340001"
    - "1002345.001" and "1,002,345,0001" -> "1002345001"
    - "1-01234-7501" (borough/block/lot groups) -> "1012347501"
    - "0001012340001" -> "1012340001"
    """
    if _is_blank(raw):
        return None
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)

    text = str(raw).strip()

    # An all-zero fractional part is a float serialization, not a lot suffix.
    if "." in text:
        head, _, tail = text.partition(".")
        if tail.strip("0") == "" or not _digits(tail):
            text = head

    groups = [_digits(g) for g in _SEPARATORS.split(text)]
    groups = [g for g in groups if g]
    if not groups:
        return None

    if len(groups) == 3 and len(groups[0]) == 1:
        return create_bbl(groups[0], groups[1], groups[2])

    if len(groups) == 1:
        digits = groups[0].lstrip("0")
        if not digits or len(digits) > BBL_LENGTH:
            return None
        return digits.zfill(BBL_LENGTH)

    head = "".join(groups[:-1]).lstrip("0")
    width = BBL_LENGTH - len(head)
    tail = groups[-1].lstrip("0")
    if not head or width < 1 or len(tail) > width:
        return None
    return (head + tail.zfill(width)).zfill(BBL_LENGTH)


def split_bbl(bbl: str) -> Optional[Tuple[str, str, str]]:
    """Split a normalized BBL into (borough, block, lot) strings."""
    if not bbl or len(bbl) != BBL_LENGTH or not bbl.isdigit():
        return None
    return bbl[0], bbl[1:1 + BLOCK_WIDTH], bbl[1 + BLOCK_WIDTH:]


def block_prefix(bbl: str) -> Optional[str]:
    """Borough + block: the first 6 characters of a normalized BBL."""
    if not bbl or len(bbl) != BBL_LENGTH:
        return None
    return bbl[:BLOCK_PREFIX_LENGTH]


def lot_number(bbl: str) -> Optional[int]:
    parts = split_bbl(bbl)
    return int(parts[2]) if parts else None


def is_condo_unit_lot(lot) -> bool:
    """True for lots in the condominium unit range (7501 and up)."""
    digits = _digits(lot)
    if not digits:
        return False
    return int(digits) >= CONDO_UNIT_LOT_MIN
