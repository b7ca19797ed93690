"""Offline street-address normalization (USPS-style abbreviations)."""

import re
from typing import Optional

_REPLACEMENTS = [
    (r"\bSTREET\b", "ST"),
    (r"\bAVENUE\b", "AVE"),
    (r"\bBOULEVARD\b", "BLVD"),
    (r"\bDRIVE\b", "DR"),
    (r"\bLANE\b", "LN"),
    (r"\bROAD\b", "RD"),
    (r"\bCOURT\b", "CT"),
    (r"\bPLACE\b", "PL"),
    (r"\bCIRCLE\b", "CIR"),
    (r"\bTERRACE\b", "TER"),
    (r"\bNORTH\b", "N"),
    (r"\bSOUTH\b", "S"),
    (r"\bEAST\b", "E"),
    (r"\bWEST\b", "W"),
    (r"\bAPARTMENT\b", "APT"),
    (r"\bSUITE\b", "STE"),
    (r"\bFLOOR\b", "FL"),
    (r"\.", ""),
    (r",\s*APT\s+", " APT "),
    (r",\s*UNIT\s+", " UNIT "),
    (r",\s*#\s*", " #"),
]


def simple_address_normalize(address: Optional[str]) -> str:
    """Uppercase, collapse whitespace and abbreviate street suffixes/directions."""
    if address is None or (isinstance(address, float) and address != address):
        return ""
    text = re.sub(r"\s+", " ", str(address).upper().strip())
    for pattern, replacement in _REPLACEMENTS:
        text = re.sub(pattern, replacement, text)
    return re.sub(r"\s+", " ", text).strip()


def parse_house_number(address: str) -> Optional[tuple]:
    """Split "123-45 MAIN ST" into ("123-45", "MAIN ST")."""
    match = re.match(r"^(\d+[-\d]*)\s+(.+)$", address.strip())
    if not match:
        return None
    return match.group(1), match.group(2)
