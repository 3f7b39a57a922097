"""
Consumer number normalization.

Spreadsheet cells arrive as strings, ints or floats (``14102000674.0``).
Everything is reduced to digits, checked for a plausible length and
left-padded to the fixed width the site expects.
"""

import re
from typing import Any, Iterable, List, Tuple

from .errors import InvalidIdentifier

IDENTIFIER_WIDTH = 11
MIN_DIGITS = 6
MAX_DIGITS = 15

# Separators people type into spreadsheets; anything else is rejected
_SEPARATORS = re.compile(r"[\s\-_./]")
_FLOAT_CELL = re.compile(r"^(\d+)\.0+$")


def _to_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bool):
        raise InvalidIdentifier(f"Not a consumer number: {raw!r}")
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, float):
        # Empty spreadsheet cells come through as NaN
        if raw != raw:
            return ""
        if not raw.is_integer():
            raise InvalidIdentifier(f"Not a consumer number: {raw!r}")
        return str(int(raw))
    return str(raw).strip()


def normalize_identifier(raw: Any) -> str:
    """
    Normalize a raw consumer number to an 11 digit string.

    Args:
        raw: Cell value (str, int or float)

    Returns:
        Zero-padded numeric string

    Raises:
        InvalidIdentifier: non-numeric content or length outside 6-15 digits
    """
    text = _to_text(raw)
    if not text:
        raise InvalidIdentifier("Empty consumer number")

    match = _FLOAT_CELL.match(text)
    if match:
        text = match.group(1)

    digits = _SEPARATORS.sub("", text)
    if not digits.isdigit():
        raise InvalidIdentifier(f"Consumer number must be numeric: {text!r}", identifier=text)

    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        raise InvalidIdentifier(
            f"Consumer number must have {MIN_DIGITS}-{MAX_DIGITS} digits, got {len(digits)}: {text!r}",
            identifier=text,
        )

    return digits.zfill(IDENTIFIER_WIDTH)


def normalize_identifiers(raws: Iterable[Any]) -> Tuple[List[str], List[Tuple[str, str]]]:
    """
    Normalize an ordered sequence of raw values.

    Blank cells are skipped. Duplicates (after normalization) keep their
    first position so each consumer is processed once per batch.

    Returns:
        (accepted identifiers in input order, [(raw value, reason), ...])
    """
    accepted: List[str] = []
    rejected: List[Tuple[str, str]] = []
    seen = set()

    for raw in raws:
        try:
            if not _to_text(raw):
                continue
            identifier = normalize_identifier(raw)
        except InvalidIdentifier as e:
            rejected.append((str(raw), str(e)))
            continue

        if identifier in seen:
            rejected.append((str(raw), f"Duplicate consumer number {identifier}"))
            continue
        seen.add(identifier)
        accepted.append(identifier)

    return accepted, rejected
