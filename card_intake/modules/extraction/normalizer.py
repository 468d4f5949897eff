"""Field normalization for extracted card data.

Names on Egyptian cards are printed over two or more lines (given name on
the first, the paternal chain below), so the name is reassembled from the
line list. National IDs are often read back in Arabic-Indic digits.
"""

from __future__ import annotations

import re
import unicodedata

from card_intake.core.errors import IdentifierIncomplete, IdentifierNotFound, NameNotFound
from card_intake.modules.extraction.schemas import ExtractedFields, NormalizedCard

NATIONAL_ID_LENGTH = 14

_NON_ASCII_DIGIT = re.compile(r"[^0-9]")


def assemble_name(lines: list[str]) -> str:
    """Join name lines top to bottom with single spaces, skipping blank lines.

    Each line is trimmed and any whitespace run inside it (double spaces,
    tabs) is collapsed to one space as well.
    """
    parts = [" ".join(line.split()) for line in lines]
    full_name = " ".join(part for part in parts if part)
    if not full_name:
        raise NameNotFound()
    return full_name


def to_ascii_digits(text: str) -> str:
    """Map every Unicode decimal digit (Arabic-Indic, Persian, ...) to ASCII."""
    out = []
    for char in text:
        digit = unicodedata.decimal(char, None)
        out.append(str(digit) if digit is not None else char)
    return "".join(out)


def normalize_national_id(raw: str) -> str:
    digits = _NON_ASCII_DIGIT.sub("", to_ascii_digits(raw))
    if not digits:
        raise IdentifierNotFound()
    if len(digits) != NATIONAL_ID_LENGTH:
        raise IdentifierIncomplete(len(digits))
    return digits


def normalize_fields(fields: ExtractedFields) -> NormalizedCard:
    """Validate and canonicalize one extraction result.

    Raises:
        NameNotFound: no non-blank name line.
        IdentifierNotFound: no digits at all in the identifier.
        IdentifierIncomplete: digit count other than 14.
    """
    return NormalizedCard(
        full_name=assemble_name(fields.name_lines),
        national_id=normalize_national_id(fields.national_id),
    )
