from __future__ import annotations

import math
import re
from typing import Any, Optional

from tender_unifier.errors import FieldExtractionWarning

MAX_ABS_AMOUNT = 1e15

# Longest symbols first so "US$" wins over "$".
CURRENCY_SYMBOLS: list[tuple[str, str]] = [
    ("US$", "USD"),
    ("C$", "CAD"),
    ("A$", "AUD"),
    ("NZ$", "NZD"),
    ("HK$", "HKD"),
    ("S$", "SGD"),
    ("R$", "BRL"),
    ("Rs.", "INR"),
    ("Rs", "INR"),
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("₩", "KRW"),
    ("₱", "PHP"),
    ("₦", "NGN"),
    ("৳", "BDT"),
]
CURRENCY_SYMBOLS.sort(key=lambda item: len(item[0]), reverse=True)

# ISO 4217 style codes are upper case; "Lot 5" or "est 100" carry no currency.
_CODE_PREFIX_RE = re.compile(r"^\s*([A-Z]{3})(?=[\s\d.+-])")
_CODE_SUFFIX_RE = re.compile(r"(?<=[\d\s.])([A-Z]{3})\s*$")
_SEPARATORS_RE = re.compile(r"[,\s'_]")
_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")

ENGLISH_MARKERS = ["the", "and", "for", "this", "that", "with", "from"]

STRONG_ENGLISH_MARKERS = [
    "the", "and", "for", "this", "that", "with", "from",
    "have", "has", "had", "not", "are", "were", "was",
    "will", "would", "should", "could", "can", "may",
    "than", "then", "they", "them", "their", "there",
    "here", "where", "when", "which", "what", "who",
]

_WORD_RE = re.compile(r"[a-z]+")
_SPACES_RE = re.compile(r"\s+")


def collapse_spaces(value: str) -> str:
    return _SPACES_RE.sub(" ", value).strip()


def capitalize_first(value: str) -> str:
    if not value:
        return value
    return value[0].upper() + value[1:]


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def _strip_currency_markers(text: str) -> str:
    for symbol, _code in CURRENCY_SYMBOLS:
        text = text.replace(symbol, " ")
    text = _CODE_PREFIX_RE.sub(" ", text)
    text = _CODE_SUFFIX_RE.sub(" ", text)
    return text


def extract_numeric_value(
    value: Any,
    *,
    field: str = "estimated_value",
    warnings: Optional[list] = None,
) -> Optional[float]:
    """Parse a money-ish value into a finite float within +/-1e15.

    Strips ISO code prefixes/suffixes, currency symbols and thousands
    separators. Anything else yields None and, when ``warnings`` is given,
    a FieldExtractionWarning is appended.
    """
    if value is None or isinstance(value, bool):
        return None

    def _reject(reason: str) -> None:
        if warnings is not None:
            warnings.append(FieldExtractionWarning(field, value, reason))
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        cleaned = _SEPARATORS_RE.sub("", _strip_currency_markers(text))
        if not _NUMBER_RE.fullmatch(cleaned):
            return _reject("not a number")
        number = float(cleaned)
    else:
        return _reject(f"unsupported type {type(value).__name__}")

    if not math.isfinite(number):
        return _reject("not finite")
    if abs(number) > MAX_ABS_AMOUNT:
        return _reject("out of range")
    return number


def extract_currency(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not any(ch.isdigit() for ch in value):
        return None
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in value:
            return code
    match = _CODE_PREFIX_RE.search(value) or _CODE_SUFFIX_RE.search(value)
    if match:
        return match.group(1)
    return None


def _count_markers(text: str, markers: list[str]) -> int:
    words = _WORD_RE.findall(text.lower())
    wanted = set(markers)
    return sum(1 for w in words if w in wanted)


def is_english_text(text: Any) -> bool:
    if not isinstance(text, str) or not text:
        return False
    return _count_markers(text, ENGLISH_MARKERS) >= 3


def is_strongly_english(text: Any) -> bool:
    """Density check over a fixed function-word list.

    Short texts (<100 words) need at least 3 hits; longer ones need 5% of words.
    """
    if not isinstance(text, str) or len(text) < 20:
        return False
    word_count = len(text.split())
    hits = _count_markers(text, STRONG_ENGLISH_MARKERS)
    if word_count < 100:
        return hits >= 3
    return hits / word_count >= 0.05
