"""Deterministic label-based extraction for dictated listings.

Dictation follows a fixed form such as
``"Id: SKU-1, Brand: Levi's, Color: bleu, Price: 45"``. Labels stay in
English even though the values are spoken in French.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Optional, Tuple

from ..domain.models import ExtractedFields
from ..logging import get_logger

LOG = get_logger("extraction-patterns")

_ID_VALUE = r"([^\s,]+)"
_TEXT_VALUE = r"([^,]+)"
_FLAG_VALUE = r"(true|false|yes|no)\b"
_NUMBER_VALUE = r"([0-9.]+)"

# (label, field, value pattern, kind)
LABELS: Tuple[Tuple[str, str, str, str], ...] = (
    ("Id", "id", _ID_VALUE, "text"),
    ("Brand", "brand", _TEXT_VALUE, "text"),
    ("Color", "color", _TEXT_VALUE, "text"),
    ("Description", "item_description", _TEXT_VALUE, "text"),
    ("Is unisex", "is_unisex", _FLAG_VALUE, "flag"),
    ("Measurement length", "measurement_length", _NUMBER_VALUE, "number"),
    ("Measurement width", "measurement_width", _NUMBER_VALUE, "number"),
    ("Price", "price", _NUMBER_VALUE, "number"),
    ("Size", "size", _TEXT_VALUE, "text"),
    ("Status", "status", _TEXT_VALUE, "text"),
    ("Title", "title", _TEXT_VALUE, "text"),
)


def _label_regex(label: str, value_pattern: str) -> "re.Pattern[str]":
    words = r"\s+".join(re.escape(w) for w in label.split())
    return re.compile(rf"\b{words}\s*:\s*{value_pattern}", re.IGNORECASE)


_COMPILED = tuple(
    (field, _label_regex(label, pattern), kind) for label, field, pattern, kind in LABELS
)


def _clean_text(raw: str) -> Optional[str]:
    # Dictation often closes the utterance with a period
    value = raw.strip().rstrip(".").strip()
    return value or None


def _parse_flag(raw: str) -> Optional[bool]:
    v = raw.strip().lower()
    if v in ("true", "yes"):
        return True
    if v in ("false", "no"):
        return False
    return None


def _parse_number(raw: str) -> Optional[float]:
    try:
        value = float(raw.strip().rstrip("."))
    except ValueError:
        LOG.debug(f"Unparseable number {raw!r}; leaving field absent")
        return None
    if not math.isfinite(value):
        LOG.debug(f"Non-finite number {raw[:40]!r}; leaving field absent")
        return None
    return value


_PARSERS = {"text": _clean_text, "flag": _parse_flag, "number": _parse_number}


class PatternExtractor:
    """Rule-based extractor; never raises, worst case returns no fields."""

    def extract(self, text: Any) -> ExtractedFields:
        if not isinstance(text, str) or not text.strip():
            return ExtractedFields()
        found: Dict[str, Any] = {}
        for field, regex, kind in _COMPILED:
            match = regex.search(text)
            if not match:
                continue
            value = _PARSERS[kind](match.group(1))
            if value is None:
                continue
            found[field] = value
        LOG.debug(f"Pattern extraction found {len(found)} field(s): {sorted(found)}")
        return ExtractedFields(**found)


def extract_fields(text: Any) -> ExtractedFields:
    return PatternExtractor().extract(text)
