"""Canonical listing field schema and the single normalization function.

Both extractors produce loose key/value data; everything downstream only
ever sees the output of :func:`normalize_fields`.
"""

import math
import re
from typing import Any, Dict, Mapping, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

TEXT = "text"
FLAG = "flag"
NUMBER = "number"

# Canonical order is the order fields are rendered in.
FIELD_TYPES: Dict[str, str] = {
    "id": TEXT,
    "title": TEXT,
    "brand": TEXT,
    "color": TEXT,
    "item_description": TEXT,
    "is_unisex": FLAG,
    "measurement_length": NUMBER,
    "measurement_width": NUMBER,
    "price": NUMBER,
    "size": TEXT,
    "status": TEXT,
}

FIELD_DEFAULTS: Dict[str, Any] = {TEXT: "", FLAG: False, NUMBER: 0.0}

FIELD_ALIASES: Dict[str, str] = {
    "itemDescription": "item_description",
    "description": "item_description",
    "isUnisex": "is_unisex",
    "measurementLength": "measurement_length",
    "measurementWidth": "measurement_width",
}

_TRUE_WORDS = {"true", "yes"}
_FALSE_WORDS = {"false", "no"}


def canonical_key(key: Any) -> Optional[str]:
    if not isinstance(key, str):
        return None
    k = key.strip()
    if k in FIELD_TYPES:
        return k
    return FIELD_ALIASES.get(k)


def parse_decimal(value: Any) -> Optional[float]:
    """Parse a non-negative decimal from numbers or strings.

    Handles inputs like '45', '45.5', '45,50', '1.470,00', '1,470.00', '45 €'.
    Returns None for booleans, negatives, NaN/inf and anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        s = str(value).strip().replace(" ", "").replace("\u00a0", "")
        m = re.search(r"-?\d[\d.,]*", s)
        if not m:
            return None
        s = m.group(0).rstrip(".,")
        has_dot = "." in s
        has_comma = "," in s
        if has_dot and has_comma:
            # Whichever separator comes last is the decimal mark
            if s.rfind(",") > s.rfind("."):
                s = s.replace(".", "").replace(",", ".")
            else:
                s = s.replace(",", "")
        elif has_comma:
            if re.fullmatch(r"-?\d{1,3}(,\d{3})+", s):
                s = s.replace(",", "")
            else:
                s = s.replace(",", ".")
        elif has_dot and re.fullmatch(r"-?\d{1,3}(\.\d{3}){2,}", s):
            s = s.replace(".", "")
        try:
            num = float(s)
        except ValueError:
            return None
    if math.isnan(num) or math.isinf(num) or num < 0:
        return None
    return num


def coerce_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    v = value.strip()
    return v or None


def coerce_flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_WORDS:
            return True
        if v in _FALSE_WORDS:
            return False
    return None


def coerce_number(value: Any) -> Optional[float]:
    return parse_decimal(value)


_COERCERS = {TEXT: coerce_text, FLAG: coerce_flag, NUMBER: coerce_number}


def coerce_mapping(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Return only the recognized, well-typed fields of a loose mapping.

    Canonical keys win over aliases when both are present.
    """
    out: Dict[str, Any] = {}
    if not isinstance(raw, Mapping):
        return out
    for key, value in raw.items():
        name = canonical_key(key)
        if name is None:
            continue
        if name in out and key != name:
            continue
        coerced = _COERCERS[FIELD_TYPES[name]](value)
        if coerced is None:
            _LOG.debug(f"Dropping field {key!r}: unusable value {value!r}")
            continue
        out[name] = coerced
    return out


def normalize_fields(data: Any) -> Dict[str, Any]:
    """Return every canonical field with defaults for missing/wrong-typed values.

    Accepts a mapping or anything exposing ``as_dict()`` (ExtractedFields).
    Idempotent: normalizing a normalized mapping returns an equal mapping.
    """
    if hasattr(data, "as_dict"):
        data = data.as_dict()
    present = coerce_mapping(data or {})
    return {
        name: present.get(name, FIELD_DEFAULTS[kind])
        for name, kind in FIELD_TYPES.items()
    }


def is_unknown(name: str, value: Any) -> bool:
    """True when a field value means "unknown" ('' / False / 0.0)."""
    kind = FIELD_TYPES.get(name)
    if kind is None:
        return value in (None, "")
    return value == FIELD_DEFAULTS[kind] or value is None
