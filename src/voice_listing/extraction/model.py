"""Model-based field extraction with deterministic fallback."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from ..domain.models import ExtractedFields
from ..domain.normalize import FIELD_TYPES, NUMBER, FLAG
from ..logging import get_logger
from .backends import StructuredGenerator
from .patterns import PatternExtractor

LOG = get_logger("extraction-model")

SOURCE_MODEL = "model"
SOURCE_PATTERN = "pattern"

_FIELD_GUIDES = {
    "id": "Unique identifier or SKU for the item",
    "title": "Title or name of the item",
    "brand": "Brand name of the item",
    "color": "Color of the item",
    "item_description": "Detailed description of the item",
    "is_unisex": "Whether the item is unisex (true/false)",
    "measurement_length": "Length measurement in centimeters",
    "measurement_width": "Width measurement in centimeters",
    "price": "Price in euros",
    "size": "Size of the item (e.g., S, M, L, 42)",
    "status": "Condition or status of the item (e.g., new, good, fair)",
}


def listing_schema() -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    for name, kind in FIELD_TYPES.items():
        json_type = "number" if kind == NUMBER else "boolean" if kind == FLAG else "string"
        props[name] = {"type": json_type, "description": _FIELD_GUIDES[name]}
    return {"type": "object", "properties": props, "required": list(FIELD_TYPES)}


def build_prompt(text: str, *, language: str = "French") -> str:
    keys = "\n".join(f"- {name}: {_FIELD_GUIDES[name]}" for name in FIELD_TYPES)
    return (
        "Extract structured information from the following text about a classified ad listing.\n"
        f"The text was dictated in {language}.\n"
        "Return ONLY one JSON object with EXACTLY these keys:\n"
        f"{keys}\n"
        "Rules:\n"
        "- Use \"\" for unknown text, false for unknown booleans and 0 for unknown numbers.\n"
        "- Numbers use a dot as decimal separator, no units.\n"
        "- Do NOT invent data.\n\n"
        f"Text: {text}"
    )


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []

    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue

    return None


def parse_model_output(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode a backend response into a JSON object, or None if malformed."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        obj = json.loads(raw)
    except ValueError:
        LOG.debug(f"JSON parse failed; attempting fallback (first 500 chars: {raw[:500]!r})")
        obj = _scavenge_json_block(raw)
    return obj if isinstance(obj, dict) else None


class ModelExtractor:
    """Extract fields with a generative backend, falling back to patterns.

    ``extract`` never raises: any backend problem results in the pattern
    extractor's output for the same text.
    """

    def __init__(
        self,
        generator: Optional[StructuredGenerator] = None,
        *,
        fallback: Optional[PatternExtractor] = None,
        language: str = "French",
    ) -> None:
        self.generator = generator
        self.fallback = fallback or PatternExtractor()
        self.language = language
        self.last_source: Optional[str] = None

    def _fallback(self, text: Any, reason: str) -> ExtractedFields:
        LOG.warning(f"Model extraction unavailable ({reason}); using pattern extraction")
        self.last_source = SOURCE_PATTERN
        try:
            return self.fallback.extract(text)
        except Exception as exc:
            LOG.error(f"Pattern extraction raised {exc.__class__.__name__}: {exc}")
            return ExtractedFields()

    def extract(self, text: Any) -> ExtractedFields:
        if self.generator is None:
            return self._fallback(text, "no backend configured")
        if not isinstance(text, str) or not text.strip():
            return self._fallback(text, "empty text")
        name = getattr(self.generator, "name", "generator")
        try:
            if not self.generator.is_available():
                return self._fallback(text, f"{name} not available")
            LOG.info(f"Extracting listing fields via {name}")
            raw = self.generator.generate(build_prompt(text, language=self.language), listing_schema())
        except Exception as exc:
            return self._fallback(text, f"{name} raised {exc.__class__.__name__}: {exc}")

        obj = parse_model_output(raw)
        if obj is None:
            return self._fallback(text, f"{name} returned malformed output")
        fields = ExtractedFields.from_mapping(obj)
        self.last_source = SOURCE_MODEL
        LOG.info(f"Model extraction produced {len(fields.as_dict())} field(s)")
        return fields
