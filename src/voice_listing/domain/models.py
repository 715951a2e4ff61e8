from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .normalize import FIELD_TYPES, coerce_mapping, normalize_fields


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExtractedFields:
    """Typed extraction result; ``None`` means the field was not found."""

    id: Optional[str] = None
    title: Optional[str] = None
    brand: Optional[str] = None
    color: Optional[str] = None
    item_description: Optional[str] = None
    is_unisex: Optional[bool] = None
    measurement_length: Optional[float] = None
    measurement_width: Optional[float] = None
    price: Optional[float] = None
    size: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ExtractedFields":
        return cls(**coerce_mapping(raw))

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def is_empty(self) -> bool:
        return not self.as_dict()


@dataclass(frozen=True)
class EntrySnapshot:
    """Immutable copy of an Entry handed to collaborators."""

    id: str
    transcribed_text: str
    creation_date: datetime
    email_sent: bool
    last_email_sent_date: Optional[datetime]
    audio_recording_path: Optional[str]
    title: str
    brand: str
    color: str
    item_description: str
    is_unisex: bool
    measurement_length: float
    measurement_width: float
    price: float
    size: str
    status: str
    images: Tuple[str, ...]


@dataclass
class Entry:
    """A persisted structured listing derived from one voice note.

    Numeric fields use 0.0 for "unknown"; text fields use "".
    """

    transcribed_text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    creation_date: datetime = field(default_factory=utcnow)
    email_sent: bool = False
    last_email_sent_date: Optional[datetime] = None
    audio_recording_path: Optional[str] = None
    title: str = ""
    brand: str = ""
    color: str = ""
    item_description: str = ""
    is_unisex: bool = False
    measurement_length: float = 0.0
    measurement_width: float = 0.0
    price: float = 0.0
    size: str = ""
    status: str = ""
    images: List[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        transcribed_text: str,
        extracted: Any = None,
        *,
        audio_recording_path: Optional[str] = None,
        creation_date: Optional[datetime] = None,
    ) -> "Entry":
        """Build a new entry from extraction output (ExtractedFields or mapping)."""
        normalized = normalize_fields(extracted)
        entry_id = normalized.pop("id") or uuid.uuid4().hex
        return cls(
            transcribed_text=transcribed_text,
            id=entry_id,
            creation_date=creation_date or utcnow(),
            audio_recording_path=audio_recording_path,
            **normalized,
        )

    def structured_fields(self) -> Dict[str, Any]:
        return normalize_fields({name: getattr(self, name) for name in FIELD_TYPES})

    def apply_fields(self, changes: Mapping[str, Any]) -> None:
        """Overwrite structured fields (never id) with normalized values.

        An unusable value (e.g. price "abc") resets the field to its default,
        the same rule extraction output goes through.
        """
        current = self.structured_fields()
        current.update(changes)
        normalized = normalize_fields(current)
        for name in changes:
            if name == "id" or name not in normalized:
                continue
            setattr(self, name, normalized[name])

    def mark_email_sent(self, when: datetime) -> None:
        self.email_sent = True
        self.last_email_sent_date = max(when, self.creation_date)

    def snapshot(self) -> EntrySnapshot:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["images"] = tuple(self.images)
        return EntrySnapshot(**values)
