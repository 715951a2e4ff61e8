"""Render listing emails and hand them to a mail channel."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

from ..domain.errors import (
    NotConfigured,
    NotificationCancelled,
    NotificationFailed,
    SendingFailed,
)
from ..domain.models import Entry, EntrySnapshot
from ..domain.normalize import FIELD_TYPES, FLAG, is_unknown
from ..logging import get_logger
from ..mail.client import DeliveryOutcome, MailChannel

LOG = get_logger("orchestrator-notify")

DATE_FORMAT = "%Y-%m-%d %H:%M UTC"


@dataclass(frozen=True)
class NotificationResult:
    ok: bool
    error: Optional[NotificationFailed] = None
    outcome: Optional[DeliveryOutcome] = None


def format_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(DATE_FORMAT)


def render_subject(entry: Union[Entry, EntrySnapshot]) -> str:
    return f"Voice Entry - {format_date(entry.creation_date)}"


# Body labels in rendering order (the canonical field order).
BODY_LABELS = {
    "id": "ID",
    "title": "Title",
    "brand": "Brand",
    "color": "Color",
    "item_description": "Description",
    "is_unisex": "Is Unisex",
    "measurement_length": "Measurement Length",
    "measurement_width": "Measurement Width",
    "price": "Price",
    "size": "Size",
    "status": "Status",
}


def render_body(entry: Union[Entry, EntrySnapshot]) -> str:
    """Plain-text body; fields still at their "unknown" default are left out."""
    lines: List[str] = ["Transcribed Text:", entry.transcribed_text, "", "Structured Data:", "---"]
    for name, kind in FIELD_TYPES.items():
        value = getattr(entry, name)
        if is_unknown(name, value):
            continue
        shown = "Yes" if kind == FLAG else value
        lines.append(f"{BODY_LABELS[name]}: {shown}")
    lines.append("---")
    lines.append(f"Created: {format_date(entry.creation_date)}")
    return "\n".join(lines) + "\n"


class NotificationDispatcher:
    """Send one listing email through a channel; never raises."""

    def __init__(self, channel: MailChannel, recipient: Optional[str]) -> None:
        self.channel = channel
        self.recipient = recipient

    def _channel_ready(self) -> bool:
        try:
            return bool(self.channel.can_send())
        except Exception as exc:
            LOG.warning(f"Mail channel capability check failed: {exc}")
            return False

    def can_send(self) -> bool:
        return bool(self.recipient) and self._channel_ready()

    def send(self, recipient: Optional[str], subject: str, body: str) -> NotificationResult:
        if not recipient or not self._channel_ready():
            LOG.warning("Email not sent: no mail channel or recipient configured")
            return NotificationResult(ok=False, error=NotConfigured())
        try:
            outcome = self.channel.deliver(recipient, subject, body)
        except Exception as exc:
            LOG.error(f"Mail channel {self.channel.name} raised {exc.__class__.__name__}: {exc}")
            return NotificationResult(ok=False, error=SendingFailed(str(exc)), outcome=DeliveryOutcome.FAILED)

        if outcome in (DeliveryOutcome.SENT, DeliveryOutcome.SAVED):
            return NotificationResult(ok=True, outcome=outcome)
        if outcome is DeliveryOutcome.CANCELLED:
            LOG.info("Email composition cancelled by user")
            return NotificationResult(ok=False, error=NotificationCancelled(), outcome=outcome)
        return NotificationResult(ok=False, error=SendingFailed(f"outcome={outcome}"), outcome=outcome)

    def notify(self, entry: Union[Entry, EntrySnapshot]) -> NotificationResult:
        snap = entry.snapshot() if isinstance(entry, Entry) else entry
        LOG.info(f"Sending listing email for entry {snap.id}")
        return self.send(self.recipient, render_subject(snap), render_body(snap))
