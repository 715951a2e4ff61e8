"""Mail channels that deliver listing notifications.

A channel only knows how to hand one message to a transport. Policy
(recipient, rendering, at-most-once bookkeeping) lives in the dispatcher.
"""

from __future__ import annotations

import enum
import os
import uuid
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional

import requests

from ..logging import get_logger
from ..paths import expand_abs

LOG = get_logger("mail-client")

# Body fragments that mean the recipient address was rejected.
RECIPIENT_REJECTED_HINTS = (
    "user unknown",
    "does not exist",
    "no such user",
    "invalid address",
    "recipient rejected",
)


class DeliveryOutcome(enum.Enum):
    SENT = "sent"
    SAVED = "saved"
    CANCELLED = "cancelled"
    FAILED = "failed"


class MailChannel:
    """Interface of an email composition/sending capability."""

    name = "mail"

    def can_send(self) -> bool:
        raise NotImplementedError

    def deliver(self, recipient: str, subject: str, body: str) -> DeliveryOutcome:
        raise NotImplementedError


class UnconfiguredMailChannel(MailChannel):
    name = "unconfigured"

    def can_send(self) -> bool:
        return False

    def deliver(self, recipient: str, subject: str, body: str) -> DeliveryOutcome:
        LOG.error("No mail channel configured; nothing was sent")
        return DeliveryOutcome.FAILED


class HttpMailChannel(MailChannel):
    """JSON mail API (ZeptoMail-style payload) posted with requests."""

    name = "http"

    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str],
        from_address: Optional[str],
        *,
        timeout: int = 30,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout

    def can_send(self) -> bool:
        return bool(self.api_url and self.api_key and self.from_address)

    def deliver(self, recipient: str, subject: str, body: str) -> DeliveryOutcome:
        payload = {
            "from": {"address": self.from_address},
            "to": [{"email_address": {"address": recipient}}],
            "subject": subject,
            "textbody": body,
        }
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "authorization": self.api_key,
        }
        try:
            resp = requests.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            LOG.error(f"Connection error while sending to {recipient}: {e}")
            return DeliveryOutcome.FAILED
        except requests.exceptions.Timeout as e:
            LOG.error(f"Timeout while sending to {recipient}: {e}")
            return DeliveryOutcome.FAILED
        except requests.exceptions.RequestException as e:
            LOG.error(f"Mail API request failed for {recipient}: {e}")
            return DeliveryOutcome.FAILED

        if resp.ok:
            LOG.info(f"Email accepted by mail API for {recipient} (HTTP {resp.status_code})")
            return DeliveryOutcome.SENT

        preview = (resp.text or "")[:300]
        if resp.status_code in (400, 422) or any(h in preview.lower() for h in RECIPIENT_REJECTED_HINTS):
            LOG.warning(f"Recipient rejected: {recipient} (HTTP {resp.status_code}) {preview!r}")
        else:
            LOG.error(f"Mail API error for {recipient}: HTTP {resp.status_code} {preview!r}")
        return DeliveryOutcome.FAILED


class OutboxMailChannel(MailChannel):
    """Writes each message as an RFC 5322 ``.eml`` draft into a directory."""

    name = "outbox"

    def __init__(self, outbox_dir: str, *, from_address: Optional[str] = None) -> None:
        self.outbox_dir = expand_abs(outbox_dir)
        self.from_address = from_address or "voice-listing@localhost"

    def can_send(self) -> bool:
        return bool(self.outbox_dir)

    def deliver(self, recipient: str, subject: str, body: str) -> DeliveryOutcome:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False, usegmt=True)
        msg["Message-ID"] = make_msgid(domain="voice-listing.local")
        msg.set_content(body)

        path = os.path.join(self.outbox_dir, f"draft_{uuid.uuid4().hex}.eml")
        try:
            os.makedirs(self.outbox_dir, exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(msg.as_bytes())
        except OSError as e:
            LOG.error(f"Failed to write draft to {path}: {e}")
            return DeliveryOutcome.FAILED
        LOG.info(f"Draft saved: {path}")
        return DeliveryOutcome.SAVED
