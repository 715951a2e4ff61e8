"""Orchestrated voice-note-to-listing flow.

One ``RecordingSession`` walks IDLE -> RECORDING -> TRANSCRIBING ->
EXTRACTING -> SAVING -> DONE, or ends in FAILED / CANCELLED. The email step
runs after a successful save and never turns a saved entry into a failure.
"""

from __future__ import annotations

import enum
import os
import sys
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from ..config import (
    load_extraction_backend as _cfg_load_extraction_backend,
    load_locale as _cfg_load_locale,
    load_mail_api as _cfg_load_mail_api,
    load_ollama as _cfg_load_ollama,
    load_openai as _cfg_load_openai,
    load_outbox_dir as _cfg_load_outbox_dir,
    load_recipient as _cfg_load_recipient,
)
from ..domain.errors import (
    EntryNotFound,
    InvalidTransition,
    PermissionDenied,
    PermissionRequired,
    PersistenceFailed,
    RecordingFailed,
    TranscriptionFailed,
    VoiceListingError,
    describe,
)
from ..domain.models import Entry, ExtractedFields, utcnow
from ..domain.normalize import FIELD_TYPES, canonical_key
from ..extraction.backends import OllamaConfig, OllamaGenerator, OpenAIConfig, OpenAIGenerator
from ..extraction.model import ModelExtractor
from ..logging import get_logger
from ..mail.client import HttpMailChannel, MailChannel, OutboxMailChannel, UnconfiguredMailChannel
from ..paths import expand_abs, find_project_root, var_dir
from .capture import CaptureDevice
from .notify import NotificationDispatcher, NotificationResult
from .store import EntryStore, SqliteEntryStore
from .transcribe import OpenAISpeechRecognizer, TranscriptionAdapter

LOG = get_logger("orchestrator-flow")

StateListener = Callable[[str, "PipelineState", "PipelineState"], None]

# Fields managed by the pipeline itself; edits to them are refused.
PROTECTED_FIELDS = frozenset({"id", "creation_date", "email_sent", "last_email_sent_date"})


class PipelineState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    EXTRACTING = "extracting"
    SAVING = "saving"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.FAILED, PipelineState.CANCELLED})


@dataclass
class SessionResult:
    state: PipelineState
    entry: Optional[Entry] = None
    error: Optional[BaseException] = None
    warning: Optional[str] = None
    notification: Optional[NotificationResult] = None
    extraction_source: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE and self.entry is not None

    @property
    def message(self) -> str:
        if self.state is PipelineState.CANCELLED:
            return "Recording cancelled."
        if self.error is not None:
            return describe(self.error)
        if self.warning:
            return self.warning
        if self.ok:
            return "Entry saved and email sent."
        return self.state.value


class RecordingSession:
    """One traversal of the pipeline for a single voice note."""

    def __init__(self, pipeline: "VoiceEntryPipeline", session_id: Optional[str] = None) -> None:
        self.pipeline = pipeline
        self.session_id = session_id or uuid.uuid4().hex
        self.state = PipelineState.IDLE
        self.audio_ref: Optional[str] = None
        self.result: Optional[SessionResult] = None
        self._holds_device = False

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    def _transition(self, new_state: PipelineState) -> None:
        old_state, self.state = self.state, new_state
        LOG.debug(f"Session {self.session_id}: {old_state.value} -> {new_state.value}")
        self.pipeline._emit(self.session_id, old_state, new_state)

    def _release_device(self) -> None:
        if self._holds_device:
            self.pipeline.device.release()
            self._holds_device = False

    def _finish(self, state: PipelineState, **kwargs: Any) -> SessionResult:
        self._transition(state)
        self.result = SessionResult(state=state, **kwargs)
        if self.result.error is not None:
            LOG.error(f"Session {self.session_id} failed: {describe(self.result.error)}")
        return self.result

    # ------------------------------------------------------------------
    # Public actions
    # ------------------------------------------------------------------
    def start(self) -> str:
        """Begin recording and return the audio reference being written."""
        if self.state is not PipelineState.IDLE:
            raise InvalidTransition(f"cannot start from {self.state.value}")
        device = self.pipeline.device
        if device is None:
            raise RecordingFailed("no capture device configured")
        if not self.pipeline.has_permissions():
            raise PermissionRequired("microphone and speech recognition access needed")
        if not device.acquire():
            raise RecordingFailed("capture device is in use by another session")
        self._holds_device = True

        try:
            self.audio_ref = device.start()
        except (RecordingFailed, PermissionDenied) as exc:
            self._release_device()
            self._finish(PipelineState.FAILED, error=exc)
            raise RecordingFailed(describe(exc)) from exc
        except Exception as exc:
            self._release_device()
            err = RecordingFailed(f"{exc.__class__.__name__}: {exc}")
            self._finish(PipelineState.FAILED, error=err)
            raise err from exc
        self._transition(PipelineState.RECORDING)
        return self.audio_ref

    def cancel(self) -> bool:
        if self.state is not PipelineState.RECORDING:
            LOG.info(f"Cancel ignored in state {self.state.value}")
            return False
        try:
            self.pipeline.device.cancel()
        except Exception as exc:
            LOG.warning(f"Capture device cancel raised: {exc}")
        finally:
            self._release_device()
        self.audio_ref = None
        self._finish(PipelineState.CANCELLED)
        return True

    def stop(self) -> SessionResult:
        """Finish recording, then transcribe, extract, persist and notify."""
        if self.state is not PipelineState.RECORDING:
            raise InvalidTransition(f"cannot stop from {self.state.value}")
        pipeline = self.pipeline

        try:
            audio_ref = pipeline.device.stop()
        except RecordingFailed as exc:
            return self._finish(PipelineState.FAILED, error=exc)
        except Exception as exc:
            return self._finish(PipelineState.FAILED, error=RecordingFailed(f"{exc.__class__.__name__}: {exc}"))
        finally:
            self._release_device()
        self.audio_ref = audio_ref

        self._transition(PipelineState.TRANSCRIBING)
        try:
            text = pipeline.transcriber.transcribe(audio_ref, pipeline.locale)
        except (TranscriptionFailed, PermissionDenied) as exc:
            return self._finish(PipelineState.FAILED, error=exc)
        except Exception as exc:
            return self._finish(PipelineState.FAILED, error=TranscriptionFailed(f"{exc.__class__.__name__}: {exc}"))

        self._transition(PipelineState.EXTRACTING)
        fields, source = pipeline.extract(text)

        self._transition(PipelineState.SAVING)
        entry = Entry.create(text, fields, audio_recording_path=audio_ref, creation_date=pipeline.clock())
        try:
            pipeline.store.save(entry)
        except PersistenceFailed as exc:
            return self._finish(PipelineState.FAILED, error=exc, extraction_source=source)
        except Exception as exc:
            err = PersistenceFailed(f"{exc.__class__.__name__}: {exc}")
            return self._finish(PipelineState.FAILED, error=err, extraction_source=source)

        notification, warning = pipeline._deliver(entry)
        return self._finish(
            PipelineState.DONE,
            entry=entry,
            warning=warning,
            notification=notification,
            extraction_source=source,
        )


class VoiceEntryPipeline:
    """Wires capture, transcription, extraction, storage and notification."""

    def __init__(
        self,
        device: Optional[CaptureDevice],
        transcriber: Optional[TranscriptionAdapter],
        extractor: Any,
        store: EntryStore,
        dispatcher: NotificationDispatcher,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        locale: Optional[str] = None,
    ) -> None:
        self.device = device
        self.transcriber = transcriber
        self.extractor = extractor
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or utcnow
        self.locale = locale
        self._listeners: List[StateListener] = []
        self._listeners_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def new_session(self) -> RecordingSession:
        return RecordingSession(self)

    def add_listener(self, callback: StateListener) -> None:
        with self._listeners_guard:
            self._listeners.append(callback)

    def _emit(self, session_id: str, old: PipelineState, new: PipelineState) -> None:
        with self._listeners_guard:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(session_id, old, new)
            except Exception as exc:
                LOG.warning(f"State listener raised {exc.__class__.__name__}: {exc}")

    def request_permissions(self) -> bool:
        mic = bool(self.device and self.device.request_permission())
        speech = bool(self.transcriber and self.transcriber.request_permission())
        LOG.info(f"Permissions: microphone={mic} speech={speech}")
        return mic and speech

    def has_permissions(self) -> bool:
        if self.device is None or self.transcriber is None:
            return False
        return bool(self.device.has_permission() and self.transcriber.has_permission())

    def extract(self, text: str) -> tuple:
        """Run the extractor; failures degrade to an empty result."""
        try:
            fields = self.extractor.extract(text)
        except Exception as exc:
            LOG.error(f"Extractor raised {exc.__class__.__name__}: {exc}; saving without fields")
            return ExtractedFields(), None
        return fields, getattr(self.extractor, "last_source", None)

    def _deliver(self, entry: Entry):
        """Send the entry's email and record success; returns (result, warning)."""
        notification = self.dispatcher.notify(entry.snapshot())
        if not notification.ok:
            reason = describe(notification.error) if notification.error else "unknown reason"
            return notification, f"Entry saved, but the email was not sent: {reason}"
        sent_at = self.clock()
        entry.mark_email_sent(sent_at)
        try:
            self._record_sent(entry.id, sent_at)
        except VoiceListingError as exc:
            LOG.warning(f"Email sent but status update failed for {entry.id}: {describe(exc)}")
            return notification, "Email sent, but its status could not be saved."
        return notification, None

    def _record_sent(self, entry_id: str, sent_at: datetime) -> Entry:
        # Only the email status is written; edits made meanwhile are kept.
        return self.store.mutate(entry_id, lambda current: current.mark_email_sent(sent_at))

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------
    def _require(self, entry_id: str) -> Entry:
        entry = self.store.fetch_by_id(entry_id)
        if entry is None:
            raise EntryNotFound(f"id {entry_id!r}")
        return entry

    def resend(self, entry_id: str) -> NotificationResult:
        """Send the entry's email again; only the notification step runs."""
        entry = self._require(entry_id)
        notification = self.dispatcher.notify(entry.snapshot())
        if notification.ok:
            self._record_sent(entry_id, self.clock())
            LOG.info(f"Resent email for entry {entry_id}")
        else:
            LOG.warning(f"Resend failed for entry {entry_id}: {describe(notification.error)}")
        return notification

    def edit(self, entry_id: str, **changes: Any) -> Entry:
        resolved = {}
        for key, value in changes.items():
            if key in PROTECTED_FIELDS:
                raise ValueError(f"field {key!r} cannot be edited")
            name = canonical_key(key)
            if name is None or name not in FIELD_TYPES:
                raise ValueError(f"unknown field {key!r}")
            resolved[name] = value
        entry = self.store.mutate(entry_id, lambda current: current.apply_fields(resolved))
        LOG.info(f"Edited entry {entry_id}: {', '.join(sorted(resolved)) or 'no changes'}")
        return entry

    def list_entries(self) -> List[Entry]:
        return self.store.fetch_all()

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        return self.store.fetch_by_id(entry_id)

    def delete_entry(self, entry_id: str) -> None:
        self.store.delete(entry_id)


# ----------------------------------------------------------------------
# Configuration and wiring
# ----------------------------------------------------------------------
@dataclass
class PipelineConfig:
    repo_root: str
    script_dir: str
    db_path: str
    recordings_dir: str
    locale: str
    recipient: Optional[str]
    extraction_backend: str
    ollama_url: str
    ollama_model: str
    openai_api_key: Optional[str]
    openai_model: str
    mail_api_url: Optional[str]
    mail_api_key: Optional[str]
    mail_from: Optional[str]
    outbox_dir: Optional[str]
    timeout: int = 60


def build_pipeline_config(args, *, script_dir: str) -> PipelineConfig:
    """Create a PipelineConfig from CLI args while logging the effective settings."""
    repo_root = find_project_root(script_dir)

    user_db = getattr(args, "db", None)
    db_path = expand_abs(user_db) if user_db else os.path.join(var_dir(repo_root), "entries", "entries.sqlite3")
    recordings_dir = os.path.join(var_dir(repo_root), "recordings")

    ollama_url_default, ollama_model_default = _cfg_load_ollama(script_dir)
    openai_key, openai_model_default = _cfg_load_openai(script_dir)
    mail_url, mail_key, mail_from = _cfg_load_mail_api(script_dir)

    backend = getattr(args, "backend", None) or _cfg_load_extraction_backend(script_dir)
    locale = getattr(args, "locale", None) or _cfg_load_locale(script_dir)
    recipient = getattr(args, "recipient", None) or _cfg_load_recipient(script_dir)
    outbox = getattr(args, "outbox", None) or _cfg_load_outbox_dir(script_dir)

    config = PipelineConfig(
        repo_root=repo_root,
        script_dir=script_dir,
        db_path=db_path,
        recordings_dir=recordings_dir,
        locale=locale,
        recipient=recipient,
        extraction_backend=backend,
        ollama_url=getattr(args, "ollama_url", None) or ollama_url_default,
        ollama_model=getattr(args, "ollama_model", None) or ollama_model_default,
        openai_api_key=openai_key,
        openai_model=getattr(args, "openai_model", None) or openai_model_default,
        mail_api_url=mail_url,
        mail_api_key=mail_key,
        mail_from=mail_from,
        outbox_dir=expand_abs(outbox) if outbox else None,
        timeout=int(getattr(args, "timeout", 60) or 60),
    )

    LOG.info("Pipeline configuration prepared")
    LOG.info(f"Entry database     : {config.db_path}")
    LOG.info(f"Recordings dir     : {config.recordings_dir}")
    LOG.info(f"Locale             : {config.locale}")
    LOG.info(f"Extraction backend : {config.extraction_backend}")
    if config.extraction_backend == "ollama":
        LOG.info(f"Ollama URL         : {config.ollama_url}")
        LOG.info(f"Ollama model       : {config.ollama_model}")
    elif config.extraction_backend == "openai":
        LOG.info(f"OpenAI model       : {config.openai_model}")
    LOG.info(f"Recipient set      : {bool(config.recipient)}")
    LOG.info(f"Mail channel       : {build_mail_channel(config).name}")
    return config


def build_mail_channel(config: PipelineConfig) -> MailChannel:
    if config.mail_api_url and config.mail_api_key and config.mail_from:
        return HttpMailChannel(config.mail_api_url, config.mail_api_key, config.mail_from, timeout=config.timeout)
    if config.outbox_dir:
        return OutboxMailChannel(config.outbox_dir, from_address=config.mail_from)
    return UnconfiguredMailChannel()


def build_extractor(config: PipelineConfig) -> ModelExtractor:
    generator = None
    if config.extraction_backend == "ollama":
        generator = OllamaGenerator(OllamaConfig(url=config.ollama_url, model=config.ollama_model))
    elif config.extraction_backend == "openai" and config.openai_api_key:
        generator = OpenAIGenerator(OpenAIConfig(api_key=config.openai_api_key, model=config.openai_model))
    elif config.extraction_backend == "openai":
        LOG.warning("OPENAI_API_KEY missing; extraction falls back to patterns")
    return ModelExtractor(generator)


def build_pipeline(config: PipelineConfig, device: Optional[CaptureDevice] = None) -> VoiceEntryPipeline:
    transcriber = TranscriptionAdapter(OpenAISpeechRecognizer(config.openai_api_key), default_locale=config.locale)
    return VoiceEntryPipeline(
        device,
        transcriber,
        build_extractor(config),
        SqliteEntryStore(config.db_path),
        NotificationDispatcher(build_mail_channel(config), config.recipient),
        locale=config.locale,
    )


def log_environment_banner() -> None:
    """Print environment information relevant for debugging runs."""
    LOG.info("Starting voice listing pipeline")
    LOG.info(f"Working directory: {os.getcwd()}")
    LOG.info(f"Python executable: {sys.executable}")
