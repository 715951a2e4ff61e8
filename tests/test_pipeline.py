import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from voice_listing.domain.errors import (
    DuplicateEntry,
    EntryNotFound,
    InvalidTransition,
    NotConfigured,
    PermissionRequired,
    PersistenceFailed,
    RecognitionUnavailable,
    RecordingFailed,
)
from voice_listing.extraction.model import SOURCE_PATTERN, ModelExtractor
from voice_listing.mail.client import DeliveryOutcome, MailChannel
from voice_listing.orchestrator.capture import CaptureDevice, ImportedRecordingDevice
from voice_listing.orchestrator.flow import PipelineState, VoiceEntryPipeline
from voice_listing.orchestrator.notify import NotificationDispatcher
from voice_listing.orchestrator.store import InMemoryEntryStore
from voice_listing.orchestrator.transcribe import RecognitionResult, SpeechRecognizer, TranscriptionAdapter

START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
DICTATION = "Id: SKU-1, Brand: Levi's, Price: 45"


class FakeDevice(CaptureDevice):
    def __init__(self, permission=True, fail_start=False):
        super().__init__()
        self.permission = permission
        self.fail_start = fail_start
        self.cancelled = False

    def request_permission(self):
        return self.permission

    def has_permission(self):
        return self.permission

    def start(self):
        if self.fail_start:
            raise RecordingFailed("mic busy")
        return "memory://recording"

    def stop(self):
        return "memory://recording"

    def cancel(self):
        self.cancelled = True


class FakeRecognizer(SpeechRecognizer):
    def __init__(self, text=DICTATION, available=True):
        self.text = text
        self.available = available

    def request_permission(self):
        return True

    def has_permission(self):
        return True

    def supports_locale(self, locale):
        return True

    def is_available(self):
        return self.available

    def recognize(self, audio_ref, locale):
        yield RecognitionResult(self.text[:5])
        yield RecognitionResult(self.text, is_final=True)


class SwitchableChannel(MailChannel):
    name = "switchable"

    def __init__(self, ready=True, outcome=DeliveryOutcome.SENT):
        self.ready = ready
        self.outcome = outcome
        self.deliveries = 0

    def can_send(self):
        return self.ready

    def deliver(self, recipient, subject, body):
        self.deliveries += 1
        return self.outcome


class Clock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FailingStore(InMemoryEntryStore):
    def __init__(self, fail_save=False, fail_update=False):
        super().__init__()
        self.fail_save = fail_save
        self.fail_update = fail_update

    def _insert(self, entry):
        if self.fail_save:
            raise PersistenceFailed("disk full")
        super()._insert(entry)

    def _replace(self, entry):
        if self.fail_update:
            raise PersistenceFailed("disk full")
        super()._replace(entry)


class BlockingChannel(SwitchableChannel):
    """Holds every delivery until ``release`` is set."""

    def __init__(self, ready=True):
        super().__init__(ready=ready)
        self.entered = threading.Event()
        self.release = threading.Event()

    def deliver(self, recipient, subject, body):
        self.entered.set()
        assert self.release.wait(5)
        return super().deliver(recipient, subject, body)


def _pipeline(*, device=None, recognizer=None, store=None, channel=None, clock=None):
    return VoiceEntryPipeline(
        device or FakeDevice(),
        TranscriptionAdapter(recognizer or FakeRecognizer()),
        ModelExtractor(None),
        store if store is not None else InMemoryEntryStore(),
        NotificationDispatcher(channel or SwitchableChannel(), "shop@example.com"),
        clock=clock or Clock(),
    )


def _run(pipeline):
    session = pipeline.new_session()
    session.start()
    return session, session.stop()


def test_happy_path_saves_and_marks_email_sent():
    clock = Clock()
    channel = SwitchableChannel()
    pipeline = _pipeline(channel=channel, clock=clock)
    states = []
    pipeline.add_listener(lambda sid, old, new: states.append(new))

    session, result = _run(pipeline)

    assert result.ok
    assert result.state is PipelineState.DONE
    assert result.extraction_source == SOURCE_PATTERN
    assert states == [
        PipelineState.RECORDING,
        PipelineState.TRANSCRIBING,
        PipelineState.EXTRACTING,
        PipelineState.SAVING,
        PipelineState.DONE,
    ]
    stored = pipeline.get_entry("SKU-1")
    assert stored.price == 45.0
    assert stored.title == ""
    assert stored.email_sent is True
    assert stored.last_email_sent_date == START
    assert channel.deliveries == 1


def test_not_configured_then_resend_uses_resend_time():
    clock = Clock()
    channel = SwitchableChannel(ready=False)
    pipeline = _pipeline(channel=channel, clock=clock)

    _, result = _run(pipeline)
    assert result.state is PipelineState.DONE
    assert result.warning
    assert isinstance(result.notification.error, NotConfigured)
    stored = pipeline.get_entry("SKU-1")
    assert stored is not None
    assert stored.email_sent is False
    assert channel.deliveries == 0

    channel.ready = True
    clock.advance(hours=2)
    resend = pipeline.resend("SKU-1")
    assert resend.ok
    stored = pipeline.get_entry("SKU-1")
    assert stored.email_sent is True
    assert stored.last_email_sent_date == START + timedelta(hours=2)
    assert stored.last_email_sent_date != stored.creation_date


def test_transcription_failure_creates_nothing():
    store = InMemoryEntryStore()
    pipeline = _pipeline(recognizer=FakeRecognizer(available=False), store=store)
    before = len(store.fetch_all())

    _, result = _run(pipeline)

    assert result.state is PipelineState.FAILED
    assert isinstance(result.error, RecognitionUnavailable)
    assert result.entry is None
    assert len(store.fetch_all()) == before


def test_persistence_failure_ends_failed_and_skips_email():
    channel = SwitchableChannel()
    _, result = _run(_pipeline(store=FailingStore(fail_save=True), channel=channel))
    assert result.state is PipelineState.FAILED
    assert isinstance(result.error, PersistenceFailed)
    assert channel.deliveries == 0


def test_duplicate_extracted_id_fails_session():
    store = InMemoryEntryStore()
    pipeline = _pipeline(store=store)
    _run(pipeline)
    _, second = _run(pipeline)
    assert second.state is PipelineState.FAILED
    assert isinstance(second.error, DuplicateEntry)
    assert store.count() == 1


def test_status_update_failure_keeps_session_done():
    store = FailingStore(fail_update=True)
    _, result = _run(_pipeline(store=store))
    assert result.state is PipelineState.DONE
    assert result.warning
    assert store.fetch_by_id("SKU-1").email_sent is False


def test_send_failure_is_a_warning_not_a_failure():
    _, result = _run(_pipeline(channel=SwitchableChannel(outcome=DeliveryOutcome.FAILED)))
    assert result.state is PipelineState.DONE
    assert result.entry.email_sent is False
    assert "not sent" in result.warning


def test_start_requires_permissions():
    pipeline = _pipeline(device=FakeDevice(permission=False))
    session = pipeline.new_session()
    with pytest.raises(PermissionRequired):
        session.start()
    assert session.state is PipelineState.IDLE


def test_device_start_failure_moves_to_failed():
    pipeline = _pipeline(device=FakeDevice(fail_start=True))
    session = pipeline.new_session()
    with pytest.raises(RecordingFailed):
        session.start()
    assert session.state is PipelineState.FAILED
    with pytest.raises(InvalidTransition):
        session.start()


def test_second_session_cannot_take_busy_device():
    pipeline = _pipeline()
    first = pipeline.new_session()
    first.start()
    second = pipeline.new_session()
    with pytest.raises(RecordingFailed):
        second.start()
    first.stop()
    third = pipeline.new_session()
    third.start()
    assert third.state is PipelineState.RECORDING


def test_cancel_only_while_recording():
    device = FakeDevice()
    store = InMemoryEntryStore()
    pipeline = _pipeline(device=device, store=store)
    session = pipeline.new_session()
    assert session.cancel() is False

    session.start()
    assert session.cancel() is True
    assert session.state is PipelineState.CANCELLED
    assert device.cancelled
    assert store.count() == 0
    with pytest.raises(InvalidTransition):
        session.stop()
    assert pipeline.new_session().start() == "memory://recording"


def test_cancel_removes_partial_recording(tmp_path: Path):
    source = tmp_path / "note.m4a"
    source.write_bytes(b"audio")
    recordings = tmp_path / "recordings"
    device = ImportedRecordingDevice(str(source), str(recordings))
    pipeline = _pipeline(device=device)
    assert pipeline.request_permissions()

    session = pipeline.new_session()
    target = session.start()
    Path(target).write_bytes(b"partial")
    session.cancel()
    assert not os.path.exists(target)
    assert list(recordings.iterdir()) == []


def test_imported_recording_is_kept_on_entry(tmp_path: Path):
    source = tmp_path / "note.m4a"
    source.write_bytes(b"audio")
    device = ImportedRecordingDevice(str(source), str(tmp_path / "recordings"))
    pipeline = _pipeline(device=device)
    pipeline.request_permissions()

    _, result = _run(pipeline)
    path = result.entry.audio_recording_path
    assert os.path.basename(path).startswith("recording_")
    assert path.endswith(".m4a")
    assert Path(path).read_bytes() == b"audio"


def test_edit_preserves_identity_and_email_status():
    pipeline = _pipeline()
    _run(pipeline)
    original = pipeline.get_entry("SKU-1")

    edited = pipeline.edit("SKU-1", title="Jean 501", price="39,90", isUnisex="yes")
    assert edited.title == "Jean 501"
    assert edited.price == 39.9
    assert edited.is_unisex is True

    stored = pipeline.get_entry("SKU-1")
    assert stored.id == original.id
    assert stored.creation_date == original.creation_date
    assert stored.email_sent is True
    assert stored.title == "Jean 501"


def test_edit_refuses_protected_and_unknown_fields():
    pipeline = _pipeline()
    _run(pipeline)
    with pytest.raises(ValueError):
        pipeline.edit("SKU-1", id="other")
    with pytest.raises(ValueError):
        pipeline.edit("SKU-1", email_sent=False)
    with pytest.raises(ValueError):
        pipeline.edit("SKU-1", colour="red")
    with pytest.raises(EntryNotFound):
        pipeline.edit("missing", title="x")


def test_resend_unknown_entry():
    with pytest.raises(EntryNotFound):
        _pipeline().resend("missing")


def test_delete_and_list():
    pipeline = _pipeline()
    _run(pipeline)
    assert [e.id for e in pipeline.list_entries()] == ["SKU-1"]
    pipeline.delete_entry("SKU-1")
    assert pipeline.list_entries() == []


def test_edit_during_resend_keeps_both_changes():
    clock = Clock()
    channel = BlockingChannel(ready=False)
    pipeline = _pipeline(channel=channel, clock=clock)
    _run(pipeline)
    assert pipeline.get_entry("SKU-1").email_sent is False

    channel.ready = True
    clock.advance(hours=1)
    results = []
    sender = threading.Thread(target=lambda: results.append(pipeline.resend("SKU-1")))
    sender.start()
    assert channel.entered.wait(5)
    pipeline.edit("SKU-1", title="Denim jacket", price="39,90")
    channel.release.set()
    sender.join(5)

    assert results and results[0].ok
    stored = pipeline.get_entry("SKU-1")
    assert stored.title == "Denim jacket"
    assert stored.price == 39.9
    assert stored.email_sent is True
    assert stored.last_email_sent_date == START + timedelta(hours=1)


def test_edit_during_automatic_email_keeps_both_changes():
    channel = BlockingChannel()
    pipeline = _pipeline(channel=channel)
    results = []
    runner = threading.Thread(target=lambda: results.append(_run(pipeline)[1]))
    runner.start()
    assert channel.entered.wait(5)
    pipeline.edit("SKU-1", brand="Zara")
    channel.release.set()
    runner.join(5)

    assert results and results[0].ok
    stored = pipeline.get_entry("SKU-1")
    assert stored.brand == "Zara"
    assert stored.email_sent is True
