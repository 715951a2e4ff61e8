"""High-level orchestration for the voice listing pipeline."""

from .capture import CaptureDevice, ImportedRecordingDevice
from .transcribe import OpenAISpeechRecognizer, RecognitionResult, SpeechRecognizer, TranscriptionAdapter
from .store import EntryStore, InMemoryEntryStore, SqliteEntryStore
from .notify import NotificationDispatcher, NotificationResult, render_body, render_subject
from .flow import (
    PipelineConfig,
    PipelineState,
    RecordingSession,
    SessionResult,
    VoiceEntryPipeline,
    build_pipeline,
    build_pipeline_config,
    log_environment_banner,
)

__all__ = [
    "CaptureDevice",
    "ImportedRecordingDevice",
    "OpenAISpeechRecognizer",
    "RecognitionResult",
    "SpeechRecognizer",
    "TranscriptionAdapter",
    "EntryStore",
    "InMemoryEntryStore",
    "SqliteEntryStore",
    "NotificationDispatcher",
    "NotificationResult",
    "render_body",
    "render_subject",
    "PipelineConfig",
    "PipelineState",
    "RecordingSession",
    "SessionResult",
    "VoiceEntryPipeline",
    "build_pipeline",
    "build_pipeline_config",
    "log_environment_banner",
]
