"""Error taxonomy for the voice listing pipeline.

Every error carries a ``user_message`` suitable for display. Stage failures
are grouped by the stage that raises them so the orchestrator can apply one
policy per group.
"""

from __future__ import annotations


class VoiceListingError(Exception):
    user_message = "Something went wrong."

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail


class PermissionDenied(VoiceListingError):
    user_message = "Permission was denied."


class PermissionRequired(PermissionDenied):
    user_message = "Microphone and speech recognition permissions are required."


class RecordingFailed(VoiceListingError):
    user_message = "The recording could not be made."


class TranscriptionFailed(VoiceListingError):
    user_message = "The recording could not be transcribed."


class LanguageUnsupported(TranscriptionFailed):
    user_message = "Speech recognition is not available for this language."


class RecognitionUnavailable(TranscriptionFailed):
    user_message = "Speech recognition is currently unavailable."


class UserCancelled(TranscriptionFailed):
    user_message = "Transcription was cancelled."


class RecognitionCancelled(Exception):
    """Raised by a speech recognizer when the recognition task is cancelled."""


class ExtractionFailed(VoiceListingError):
    user_message = "Fields could not be extracted."


class PersistenceFailed(VoiceListingError):
    user_message = "The entry could not be saved."


class DuplicateEntry(PersistenceFailed):
    user_message = "An entry with this id already exists."


class EntryNotFound(PersistenceFailed):
    user_message = "The entry does not exist."


class NotificationFailed(VoiceListingError):
    user_message = "The email could not be sent."


class NotConfigured(NotificationFailed):
    user_message = "No email channel is configured on this device."


class NotificationCancelled(NotificationFailed):
    user_message = "Sending the email was cancelled."


class SendingFailed(NotificationFailed):
    user_message = "The email could not be sent."


class InvalidTransition(VoiceListingError):
    user_message = "This action is not possible right now."


def describe(error: BaseException) -> str:
    """Return a human-readable message for any error."""
    if isinstance(error, VoiceListingError):
        if error.detail and error.detail != error.user_message:
            return f"{error.user_message} ({error.detail})"
        return error.user_message
    return f"Unexpected error: {error}"
