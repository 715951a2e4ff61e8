"""Speech-to-text adapter for recorded voice notes."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, Optional

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..domain.errors import (
    LanguageUnsupported,
    PermissionDenied,
    RecognitionCancelled,
    RecognitionUnavailable,
    TranscriptionFailed,
    UserCancelled,
)
from ..logging import get_logger

LOG = get_logger("orchestrator-transcribe")


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    is_final: bool = False


class SpeechRecognizer:
    """Interface of an external speech recognition capability."""

    def request_permission(self) -> bool:
        raise NotImplementedError

    def has_permission(self) -> bool:
        raise NotImplementedError

    def supports_locale(self, locale: str) -> bool:
        raise NotImplementedError

    def is_available(self) -> bool:
        return True

    def recognize(self, audio_ref: str, locale: str) -> Iterator[RecognitionResult]:
        raise NotImplementedError


class TranscriptionAdapter:
    def __init__(self, recognizer: SpeechRecognizer, *, default_locale: str = "fr-FR") -> None:
        self.recognizer = recognizer
        self.default_locale = default_locale

    def request_permission(self) -> bool:
        return self.recognizer.request_permission()

    def has_permission(self) -> bool:
        return self.recognizer.has_permission()

    def transcribe(self, audio_ref: str, locale: Optional[str] = None) -> str:
        """Return the final transcription of ``audio_ref``.

        Interim results are ignored; only a final result is returned.
        Raises a TranscriptionFailed subclass or PermissionDenied.
        """
        loc = locale or self.default_locale
        if not self.recognizer.has_permission():
            raise PermissionDenied("speech recognition permission not granted")
        if not self.recognizer.supports_locale(loc):
            raise LanguageUnsupported(f"no recognizer for locale {loc}")
        if not self.recognizer.is_available():
            raise RecognitionUnavailable("recognizer reported unavailable")

        LOG.info(f"Transcribing {audio_ref} (locale={loc})")
        try:
            for result in self.recognizer.recognize(audio_ref, loc):
                if not result.is_final:
                    LOG.debug(f"Interim result ({len(result.text)} chars) ignored")
                    continue
                text = (result.text or "").strip()
                if not text:
                    raise TranscriptionFailed("recognizer returned empty text")
                LOG.info(f"Received transcript with {len(text)} characters")
                return text
        except TranscriptionFailed:
            raise
        except RecognitionCancelled as exc:
            raise UserCancelled(str(exc)) from exc
        except Exception as exc:
            raise TranscriptionFailed(f"{exc.__class__.__name__}: {exc}") from exc
        raise TranscriptionFailed("recognition ended without a final result")


# Whisper language codes; locale "fr-FR" is matched on its language part.
WHISPER_LANGUAGES = frozenset(
    {"de", "en", "es", "fr", "it", "nl", "pl", "pt", "ru", "sv", "tr", "uk", "ja", "zh"}
)


class OpenAISpeechRecognizer(SpeechRecognizer):
    """Speech recognition through the OpenAI audio transcription API.

    Yields a single final result per audio file.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "whisper-1",
        timeout_seconds: float = 300.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._granted = False

    def request_permission(self) -> bool:
        self._granted = bool(self.api_key)
        if not self._granted:
            LOG.warning("OPENAI_API_KEY missing; speech recognition cannot be enabled")
        return self._granted

    def has_permission(self) -> bool:
        return self._granted

    def supports_locale(self, locale: str) -> bool:
        language = (locale or "").replace("_", "-").split("-")[0].lower()
        return language in WHISPER_LANGUAGES

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.api_key,
                http_client=httpx.Client(timeout=httpx.Timeout(self.timeout_seconds, connect=10.0)),
                max_retries=0,
            )
        return self._client

    def recognize(self, audio_ref: str, locale: str) -> Iterator[RecognitionResult]:
        if not os.path.isfile(audio_ref):
            raise TranscriptionFailed(f"audio file not found: {audio_ref}")
        language = locale.replace("_", "-").split("-")[0].lower()
        client = self._get_client()
        try:
            with open(audio_ref, "rb") as fh:
                resp = client.audio.transcriptions.create(model=self.model, file=fh, language=language)
        except (APIConnectionError, APITimeoutError) as exc:
            LOG.error(f"Network/timeout while calling OpenAI transcription: {exc}")
            raise RecognitionUnavailable(str(exc)) from exc
        except APIStatusError as exc:
            LOG.error(f"OpenAI transcription returned {getattr(exc, 'status_code', '?')}")
            raise TranscriptionFailed(str(exc)) from exc
        yield RecognitionResult(text=getattr(resp, "text", "") or "", is_final=True)
