"""Structured-generation backends used by the model extractor.

A backend turns a prompt plus a JSON schema into raw model output. Parsing
and validation happen in :mod:`voice_listing.extraction.model`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import requests
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..logging import get_logger

LOG = get_logger("extraction-backends")


class StructuredGenerator:
    """Interface for generative structured-extraction capabilities."""

    name = "generator"

    def is_available(self) -> bool:
        return True

    def generate(self, prompt: str, schema: Dict[str, Any]) -> Any:
        """Return the model response (JSON text or an already decoded object)."""
        raise NotImplementedError


@dataclass(frozen=True)
class OllamaConfig:
    url: str
    model: str
    timeout_seconds: int = 120
    temperature: float = 0.0


class OllamaGenerator(StructuredGenerator):
    """Ollama /api/chat with a JSON schema passed as ``format``."""

    name = "ollama"

    def __init__(self, config: OllamaConfig) -> None:
        self.config = config

    @property
    def chat_url(self) -> str:
        base = (self.config.url or "").rstrip("/")
        return base if base.endswith("/api/chat") else base + "/api/chat"

    def is_available(self) -> bool:
        return bool(self.config.url and self.config.model)

    def generate(self, prompt: str, schema: Dict[str, Any]) -> Optional[str]:
        payload = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": prompt}],
            "format": schema,
            "stream": False,
            "options": {"temperature": self.config.temperature},
        }
        LOG.debug(f"Ollama chat URL: {self.chat_url}; model: {self.config.model}")
        resp = requests.post(self.chat_url, json=payload, timeout=self.config.timeout_seconds)
        if resp.status_code >= 400:
            LOG.error(f"Ollama HTTP {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise RuntimeError(f"Ollama error: {body['error']}")
        message = body.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content or body.get("response")


@dataclass(frozen=True)
class OpenAIConfig:
    api_key: str
    model: str
    base_url: Optional[str] = None
    timeout_seconds: float = 90.0


class OpenAIGenerator(StructuredGenerator):
    """OpenAI chat completions in JSON mode."""

    name = "openai"

    def __init__(self, config: OpenAIConfig, client: Optional[OpenAI] = None) -> None:
        self.config = config
        self._client = client

    def is_available(self) -> bool:
        return bool(self.config.api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            http_client = httpx.Client(
                timeout=httpx.Timeout(connect=10.0, read=self.config.timeout_seconds, write=30.0, pool=10.0),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                http_client=http_client,
                max_retries=0,
            )
        return self._client

    def generate(self, prompt: str, schema: Dict[str, Any]) -> Optional[str]:
        client = self._get_client()
        messages = [
            {"role": "system", "content": "You return only one JSON object."},
            {"role": "user", "content": prompt},
        ]
        try:
            completion = client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0,
            )
        except (APIConnectionError, APITimeoutError) as e:
            LOG.error(f"Network/timeout while calling OpenAI: {e}")
            raise
        except APIStatusError as e:
            body = getattr(getattr(e, "response", None), "text", None)
            LOG.error(f"OpenAI API returned {getattr(e, 'status_code', '?')}. Body preview: {body[:300] if body else None!r}")
            raise
        choices = completion.choices or []
        if not choices:
            return None
        return choices[0].message.content
