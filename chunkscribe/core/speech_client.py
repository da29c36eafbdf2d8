"""
Speech-to-text integration.
Talks to an OpenAI-compatible /audio/transcriptions endpoint.
Includes exponential backoff for rate-limit (429) responses.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path

import requests

from chunkscribe.core.error_codes import TranscriptionError
from chunkscribe.core.constants import (
    ErrorCode, SPEECH_API_BASE, SPEECH_MODEL, AUTO_LANGUAGE, TRANSCRIBE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubles each retry with jitter


@dataclass
class TranscriptionRequest:
    """One speech-recognition call. Optional fields are sent only when set."""
    file_path: Path
    model: str = SPEECH_MODEL
    language: str | None = None
    prompt: str | None = None
    temperature: float = 0.0
    response_format: str = "text"
    extra: dict = field(default_factory=dict)

    def form_fields(self) -> dict:
        data = {
            "model": self.model,
            "response_format": self.response_format,
            "temperature": str(self.temperature),
        }
        language = (self.language or "").strip()
        if language and language.lower() != AUTO_LANGUAGE:
            data["language"] = language
        if self.prompt:
            data["prompt"] = self.prompt
        data.update(self.extra)
        return data


class SpeechClient:
    """Blocking client; every call carries its own timeout."""

    def __init__(self, api_key: str, api_base: str = SPEECH_API_BASE,
                 timeout: int = TRANSCRIBE_TIMEOUT_SEC):
        if not api_key:
            raise ValueError("Speech API key is required")
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"}

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/audio/transcriptions"

    def transcribe(self, request: TranscriptionRequest, timeout: int | None = None) -> str:
        """
        Transcribe one audio file and return plain text.
        Retries up to 4 times with exponential backoff on 429 responses.
        """
        timeout = timeout or self.timeout
        data = request.form_fields()

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                with open(request.file_path, 'rb') as f:
                    resp = requests.post(
                        self.endpoint,
                        headers=self._headers,
                        data=data,
                        files={"file": (request.file_path.name, f)},
                        timeout=timeout,
                    )
            except requests.exceptions.Timeout:
                raise TranscriptionError(f"speech request timed out after {timeout}s",
                                         code=ErrorCode.TRANSCRIBE_TIMEOUT)
            except requests.exceptions.ConnectionError:
                raise TranscriptionError("network error connecting to speech service",
                                         code=ErrorCode.NETWORK_TRANSIENT)
            except OSError as e:
                raise TranscriptionError(f"could not read segment file: {e}")

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Speech service rate limited (429) — retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    time.sleep(delay)
                    continue
                raise TranscriptionError(
                    f"rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                    code=ErrorCode.NETWORK_TRANSIENT,
                )

            if resp.status_code in (408, 504):
                raise TranscriptionError(f"speech service returned {resp.status_code}",
                                         code=ErrorCode.TRANSCRIBE_TIMEOUT)

            if resp.status_code != 200:
                # Sanitize error message (never log API key)
                error_body = resp.text[:300] if resp.text else "No response body"
                raise TranscriptionError(f"speech service returned {resp.status_code}: {error_body}")

            return extract_text(resp, request.response_format)

        # Should never reach here
        raise TranscriptionError("speech request exhausted retries",
                                 code=ErrorCode.NETWORK_TRANSIENT)


def extract_text(resp: requests.Response, response_format: str) -> str:
    """Plain-text body for ``text`` format, the ``text`` field otherwise."""
    if response_format == "text":
        return (resp.text or "").strip()
    try:
        payload = resp.json()
    except ValueError:
        raise TranscriptionError("failed to parse speech response JSON")
    if isinstance(payload, dict):
        return (payload.get("text") or "").strip()
    return ""
