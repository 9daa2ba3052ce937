"""
Client for the remote transcription fallback endpoint.

``POST /api/transcribe`` takes a multipart ``audio`` field and answers
``{"transcript": ...}`` on success or ``{"error": ...}`` on failure.
Request timeouts, 5xx answers and transport failures raise
``TranscriptionConnectionError``; every other failure raises
``TranscriptionError``.
"""

import httpx
from pydantic import BaseModel, ValidationError

from .errors import TranscriptionConnectionError, TranscriptionError
from .http_client import AsyncHttpClient, HTTPClientError, RetryException
from .logging import root_logger

logger = root_logger.getChild(__name__)

CONNECTION_STATUS_CODES = frozenset({408, 502, 503, 504})


class TranscriptionHTTPError(HTTPClientError):
    service = "transcription"


class TranscriptionResponse(BaseModel):
    transcript: str | None = None
    # older backends answer with this key
    transcription: str | None = None
    error: str | None = None
    confidence: float | None = None

    @property
    def text(self) -> str:
        return (self.transcript or self.transcription or "").strip()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or ""
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", ""))
    return response.reason_phrase or ""


class TranscriptionClient(AsyncHttpClient):
    ENDPOINT = "/api/transcribe"

    def __init__(self, base_url: str, **kwargs):
        kwargs.setdefault("exception_class", TranscriptionHTTPError)
        super().__init__(**kwargs)
        self.base_url = httpx.URL(base_url)

    @property
    def url(self) -> httpx.URL:
        return self.base_url.join(self.ENDPOINT)

    async def transcribe(
        self,
        audio: bytes,
        filename: str = "recording.mp3",
        content_type: str = "audio/mpeg",
        language: str | None = None,
    ) -> str:
        if not audio:
            raise TranscriptionError("No audio data recorded")

        files = {"audio": (filename, audio, content_type)}
        fields = {"language": language} if language else None
        logger.debug("Posting %d bytes of audio to %s", len(audio), self.url)
        try:
            response = await self.post(self.url, files=files, data=fields)
        except TranscriptionHTTPError as e:
            detail = _error_detail(e.response)
            message = f"Transcription failed: HTTP {e.status_code}: {detail}".rstrip(": ")
            if e.status_code in CONNECTION_STATUS_CODES or e.status_code >= 500:
                raise TranscriptionConnectionError(message, status_code=e.status_code) from e
            raise TranscriptionError(message, status_code=e.status_code) from e
        except httpx.TimeoutException as e:
            raise TranscriptionConnectionError(f"Transcription request timeout: {e}") from e
        except (httpx.TransportError, RetryException) as e:
            raise TranscriptionConnectionError(f"Transcription connection failed: {e}") from e

        try:
            body = TranscriptionResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TranscriptionError("Invalid transcription response") from e

        if body.error:
            raise TranscriptionError(f"Transcription failed: {body.error}")
        if not body.text:
            raise TranscriptionError("No transcription received from server")
        return body.text
