"""Error taxonomy and classifier.

``classify`` maps any raw failure onto a ``ClassifiedError``. It never raises:
anything it cannot place lands in ``SYSTEM_ERROR``/``medium``.

Keyword precedence is fixed by ``KEYWORD_RULES`` order: authentication,
rate limit, connection, LLM, TTS, ASR.
"""

import time
import uuid
from collections.abc import Mapping
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .const import ErrorKind, Severity
from .logging import root_logger

logger = root_logger.getChild(__name__)


class KindTraits(NamedTuple):
    severity: Severity
    recoverable: bool
    retryable: bool


TAXONOMY: dict[ErrorKind, KindTraits] = {
    ErrorKind.CONNECTION_ERROR: KindTraits(Severity.HIGH, True, True),
    ErrorKind.LLM_ERROR: KindTraits(Severity.HIGH, True, True),
    ErrorKind.TTS_ERROR: KindTraits(Severity.LOW, True, True),
    ErrorKind.ASR_ERROR: KindTraits(Severity.MEDIUM, True, True),
    ErrorKind.AUTHENTICATION_ERROR: KindTraits(Severity.CRITICAL, False, False),
    ErrorKind.RATE_LIMIT_ERROR: KindTraits(Severity.MEDIUM, True, True),
    ErrorKind.SYSTEM_ERROR: KindTraits(Severity.MEDIUM, True, False),
}

KEYWORD_RULES: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.AUTHENTICATION_ERROR, ("unauthorized", "authentication")),
    (ErrorKind.RATE_LIMIT_ERROR, ("rate limit", "429")),
    (ErrorKind.CONNECTION_ERROR, ("connection", "websocket", "network", "timeout")),
    (ErrorKind.LLM_ERROR, ("openai", "api request failed", "llm")),
    (ErrorKind.TTS_ERROR, ("tts", "synthesis")),
    (ErrorKind.ASR_ERROR, ("microphone", "speech recognition")),
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_error_id() -> str:
    return f"error_{_now_ms()}_{uuid.uuid4().hex[:9]}"


class ClassifiedError(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_error_id)
    kind: ErrorKind
    severity: Severity
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    originating_subsystem: str | None = None
    timestamp_ms: int = Field(default_factory=_now_ms)
    recoverable: bool
    retryable: bool


def match_kind(message: str) -> ErrorKind:
    """First keyword rule matching ``message`` (case-insensitive), else SYSTEM_ERROR."""
    lowered = message.lower()
    for kind, keywords in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return ErrorKind.SYSTEM_ERROR


def _build(
    kind: ErrorKind, message: str, context: dict[str, Any], subsystem: str | None
) -> ClassifiedError:
    traits = TAXONOMY[kind]
    return ClassifiedError(
        kind=kind,
        severity=traits.severity,
        message=message,
        context=context,
        originating_subsystem=subsystem,
        recoverable=traits.recoverable,
        retryable=traits.retryable,
    )


def _with_kind_flags(error: ClassifiedError) -> ClassifiedError:
    traits = TAXONOMY[error.kind]
    if (error.recoverable, error.retryable) == (traits.recoverable, traits.retryable):
        return error
    return error.model_copy(update={"recoverable": traits.recoverable, "retryable": traits.retryable})


def _from_mapping(raw: Mapping[str, Any], context: dict[str, Any], subsystem: str | None) -> ClassifiedError:
    data = dict(raw)
    if "kind" not in data and "type" in data:
        data["kind"] = data.pop("type")
    message = str(data.get("message") or "")
    try:
        kind = ErrorKind(data["kind"])
    except (KeyError, ValueError):
        logger.debug("Structured error without a valid kind, matching keywords: %r", data.get("kind"))
        return _build(match_kind(message), message, context, subsystem)

    traits = TAXONOMY[kind]
    data.setdefault("severity", traits.severity)
    data["recoverable"] = traits.recoverable
    data["retryable"] = traits.retryable
    data["message"] = message
    extra = data.get("context")
    if isinstance(extra, Mapping):
        data["context"] = {**context, **extra}
    else:
        if extra is not None:
            logger.debug("Ignoring non-mapping context on structured %s error: %r", kind, extra)
        data["context"] = context
    data.setdefault("originating_subsystem", subsystem)
    try:
        return ClassifiedError.model_validate(data)
    except ValidationError as e:
        logger.warning("Invalid structured error, using table defaults for %s: %s", kind, e.error_count())
        return _build(kind, message, context, subsystem)


def classify(raw: Any, context: dict[str, Any] | None = None, subsystem: str | None = None) -> ClassifiedError:
    """Classify any raw failure. Total: never raises."""
    context = dict(context or {})

    if isinstance(raw, ClassifiedError):
        return _with_kind_flags(raw)

    if isinstance(raw, Mapping):
        return _from_mapping(raw, context, subsystem)

    if isinstance(raw, BaseException):
        message = str(raw) or raw.__class__.__name__
        context.setdefault("exception_type", raw.__class__.__name__)
        extra = getattr(raw, "context", None)
        if isinstance(extra, Mapping):
            context = {**extra, **context}
        explicit = getattr(raw, "kind", None)
        if isinstance(explicit, ErrorKind):
            return _build(explicit, message, context, subsystem)
        return _build(match_kind(message), message, context, subsystem)

    message = raw if isinstance(raw, str) else str(raw)
    return _build(match_kind(message), message, context, subsystem)
