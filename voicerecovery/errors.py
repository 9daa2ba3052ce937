"""Error handling infrastructure for voicerecovery.

Provides:
- Exception hierarchy where every class carries the ``ErrorKind`` it classifies as
- Context variable-based error reporting for deep components
"""

from contextvars import ContextVar
from typing import Any, Protocol

from .const import ErrorKind


class ErrorReporter(Protocol):
    def __call__(
        self, error: BaseException | str, context: dict[str, Any] | None = None, subsystem: str | None = None
    ) -> Any: ...


_error_reporter: ContextVar[ErrorReporter | None] = ContextVar("error_reporter", default=None)


def set_error_reporter(reporter: ErrorReporter | None) -> None:
    """Set the reporter (the error engine does this on creation)."""
    _error_reporter.set(reporter)


def get_error_reporter() -> ErrorReporter | None:
    return _error_reporter.get()


def emit_error(
    error: BaseException | str, context: dict[str, Any] | None = None, subsystem: str | None = None
) -> None:
    """Report an error to the active engine. Safe to call from any component."""
    reporter = _error_reporter.get()
    if reporter:
        reporter(error, context, subsystem)


class VoiceRecoveryError(Exception):
    """Base exception. ``kind`` bypasses keyword classification."""

    kind: ErrorKind = ErrorKind.SYSTEM_ERROR

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context

    def emit(self, subsystem: str | None = None) -> None:
        """Convenience: report this error via the context reporter."""
        emit_error(self, self.context, subsystem)


class RecognitionError(VoiceRecoveryError):
    kind = ErrorKind.ASR_ERROR


class AlreadyRecording(RecognitionError):
    pass


class NoASRAvailable(RecognitionError):
    pass


class NoActiveSession(RecognitionError):
    pass


class RecordingTimeout(RecognitionError):
    pass


class MicrophoneAccessError(RecognitionError):
    pass


class AudioSaveError(RecognitionError):
    pass


class TranscriptionError(RecognitionError):
    pass


class TranscriptionConnectionError(TranscriptionError):
    kind = ErrorKind.CONNECTION_ERROR


class SynthesisError(VoiceRecoveryError):
    kind = ErrorKind.TTS_ERROR


class TransitionError(VoiceRecoveryError):
    pass
