"""
Hybrid speech recognition.

A session races the local recognizer against the remote transcription
fallback. The local recognizer runs while the user speaks; the microphone
is captured in parallel so the fallback has audio to post. Once the user
stops, whichever path produces a result first resolves the session:

* the local transcript, from ``stop()`` or a debounced ``on_result``;
* the remote transcript, requested exactly once when the local recognizer
  fails, comes back empty, or has not answered within the fallback timeout.

The local recognizer is only started when it is the preferred method, or,
in ``auto`` mode, while its performance score is at least the remote one.
A local error reported while the user is still speaking sends the audio to
the remote path as soon as recording stops.

A ceiling timeout fails the session with ``RecordingTimeout`` when neither
path answers. Every callback carries the generation of the session it was
registered for and is ignored once that session is gone.
"""

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from pydantic import BaseModel

from .config import settings
from .const import RecognitionMethod, RecognitionPreference, Subsystem
from .errors import (
    AlreadyRecording,
    ErrorReporter,
    MicrophoneAccessError,
    NoActiveSession,
    NoASRAvailable,
    RecognitionError,
    RecordingTimeout,
    emit_error,
)
from .logging import root_logger
from .state import RecordingEvent, RecordingState, RecordingStateMachine, StateChangeCallback
from .timing import Debouncer

logger = root_logger.getChild(__name__)


class RecognitionEngine(Protocol):
    def is_available(self) -> bool: ...

    def start(self) -> Any: ...

    def stop(self) -> Any:
        """Return the final transcript, directly or as an awaitable."""

    def on_result(self, callback: Callable[[str], None]) -> None: ...

    def on_error(self, callback: Callable[[BaseException], None]) -> None: ...


class AudioCapture(Protocol):
    """Microphone capture. An optional ``level`` attribute reports the input level, 0..1."""

    def is_available(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> bytes: ...

    def release(self) -> None: ...


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, filename: str = ..., content_type: str = ...) -> str: ...


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class MethodPerformance(BaseModel):
    success_rate: float = 1.0
    average_response_time_ms: float = 0.0
    error_count: int = 0
    total_attempts: int = 0

    def record(self, success: bool, response_time_ms: float) -> None:
        self.total_attempts += 1
        if not success:
            self.error_count += 1
        self.success_rate = self.success_rate * 0.9 + (0.1 if success else 0.0)
        self.average_response_time_ms = self.average_response_time_ms * 0.8 + response_time_ms * 0.2

    @property
    def score(self) -> float:
        # up to 40 points for reliability, up to 20 for answering fast
        return self.success_rate * 40 + max(0.0, 20 - self.average_response_time_ms / 1000 * 2)


@dataclass(eq=False)
class RecordingSession:
    generation: int
    started_at: float
    primary_started: bool = False
    primary_attempted: bool = False
    fallback_attempted: bool = False
    primary_transcript: str = ""
    primary_error: BaseException | None = None
    capture_acquired: bool = False
    capture_released: bool = False
    audio: bytes = b""
    future: asyncio.Future | None = None
    primary_task: asyncio.Task | None = None
    fallback_task: asyncio.Task | None = None
    fallback_timer: asyncio.TimerHandle | None = None
    ceiling_timer: asyncio.TimerHandle | None = None
    result_debouncer: Debouncer | None = None

    @property
    def active(self) -> bool:
        return self.future is None or not self.future.done()


class HybridASR:
    def __init__(
        self,
        recognizer: RecognitionEngine | None = None,
        capture: AudioCapture | None = None,
        transcriber: Transcriber | None = None,
        *,
        fallback_timeout: float = settings.ASR_FALLBACK_TIMEOUT,
        ceiling_timeout: float = settings.ASR_CEILING_TIMEOUT,
        result_debounce: float = settings.ASR_RESULT_DEBOUNCE,
        preferred_method: RecognitionPreference | str = RecognitionPreference.AUTO,
        reporter: ErrorReporter | None = None,
        state_machine: RecordingStateMachine | None = None,
    ):
        self.recognizer = recognizer
        self.capture = capture
        self.transcriber = transcriber
        self.fallback_timeout = fallback_timeout
        self.ceiling_timeout = ceiling_timeout
        self.result_debounce = result_debounce
        self.preferred_method = RecognitionPreference(preferred_method)
        self._reporter = reporter or emit_error
        self.state = state_machine or RecordingStateMachine()
        self._generation = 0
        self._session: RecordingSession | None = None
        self._performance = {method: MethodPerformance() for method in RecognitionMethod}

    # availability

    def _local_available(self) -> bool:
        if self.recognizer is None:
            return False
        try:
            return bool(self.recognizer.is_available())
        except Exception:
            logger.warning("Local recognizer availability check failed", exc_info=True)
            return False

    def _remote_available(self) -> bool:
        if self.capture is None or self.transcriber is None:
            return False
        try:
            return bool(self.capture.is_available())
        except Exception:
            logger.warning("Audio capture availability check failed", exc_info=True)
            return False

    def available_methods(self) -> list[RecognitionMethod]:
        methods = []
        if self._local_available():
            methods.append(RecognitionMethod.LOCAL)
        if self._remote_available():
            methods.append(RecognitionMethod.REMOTE)
        return methods

    def is_available(self) -> bool:
        return bool(self.available_methods())

    @property
    def is_recording(self) -> bool:
        return self.state.is_recording

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    @property
    def current_state(self) -> RecordingState:
        return self.state.current_state

    def add_state_listener(self, callback: StateChangeCallback) -> None:
        self.state.add_listener(callback)

    def remove_state_listener(self, callback: StateChangeCallback) -> None:
        self.state.remove_listener(callback)

    # performance

    def performance(self) -> dict[RecognitionMethod, MethodPerformance]:
        return {method: perf.model_copy() for method, perf in self._performance.items()}

    def reset_performance(self) -> None:
        self._performance = {method: MethodPerformance() for method in RecognitionMethod}

    def _record_performance(self, method: RecognitionMethod, success: bool, started: float) -> None:
        self._performance[method].record(success, (time.monotonic() - started) * 1000)

    def set_preferred_method(self, method: RecognitionPreference | str) -> None:
        self.preferred_method = RecognitionPreference(method)
        logger.info("Preferred recognition method set to %s", self.preferred_method)

    def recommended_method(self) -> RecognitionMethod:
        """The method a new session starts with, ignoring availability."""
        if self.preferred_method != RecognitionPreference.AUTO:
            return RecognitionMethod(self.preferred_method)
        local = self._performance[RecognitionMethod.LOCAL]
        remote = self._performance[RecognitionMethod.REMOTE]
        if local.total_attempts == 0 or remote.total_attempts == 0:
            return RecognitionMethod.LOCAL
        return RecognitionMethod.LOCAL if local.score >= remote.score else RecognitionMethod.REMOTE

    def audio_level(self) -> float:
        """Input level of the microphone while recording, 0 otherwise."""
        session = self._session
        if session is None or not session.capture_acquired or not self.state.is_recording:
            return 0.0
        return float(getattr(self.capture, "level", 0.0))

    # session lifecycle

    async def start_recording(self) -> None:
        if self.state.is_active:
            raise AlreadyRecording("A recording session is already active")

        local_ok = self._local_available()
        remote_ok = self._remote_available()
        if not (local_ok or remote_ok):
            raise NoASRAvailable("No speech recognition method available")

        self._generation += 1
        session = RecordingSession(generation=self._generation, started_at=time.monotonic())
        session.result_debouncer = Debouncer(partial(self._on_debounced_result, session.generation), self.result_debounce)
        use_local = local_ok and (not remote_ok or self.recommended_method() == RecognitionMethod.LOCAL)
        self._session = session
        self.state.transition(RecordingEvent.START_RECORDING)
        logger.info("Recording session %d started (local=%s, remote=%s)", session.generation, use_local, remote_ok)

        if remote_ok:
            try:
                self.capture.start()
                session.capture_acquired = True
            except Exception as e:
                error = e if isinstance(e, MicrophoneAccessError) else MicrophoneAccessError(f"Microphone access failed: {e}")
                self._report(error, session)
                if not local_ok:
                    self._abandon(session)
                    if error is e:
                        raise
                    raise error from e
                use_local = True
                logger.warning("Continuing session %d without fallback capture", session.generation)

        if use_local:
            self.recognizer.on_result(partial(self._on_result, session.generation))
            self.recognizer.on_error(partial(self._on_error, session.generation))
            try:
                await _maybe_await(self.recognizer.start())
            except Exception:
                logger.warning("Local recognizer failed to start, relying on fallback", exc_info=True)
                return
            if self._current(session.generation) is None or not self.state.is_recording:
                logger.info("Session %d stopped while the local recognizer was starting", session.generation)
                await self._discard_recognizer()
                return
            session.primary_started = True

    async def stop_recording(self) -> str:
        session = self._session
        if session is None or not self.state.is_recording:
            raise NoActiveSession("No active recording session")

        self.state.transition(RecordingEvent.STOP_RECORDING)
        loop = asyncio.get_running_loop()
        session.future = loop.create_future()
        session.audio = self._stop_capture(session)
        session.ceiling_timer = loop.call_later(self.ceiling_timeout, self._on_ceiling_timeout, session.generation)

        if session.primary_error is not None:
            self._abort_recognizer()
            self._start_fallback(session, "local recognizer error")
        elif session.primary_started:
            session.primary_attempted = True
            session.primary_task = loop.create_task(self._run_primary(session))
            session.fallback_timer = loop.call_later(
                self.fallback_timeout, self._on_fallback_timeout, session.generation
            )
        else:
            self._start_fallback(session, "local recognizer not running")

        try:
            return await session.future
        except asyncio.CancelledError:
            if self._session is session:
                self.cancel_recording()
            raise

    def cancel_recording(self) -> None:
        """Abandon the active session without a result."""
        session = self._session
        if session is None:
            return
        logger.info("Recording session %d cancelled", session.generation)
        pending_primary = session.primary_task is not None and not session.primary_task.done()
        self._teardown(session)
        if pending_primary or self.state.is_recording:
            self._abort_recognizer()
        if session.future is not None and not session.future.done():
            session.future.cancel()
        self.state.transition(RecordingEvent.ABORT)

    def dispose(self) -> None:
        self.cancel_recording()

    # resolution paths

    def _current(self, generation: int) -> RecordingSession | None:
        session = self._session
        if session is None or session.generation != generation or not session.active:
            return None
        return session

    def _stop_capture(self, session: RecordingSession) -> bytes:
        if not session.capture_acquired:
            return b""
        try:
            return self.capture.stop()
        except Exception:
            logger.warning("Failed to stop audio capture for session %d", session.generation, exc_info=True)
            return b""

    async def _run_primary(self, session: RecordingSession) -> None:
        started = time.monotonic()
        try:
            text = await _maybe_await(self.recognizer.stop())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_performance(RecognitionMethod.LOCAL, False, started)
            logger.warning("Local recognizer failed: %s", e)
            session.primary_error = e
            self._start_fallback(session, "local recognizer failed")
            return

        text = (text or "").strip() or session.primary_transcript
        if text:
            self._record_performance(RecognitionMethod.LOCAL, True, started)
            self._resolve(session, text=text, method=RecognitionMethod.LOCAL)
        elif not session.result_debouncer.pending:
            self._record_performance(RecognitionMethod.LOCAL, False, started)
            self._start_fallback(session, "empty local transcript")

    def _on_result(self, generation: int, text: str) -> None:
        session = self._current(generation)
        if session is None:
            logger.debug("Discarding stale recognition result from session %d", generation)
            return
        text = (text or "").strip()
        if not text:
            return
        session.primary_transcript = text
        if self.state.current_state == RecordingState.RESOLVING:
            session.result_debouncer(text)

    def _on_debounced_result(self, generation: int, text: str) -> None:
        session = self._current(generation)
        if session is not None:
            self._resolve(session, text=text, method=RecognitionMethod.LOCAL)

    def _on_error(self, generation: int, error: BaseException) -> None:
        session = self._current(generation)
        if session is None:
            logger.debug("Discarding stale recognition error from session %d", generation)
            return
        logger.warning("Local recognizer reported an error: %s", error)
        session.primary_error = error
        if self.state.current_state == RecordingState.RESOLVING:
            self._start_fallback(session, "local recognizer error")

    def _on_fallback_timeout(self, generation: int) -> None:
        session = self._current(generation)
        if session is not None:
            self._start_fallback(session, "local recognizer timeout", waiting_on_primary=True)

    def _on_ceiling_timeout(self, generation: int) -> None:
        session = self._current(generation)
        if session is not None:
            self._resolve(
                session, error=RecordingTimeout(f"Speech recognition timed out after {self.ceiling_timeout:g}s")
            )

    def _start_fallback(self, session: RecordingSession, reason: str, waiting_on_primary: bool = False) -> None:
        if session.fallback_attempted:
            return
        if session.fallback_timer is not None:
            session.fallback_timer.cancel()
            session.fallback_timer = None

        if self.transcriber is None or not session.capture_acquired:
            if waiting_on_primary:
                logger.info("No fallback for session %d, still waiting on the local recognizer", session.generation)
                return
            error = session.primary_error or RecognitionError("No speech was recognized")
            self._resolve(session, error=error)
            return

        session.fallback_attempted = True
        logger.info("Falling back to remote transcription for session %d: %s", session.generation, reason)
        session.fallback_task = asyncio.get_running_loop().create_task(self._run_fallback(session))

    async def _run_fallback(self, session: RecordingSession) -> None:
        started = time.monotonic()
        filename = getattr(self.capture, "filename", "recording.mp3")
        content_type = getattr(self.capture, "content_type", "audio/mpeg")
        try:
            text = await self.transcriber.transcribe(session.audio, filename=filename, content_type=content_type)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_performance(RecognitionMethod.REMOTE, False, started)
            self._resolve(session, error=e)
            return
        self._record_performance(RecognitionMethod.REMOTE, True, started)
        self._resolve(session, text=text, method=RecognitionMethod.REMOTE)

    def _resolve(
        self,
        session: RecordingSession,
        text: str | None = None,
        error: BaseException | None = None,
        method: RecognitionMethod | None = None,
    ) -> None:
        if session is not self._session or session.future is None or session.future.done():
            logger.debug("Session %d already resolved, discarding late result", session.generation)
            return

        current = asyncio.current_task()
        primary = session.primary_task
        if primary is not None and not primary.done() and primary is not current:
            self._abort_recognizer()
        self._teardown(session)
        self.state.transition(RecordingEvent.RESOLVED)

        if error is None:
            logger.info("Recording session %d resolved via %s", session.generation, method)
            session.future.set_result(text)
        else:
            logger.warning("Recording session %d failed: %s", session.generation, error)
            self._report(error, session)
            session.future.set_exception(error)

    def _teardown(self, session: RecordingSession) -> None:
        self._session = None
        for timer in (session.fallback_timer, session.ceiling_timer):
            if timer is not None:
                timer.cancel()
        session.fallback_timer = session.ceiling_timer = None
        if session.result_debouncer is not None:
            session.result_debouncer.cancel()

        current = asyncio.current_task() if _loop_running() else None
        for task in (session.primary_task, session.fallback_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._release_capture(session)

    def _release_capture(self, session: RecordingSession) -> None:
        if not session.capture_acquired or session.capture_released:
            return
        session.capture_released = True
        try:
            self.capture.release()
        except Exception:
            logger.exception("Failed to release microphone")

    def _abort_recognizer(self) -> None:
        abort = getattr(self.recognizer, "abort", None)
        if abort is None:
            return
        try:
            abort()
        except Exception:
            logger.warning("Local recognizer abort failed", exc_info=True)

    async def _discard_recognizer(self) -> None:
        if getattr(self.recognizer, "abort", None) is not None:
            self._abort_recognizer()
            return
        try:
            await _maybe_await(self.recognizer.stop())
        except Exception:
            logger.warning("Local recognizer failed to stop", exc_info=True)

    def _abandon(self, session: RecordingSession) -> None:
        self._teardown(session)
        self.state.transition(RecordingEvent.ABORT)

    def _report(self, error: BaseException, session: RecordingSession) -> None:
        context = {
            "generation": session.generation,
            "primary_attempted": session.primary_attempted,
            "fallback_attempted": session.fallback_attempted,
        }
        try:
            self._reporter(error, context, Subsystem.ASR)
        except Exception:
            logger.exception("Error reporter failed")


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
