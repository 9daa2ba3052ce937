"""
Speech synthesis queue.

Requests are spoken one at a time, in priority buckets: ``high`` goes to
the head of the queue, ``normal`` goes before the first ``low`` item and
``low`` is appended. A failed attempt is retried after an exponential
backoff by putting the request back at the head of its own bucket. When
the retries run out the request resolves as text-only and the queue moves
on.
"""

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from .config import settings
from .const import SettingsKey, Subsystem, SynthesisPriority
from .errors import ErrorReporter, SynthesisError, emit_error
from .logging import root_logger
from .settings import KeyValueStorage, SettingsReader
from .timing import Throttle

logger = root_logger.getChild(__name__)

_RANK = {
    SynthesisPriority.LOW: 0,
    SynthesisPriority.NORMAL: 1,
    SynthesisPriority.HIGH: 2,
}


class SynthesisEngine(Protocol):
    def is_available(self) -> bool: ...

    def speak(self, text: str, options: dict[str, Any]) -> Any:
        """Speak ``text``; may return the rendered audio, directly or as an awaitable."""

    def stop(self) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def get_voices(self) -> list: ...


@dataclass(eq=False)
class SynthesisRequest:
    text: str
    priority: SynthesisPriority = SynthesisPriority.NORMAL
    options: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    future: asyncio.Future | None = None


class SynthesisOutcome(BaseModel):
    text: str
    spoken: bool
    fallback: bool = False
    display_text: str
    attempts: int = 0
    reason: str | None = None


class SynthesisMetrics(BaseModel):
    average_response_time_ms: float = 0.0
    success_rate: float = 1.0
    error_count: int = 0
    total_requests: int = 0


class QueueStatus(BaseModel):
    length: int
    processing: bool
    paused: bool
    priorities: list[SynthesisPriority]


class CacheStats(BaseModel):
    entries: int
    memory_usage_kb: float
    limit_kb: int


class AudioBufferCache:
    """Rendered audio kept around for replay, cleared wholesale above ``limit_kb``."""

    def __init__(self, limit_kb: int = settings.TTS_CACHE_LIMIT_KB):
        self.limit_kb = limit_kb
        self._buffers: dict[str, bytes] = {}

    def store(self, key: str, audio: bytes) -> None:
        self._buffers[key] = audio

    def get(self, key: str) -> bytes | None:
        return self._buffers.get(key)

    def memory_usage_kb(self) -> float:
        return sum(len(audio) for audio in self._buffers.values()) / 1024

    def cleanup(self) -> bool:
        usage = self.memory_usage_kb()
        if usage <= self.limit_kb:
            return False
        logger.info("Audio cache at %.0f KB exceeds %d KB, clearing", usage, self.limit_kb)
        self.clear()
        return True

    def clear(self) -> None:
        self._buffers.clear()

    def stats(self) -> CacheStats:
        return CacheStats(entries=len(self._buffers), memory_usage_kb=self.memory_usage_kb(), limit_kb=self.limit_kb)

    def __len__(self) -> int:
        return len(self._buffers)


class SynthesisQueue:
    def __init__(
        self,
        engine: SynthesisEngine | None = None,
        *,
        enabled: bool = settings.TTS_ENABLED,
        max_retries: int = settings.TTS_MAX_RETRIES,
        retry_base_delay: float = settings.TTS_RETRY_BASE_DELAY,
        cleanup_interval: float = settings.TTS_CLEANUP_INTERVAL,
        cache: AudioBufferCache | None = None,
        reporter: ErrorReporter | None = None,
        storage: KeyValueStorage | None = None,
    ):
        self.engine = engine
        # the enabled flag and the voice persist across restarts when storage is given
        self._settings = SettingsReader(storage) if storage is not None else None
        self.enabled = self._stored(SettingsKey.TTS_ENABLED, enabled)
        self.voice: str | None = self._stored(SettingsKey.PREFERRED_VOICE, "") or None
        self.max_retries = self._clamp_retries(max_retries)
        self.retry_base_delay = retry_base_delay
        self.fallback_enabled = True
        self.cache = cache or AudioBufferCache()
        self._reporter = reporter or emit_error
        self._metrics = SynthesisMetrics()
        self._queue: list[SynthesisRequest] = []
        self._current: SynthesisRequest | None = None
        self._drain_task: asyncio.Task | None = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._cleanup = Throttle(self.cache.cleanup, cleanup_interval)

    def _stored(self, key: str, default: Any) -> Any:
        if self._settings is None:
            return default
        return self._settings.get_key(key, default)

    def _persist(self, key: str, value: Any) -> None:
        if self._settings is not None:
            self._settings.set_json(key, value)

    @staticmethod
    def _clamp_retries(value: int) -> int:
        return max(0, min(5, int(value)))

    def is_available(self) -> bool:
        if not self.enabled or self.engine is None:
            return False
        try:
            return bool(self.engine.is_available())
        except Exception:
            logger.warning("Synthesis engine availability check failed", exc_info=True)
            return False

    async def synthesize(
        self,
        text: str,
        priority: SynthesisPriority | str = SynthesisPriority.NORMAL,
        options: dict[str, Any] | None = None,
    ) -> SynthesisOutcome:
        priority = SynthesisPriority(priority)
        if not self.is_available():
            if not self.fallback_enabled:
                raise SynthesisError("Speech synthesis is unavailable", priority=priority)
            logger.debug("Speech synthesis unavailable, returning text only")
            return self._text_only(text, reason="unavailable", attempts=0)

        options = dict(options or {})
        if self.voice:
            options.setdefault("voice", self.voice)
        request = SynthesisRequest(text=text, priority=priority, options=options)
        request.future = asyncio.get_running_loop().create_future()
        self._insert(request)
        logger.debug("Queued %s synthesis request %s (queue length %d)", priority, request.id, len(self._queue))
        self._ensure_draining()
        return await request.future

    def _insert(self, request: SynthesisRequest, head_of_bucket: bool = False) -> None:
        rank = _RANK[request.priority]
        if request.priority == SynthesisPriority.HIGH:
            index = 0
        elif head_of_bucket:
            index = next((i for i, r in enumerate(self._queue) if _RANK[r.priority] <= rank), len(self._queue))
        elif request.priority == SynthesisPriority.NORMAL:
            index = next((i for i, r in enumerate(self._queue) if _RANK[r.priority] < rank), len(self._queue))
        else:
            index = len(self._queue)
        self._queue.insert(index, request)

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            await self._resumed.wait()
            if not self._queue:
                break
            request = self._queue.pop(0)
            if request.future is not None and request.future.done():
                # caller went away
                continue
            self._current = request
            try:
                await self._attempt(request)
            finally:
                self._current = None

    async def _attempt(self, request: SynthesisRequest) -> None:
        started = time.monotonic()
        try:
            audio = self.engine.speak(request.text, request.options)
            if inspect.isawaitable(audio):
                audio = await audio
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._update_metrics(False, started)
            await self._handle_failure(request, e)
            return

        self._update_metrics(True, started)
        if isinstance(audio, (bytes, bytearray)) and audio:
            self.cache.store(request.id, bytes(audio))
        self._cleanup()
        self._resolve(
            request,
            SynthesisOutcome(text=request.text, spoken=True, display_text=request.text, attempts=request.retry_count + 1),
        )

    async def _handle_failure(self, request: SynthesisRequest, error: Exception) -> None:
        attempts = request.retry_count + 1
        if request.retry_count < self.max_retries:
            request.retry_count += 1
            delay = self.retry_base_delay * 2 ** (request.retry_count - 1)
            logger.warning(
                "Synthesis attempt %d for %s failed (%s), retrying in %.2fs", attempts, request.id, error, delay
            )
            await asyncio.sleep(delay)
            self._insert(request, head_of_bucket=True)
            return

        logger.error("Synthesis for %s abandoned after %d attempts: %s", request.id, attempts, error)
        failure = SynthesisError(
            f"Speech synthesis failed after {attempts} attempts: {error}",
            attempts=attempts,
            priority=str(request.priority),
        )
        try:
            self._reporter(failure, failure.context, Subsystem.TTS)
        except Exception:
            logger.exception("Error reporter failed")

        if self.fallback_enabled:
            self._resolve(request, self._text_only(request.text, reason=str(error), attempts=attempts))
        elif request.future is not None and not request.future.done():
            request.future.set_exception(failure)

    def _update_metrics(self, success: bool, started: float) -> None:
        metrics = self._metrics
        elapsed_ms = (time.monotonic() - started) * 1000
        metrics.total_requests += 1
        if not success:
            metrics.error_count += 1
        metrics.average_response_time_ms = metrics.average_response_time_ms * 0.8 + elapsed_ms * 0.2
        metrics.success_rate = metrics.success_rate * 0.9 + (0.1 if success else 0.0)

    @staticmethod
    def _text_only(text: str, reason: str, attempts: int) -> SynthesisOutcome:
        return SynthesisOutcome(
            text=text, spoken=False, fallback=True, display_text=text, attempts=attempts, reason=reason
        )

    @staticmethod
    def _resolve(request: SynthesisRequest, outcome: SynthesisOutcome) -> None:
        if request.future is not None and not request.future.done():
            request.future.set_result(outcome)

    # controls

    def stop(self) -> None:
        """Stop speaking and resolve everything pending as text-only."""
        pending = self._queue
        self._queue = []
        if self._current is not None:
            pending.insert(0, self._current)
        for request in pending:
            self._resolve(request, self._text_only(request.text, reason="stopped", attempts=request.retry_count))
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._drain_task = None
        self._resumed.set()
        if self.engine is not None:
            try:
                self.engine.stop()
            except Exception:
                logger.warning("Synthesis engine failed to stop", exc_info=True)
        if pending:
            logger.info("Synthesis stopped, %d request(s) resolved as text", len(pending))

    def pause(self) -> None:
        self._resumed.clear()
        if self.engine is not None:
            self.engine.pause()

    def resume(self) -> None:
        self._resumed.set()
        if self.engine is not None:
            self.engine.resume()

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def is_speaking(self) -> bool:
        is_speaking = getattr(self.engine, "is_speaking", None)
        if is_speaking is not None:
            return bool(is_speaking())
        return self._current is not None

    def get_voices(self) -> list:
        if self.engine is None:
            return []
        return list(self.engine.get_voices())

    def queue_status(self) -> QueueStatus:
        return QueueStatus(
            length=len(self._queue),
            processing=self._current is not None,
            paused=self.paused,
            priorities=[request.priority for request in self._queue],
        )

    def clear_queue(self) -> int:
        """Drop requests that have not started yet; they resolve as text-only."""
        dropped, self._queue = self._queue, []
        for request in dropped:
            self._resolve(request, self._text_only(request.text, reason="cleared", attempts=request.retry_count))
        return len(dropped)

    def metrics(self) -> SynthesisMetrics:
        return self._metrics.model_copy()

    def set_max_retries(self, value: int) -> None:
        self.max_retries = self._clamp_retries(value)

    def set_fallback_enabled(self, enabled: bool) -> None:
        self.fallback_enabled = enabled

    def set_voice(self, voice: str | None) -> None:
        self.voice = voice or None
        self._persist(SettingsKey.PREFERRED_VOICE, voice or "")

    def update_settings(
        self,
        enabled: bool | None = None,
        max_retries: int | None = None,
        fallback_enabled: bool | None = None,
        voice: str | None = None,
    ) -> None:
        if voice is not None:
            self.set_voice(voice)
        if max_retries is not None:
            self.set_max_retries(max_retries)
        if fallback_enabled is not None:
            self.set_fallback_enabled(fallback_enabled)
        if enabled is not None and enabled != self.enabled:
            self.enabled = enabled
            self._persist(SettingsKey.TTS_ENABLED, enabled)
            logger.info("Speech synthesis %s", "enabled" if enabled else "disabled")
            if not enabled:
                self.stop()

    def dispose(self) -> None:
        self.stop()
        self.cache.clear()
