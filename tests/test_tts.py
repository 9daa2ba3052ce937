"""Tests for the SynthesisQueue, using a fake synthesis engine."""

import asyncio
import unittest

from voicerecovery.const import SettingsKey, SynthesisPriority
from voicerecovery.errors import SynthesisError
from voicerecovery.settings import MemoryStorage
from voicerecovery.tts import AudioBufferCache, SynthesisQueue


class FakeEngine:
    def __init__(self, failures=None, delay=0.0, audio=b"\x00" * 16, available=True):
        # text -> number of failing attempts, -1 fails forever
        self.failures = dict(failures or {})
        self.delay = delay
        self.audio = audio
        self.available = available
        self.attempts = []
        self.options = []
        self.spoken = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.stopped = 0
        self.paused = 0
        self.resumed = 0

    def is_available(self):
        return self.available

    async def speak(self, text, options):
        self.attempts.append(text)
        self.options.append(options)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            remaining = self.failures.get(text, 0)
            if remaining:
                self.failures[text] = remaining - 1 if remaining > 0 else remaining
                raise RuntimeError(f"synthesis failed for {text}")
            self.spoken.append(text)
            return self.audio
        finally:
            self.in_flight -= 1

    def stop(self):
        self.stopped += 1

    def pause(self):
        self.paused += 1

    def resume(self):
        self.resumed += 1

    def get_voices(self):
        return ["alto", "bass"]


class TTSTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.reports = []

    def reporter(self, error, context=None, subsystem=None):
        self.reports.append((error, context, subsystem))

    def make(self, engine=None, **kwargs) -> SynthesisQueue:
        kwargs.setdefault("retry_base_delay", 0.001)
        kwargs.setdefault("enabled", True)
        return SynthesisQueue(engine, reporter=self.reporter, **kwargs)


class TestAvailability(TTSTestCase):
    async def test_disabled_returns_text_only(self):
        engine = FakeEngine()
        queue = self.make(engine, enabled=False)
        outcome = await queue.synthesize("hello")

        assert outcome.spoken is False
        assert outcome.fallback is True
        assert outcome.display_text == "hello"
        assert outcome.attempts == 0
        assert engine.attempts == []
        assert queue.queue_status().length == 0

    async def test_missing_engine_returns_text_only(self):
        outcome = await self.make(None).synthesize("hello")
        assert outcome.fallback is True

    async def test_unavailable_engine_returns_text_only(self):
        outcome = await self.make(FakeEngine(available=False)).synthesize("hello")
        assert outcome.fallback is True

    async def test_unavailable_without_fallback_raises(self):
        queue = self.make(None)
        queue.set_fallback_enabled(False)
        with self.assertRaises(SynthesisError):
            await queue.synthesize("hello")

    async def test_update_settings_disables(self):
        engine = FakeEngine()
        queue = self.make(engine)
        queue.update_settings(enabled=False)
        outcome = await queue.synthesize("hello")
        assert outcome.spoken is False
        assert engine.stopped == 1


class TestOrdering(TTSTestCase):
    async def test_low_high_normal_drains_high_normal_low(self):
        engine = FakeEngine()
        queue = self.make(engine)
        queue.pause()
        tasks = [
            asyncio.create_task(queue.synthesize("low", SynthesisPriority.LOW)),
            asyncio.create_task(queue.synthesize("high", SynthesisPriority.HIGH)),
            asyncio.create_task(queue.synthesize("normal", SynthesisPriority.NORMAL)),
        ]
        await asyncio.sleep(0.01)
        assert queue.queue_status().priorities == [
            SynthesisPriority.HIGH,
            SynthesisPriority.NORMAL,
            SynthesisPriority.LOW,
        ]

        queue.resume()
        outcomes = await asyncio.gather(*tasks)

        assert engine.spoken == ["high", "normal", "low"]
        assert all(outcome.spoken for outcome in outcomes)

    async def test_normal_goes_after_existing_normals(self):
        engine = FakeEngine()
        queue = self.make(engine)
        queue.pause()
        tasks = [
            asyncio.create_task(queue.synthesize("n1")),
            asyncio.create_task(queue.synthesize("l1", "low")),
            asyncio.create_task(queue.synthesize("n2")),
            asyncio.create_task(queue.synthesize("h1", "high")),
        ]
        await asyncio.sleep(0.01)
        queue.resume()
        await asyncio.gather(*tasks)

        assert engine.spoken == ["h1", "n1", "n2", "l1"]

    async def test_strictly_sequential(self):
        engine = FakeEngine(delay=0.01)
        queue = self.make(engine)
        await asyncio.gather(*(queue.synthesize(f"t{i}") for i in range(4)))

        assert engine.max_in_flight == 1
        assert len(engine.spoken) == 4


class TestRetry(TTSTestCase):
    async def test_exhausted_retries_fall_back_once_and_queue_continues(self):
        engine = FakeEngine(failures={"bad": -1})
        queue = self.make(engine, max_retries=2)

        bad, good = await asyncio.gather(queue.synthesize("bad"), queue.synthesize("good"))

        assert bad.spoken is False
        assert bad.fallback is True
        assert bad.attempts == 3
        assert engine.attempts.count("bad") == 3
        assert good.spoken is True
        assert len(self.reports) == 1
        error, context, subsystem = self.reports[0]
        assert isinstance(error, SynthesisError)
        assert context["attempts"] == 3
        assert subsystem == "tts"

    async def test_retry_then_success(self):
        engine = FakeEngine(failures={"flaky": 1})
        queue = self.make(engine)
        outcome = await queue.synthesize("flaky")

        assert outcome.spoken is True
        assert outcome.attempts == 2
        assert self.reports == []

    async def test_retry_goes_to_head_of_its_bucket(self):
        engine = FakeEngine(failures={"a": 1})
        queue = self.make(engine)
        queue.pause()
        tasks = [
            asyncio.create_task(queue.synthesize("a")),
            asyncio.create_task(queue.synthesize("b")),
        ]
        await asyncio.sleep(0.01)
        queue.resume()
        await asyncio.gather(*tasks)

        assert engine.attempts == ["a", "a", "b"]

    async def test_zero_retries(self):
        engine = FakeEngine(failures={"bad": -1})
        queue = self.make(engine, max_retries=0)
        outcome = await queue.synthesize("bad")
        assert outcome.attempts == 1
        assert engine.attempts == ["bad"]

    async def test_fallback_disabled_raises_after_retries(self):
        engine = FakeEngine(failures={"bad": -1})
        queue = self.make(engine, max_retries=1)
        queue.set_fallback_enabled(False)
        with self.assertRaises(SynthesisError):
            await queue.synthesize("bad")

    async def test_set_max_retries_is_clamped(self):
        queue = self.make(FakeEngine())
        queue.set_max_retries(10)
        assert queue.max_retries == 5
        queue.set_max_retries(-3)
        assert queue.max_retries == 0


class TestMetricsAndCache(TTSTestCase):
    async def test_metrics(self):
        engine = FakeEngine(failures={"flaky": 1})
        queue = self.make(engine)
        await queue.synthesize("flaky")

        metrics = queue.metrics()
        assert metrics.total_requests == 2
        assert metrics.error_count == 1
        assert 0 < metrics.success_rate < 1

    async def test_audio_is_cached(self):
        queue = self.make(FakeEngine(audio=b"\x01" * 2048))
        await queue.synthesize("hello")
        stats = queue.cache.stats()
        assert stats.entries == 1
        assert stats.memory_usage_kb == 2.0

    async def test_cache_cleared_above_limit(self):
        queue = self.make(FakeEngine(audio=b"\x01" * 2048), cache=AudioBufferCache(limit_kb=1), cleanup_interval=0)
        await queue.synthesize("hello")
        assert len(queue.cache) == 0

    async def test_cleanup_is_throttled(self):
        queue = self.make(FakeEngine(audio=b"\x01" * 1024), cache=AudioBufferCache(limit_kb=1), cleanup_interval=60)
        await queue.synthesize("one")
        await queue.synthesize("two")
        # first cleanup ran while under the limit; the second is inside the window
        assert len(queue.cache) == 2


class TestControls(TTSTestCase):
    async def test_stop_resolves_pending_as_text(self):
        engine = FakeEngine(delay=0.5)
        queue = self.make(engine)
        first = asyncio.create_task(queue.synthesize("first"))
        second = asyncio.create_task(queue.synthesize("second"))
        await asyncio.sleep(0.01)

        queue.stop()
        outcomes = await asyncio.gather(first, second)

        assert [o.reason for o in outcomes] == ["stopped", "stopped"]
        assert all(o.fallback for o in outcomes)
        assert engine.stopped == 1

    async def test_clear_queue(self):
        engine = FakeEngine()
        queue = self.make(engine)
        queue.pause()
        task = asyncio.create_task(queue.synthesize("pending"))
        await asyncio.sleep(0.01)

        assert queue.clear_queue() == 1
        outcome = await task
        assert outcome.reason == "cleared"
        assert engine.attempts == []

    async def test_status_and_voices(self):
        engine = FakeEngine()
        queue = self.make(engine)
        assert queue.get_voices() == ["alto", "bass"]
        status = queue.queue_status()
        assert status.length == 0
        assert status.processing is False
        assert queue.is_speaking() is False

    async def test_pause_and_resume_forward_to_engine(self):
        engine = FakeEngine()
        queue = self.make(engine)
        queue.pause()
        assert queue.paused
        queue.resume()
        assert (engine.paused, engine.resumed) == (1, 1)

    async def test_dispose(self):
        queue = self.make(FakeEngine())
        await queue.synthesize("hello")
        queue.dispose()
        assert len(queue.cache) == 0


class TestPersistedSettings(TTSTestCase):
    async def test_enabled_flag_survives_restart(self):
        storage = MemoryStorage()
        queue = self.make(FakeEngine(), storage=storage)
        queue.update_settings(enabled=False)

        assert storage.get(SettingsKey.TTS_ENABLED) == "false"
        assert self.make(FakeEngine(), storage=storage).enabled is False

    async def test_stored_flag_overrides_default(self):
        storage = MemoryStorage({SettingsKey.TTS_ENABLED: "false"})
        outcome = await self.make(FakeEngine(), storage=storage).synthesize("hello")
        assert outcome.fallback is True

    async def test_malformed_flag_uses_default(self):
        storage = MemoryStorage({SettingsKey.TTS_ENABLED: "yes"})
        assert self.make(FakeEngine(), storage=storage).enabled is True

    async def test_preferred_voice(self):
        storage = MemoryStorage()
        engine = FakeEngine()
        queue = self.make(engine, storage=storage)
        queue.update_settings(voice="alto")

        await queue.synthesize("hello")
        await queue.synthesize("bye", options={"voice": "bass"})

        assert engine.options == [{"voice": "alto"}, {"voice": "bass"}]
        assert self.make(FakeEngine(), storage=storage).voice == "alto"

    async def test_clearing_voice(self):
        storage = MemoryStorage({SettingsKey.PREFERRED_VOICE: '"alto"'})
        queue = self.make(FakeEngine(), storage=storage)
        queue.set_voice(None)
        assert queue.voice is None
        assert storage.get(SettingsKey.PREFERRED_VOICE) == '""'
