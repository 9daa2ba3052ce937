"""Tests for the bounded error log and its metrics."""

import pytest

from voicerecovery.classifier import classify
from voicerecovery.const import ErrorKind, Severity
from voicerecovery.store import ErrorStore


class TestErrorStore:
    def test_list_preserves_submission_order(self):
        store = ErrorStore()
        errors = [classify(f"error {i}") for i in range(7)]
        for error in errors:
            store.record(error)

        assert store.list() == errors
        assert store.metrics().total_errors == 7

    def test_capacity_drops_oldest(self):
        store = ErrorStore(capacity=3)
        errors = [classify(f"error {i}") for i in range(5)]
        for error in errors:
            store.record(error)

        assert store.list() == errors[2:]
        assert len(store) == 3
        assert store.metrics().total_errors == 5

    def test_metrics_by_kind_and_severity(self):
        store = ErrorStore()
        store.record(classify("timeout"))
        store.record(classify("websocket"))
        store.record(classify("unauthorized"))

        metrics = store.metrics()
        assert metrics.errors_by_kind[ErrorKind.CONNECTION_ERROR] == 2
        assert metrics.errors_by_kind[ErrorKind.AUTHENTICATION_ERROR] == 1
        assert metrics.errors_by_severity[Severity.HIGH] == 2
        assert metrics.errors_by_severity[Severity.CRITICAL] == 1

    def test_clear_twice_is_safe(self):
        store = ErrorStore()
        store.record(classify("timeout"))
        store.clear()
        assert store.list() == []
        store.clear()
        assert store.list() == []

    def test_clear_keeps_metrics(self):
        store = ErrorStore()
        store.record(classify("timeout"))
        store.clear()
        assert store.metrics().total_errors == 1

    def test_reset_metrics(self):
        store = ErrorStore()
        store.record(classify("timeout"))
        store.reset_metrics()
        metrics = store.metrics()
        assert metrics.total_errors == 0
        assert metrics.errors_by_kind == {}
        assert len(store) == 1

    def test_clear_by_kind(self):
        store = ErrorStore()
        tts = classify("tts broke")
        store.record(classify("timeout"))
        store.record(tts)
        store.clear(ErrorKind.CONNECTION_ERROR)
        assert store.list() == [tts]

    def test_list_by_kind(self):
        store = ErrorStore()
        store.record(classify("timeout"))
        store.record(classify("tts broke"))
        assert [e.kind for e in store.list(ErrorKind.TTS_ERROR)] == [ErrorKind.TTS_ERROR]

    def test_recent(self):
        store = ErrorStore()
        errors = [classify(str(i)) for i in range(5)]
        for error in errors:
            store.record(error)
        assert store.recent(2) == errors[-2:]
        assert store.recent(0) == []

    def test_metrics_snapshot_is_detached(self):
        store = ErrorStore()
        store.record(classify("timeout"))
        snapshot = store.metrics()
        store.record(classify("timeout"))
        assert snapshot.total_errors == 1

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ErrorStore(capacity=0)
