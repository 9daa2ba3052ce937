"""Tests for the ErrorEngine facade."""

import asyncio
import unittest

from voicerecovery.classifier import ClassifiedError, classify
from voicerecovery.const import ErrorKind, Severity, ToastType
from voicerecovery.engine import ErrorEngine
from voicerecovery.errors import MicrophoneAccessError, emit_error, get_error_reporter
from voicerecovery.recovery import FunctionHandler, RecoveryPlan, RecoveryStep
from voicerecovery.settings import MemoryStorage


class TestErrorEngine(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.engine = ErrorEngine.create(storage=MemoryStorage())

    def tearDown(self):
        self.engine.dispose()

    async def test_report_records_and_returns_plan(self):
        plan = await self.engine.report("WebSocket connection failed", subsystem="connection")

        errors = self.engine.errors()
        assert len(errors) == 1
        assert errors[0].kind == ErrorKind.CONNECTION_ERROR
        assert errors[0].originating_subsystem == "connection"
        assert [s.action for s in plan.steps] == ["retry_connection", "check_network"]
        assert self.engine.metrics().total_errors == 1

    async def test_report_shows_localized_toast(self):
        await self.engine.report("WebSocket connection failed")

        toasts = self.engine.dispatcher.visible()
        assert len(toasts) == 1
        assert toasts[0].type == ToastType.ERROR
        assert toasts[0].title == "Connection Error"
        assert "WebSocket connection failed" not in toasts[0].message
        assert [a.label for a in toasts[0].actions] == ["Retry"]

    async def test_critical_error_toast_is_persistent(self):
        await self.engine.report("Unauthorized access")

        toast = self.engine.dispatcher.visible()[0]
        assert toast.persistent is True
        assert toast.duration_ms is None
        assert toast.actions == []

    async def test_low_severity_toast_is_info(self):
        await self.engine.report("tts voice missing")
        assert self.engine.dispatcher.visible()[0].type == ToastType.INFO

    async def test_auto_steps_executed(self):
        executed = []
        self.engine.register_action("retry_connection", lambda error, step: executed.append(step.action))

        async def check(error, step):
            executed.append(step.action)

        self.engine.register_action("check_network", check)
        await self.engine.report("network down")

        assert executed == ["retry_connection", "check_network"]

    async def test_non_recoverable_never_auto_executes(self):
        executed = []
        self.engine.register_action("reauthenticate", lambda error, step: executed.append(step.action))

        def auto_plan(error):
            return RecoveryPlan(
                steps=[RecoveryStep(action="reauthenticate", description="", auto_execute=True)], auto_execute=True
            )

        self.engine.register_handler(ErrorKind.AUTHENTICATION_ERROR, FunctionHandler(auto_plan))
        await self.engine.report("unauthorized")

        assert executed == []

    async def test_structured_auth_error_never_auto_executes(self):
        executed = []
        self.engine.register_action("retry_login", lambda error, step: executed.append(step.action))
        self.engine.register_handler(
            ErrorKind.AUTHENTICATION_ERROR,
            FunctionHandler(
                lambda e: RecoveryPlan(
                    steps=[RecoveryStep(action="retry_login", description="", auto_execute=True)], auto_execute=True
                )
            ),
        )
        await self.engine.report(
            {"kind": "AUTHENTICATION_ERROR", "message": "token expired", "recoverable": True, "retryable": True}
        )

        assert executed == []
        assert self.engine.errors()[0].recoverable is False

    async def test_recover_checks_kind_not_record_flags(self):
        executed = []
        self.engine.register_action("retry_login", lambda error, step: executed.append(step.action))
        self.engine.register_handler(
            ErrorKind.AUTHENTICATION_ERROR,
            FunctionHandler(
                lambda e: RecoveryPlan(
                    steps=[RecoveryStep(action="retry_login", description="", auto_execute=True)], auto_execute=True
                )
            ),
        )
        forged = ClassifiedError(
            kind=ErrorKind.AUTHENTICATION_ERROR,
            severity=Severity.CRITICAL,
            message="token expired",
            recoverable=True,
            retryable=True,
        )
        await self.engine.recover(forged)

        assert executed == []

    async def test_handler_returning_none_falls_back_to_default_plan(self):
        self.engine.register_handler(ErrorKind.LLM_ERROR, FunctionHandler(lambda e: None))
        plan = await self.engine.report({"kind": "LLM_ERROR", "message": "model overloaded"})
        assert plan.steps
        assert len(self.engine.errors()) == 1

    async def test_structured_error_with_string_context(self):
        plan = await self.engine.report({"kind": "LLM_ERROR", "message": "x", "context": "oops"})
        assert plan.steps
        assert self.engine.errors()[0].context == {}

    async def test_failing_executor_is_absorbed(self):
        executed = []

        def broken(error, step):
            raise RuntimeError("executor failed")

        self.engine.register_action("retry_connection", broken)
        self.engine.register_action("check_network", lambda error, step: executed.append(step.action))
        await self.engine.report("timeout")

        assert executed == ["check_network"]

    async def test_custom_handler_used(self):
        self.engine.register_handler(
            ErrorKind.ASR_ERROR,
            FunctionHandler(lambda e: RecoveryPlan(steps=[RecoveryStep(action="custom", description="")]), priority=10),
        )
        plan = await self.engine.report(MicrophoneAccessError("denied"))
        assert plan.steps[0].action == "custom"

    async def test_listeners(self):
        errors, plans = [], []
        unsubscribe_error = self.engine.on_error(errors.append)
        self.engine.on_recovery(lambda error, plan: plans.append(plan))

        await self.engine.report("timeout")
        unsubscribe_error()
        await self.engine.report("timeout")

        assert len(errors) == 1
        assert len(plans) == 2

    async def test_failing_listener_does_not_break_report(self):
        def broken(error):
            raise RuntimeError("listener failed")

        self.engine.on_error(broken)
        plan = await self.engine.report("timeout")
        assert plan.steps

    async def test_contextvar_reporter_records(self):
        plans = []
        self.engine.on_recovery(lambda error, plan: plans.append(plan))

        emit_error(MicrophoneAccessError("permission denied"), subsystem="asr")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert self.engine.errors()[0].kind == ErrorKind.ASR_ERROR
        assert len(plans) == 1

    async def test_retry_action_notifies_retry_listeners(self):
        retried = []
        self.engine.on_retry(retried.append)
        await self.engine.report("timeout")

        toast = self.engine.dispatcher.visible()[0]
        self.engine.dispatcher.invoke_action(toast.id, "Retry")

        assert retried == self.engine.errors()

    async def test_record_without_toast(self):
        error = self.engine.record(classify("timeout"), notify=False)
        assert self.engine.dispatcher.visible() == []
        assert self.engine.errors() == [error]

    async def test_clear_errors_twice(self):
        await self.engine.report("timeout")
        self.engine.clear_errors()
        assert self.engine.errors() == []
        self.engine.clear_errors()
        assert self.engine.errors() == []
        assert self.engine.metrics().total_errors == 1


class TestEngineLifecycle:
    def test_create_installs_reporter_and_dispose_removes_it(self):
        engine = ErrorEngine.create()
        assert get_error_reporter() == engine.report_nowait
        engine.dispose()
        assert get_error_reporter() is None

    def test_dispose_is_idempotent(self):
        engine = ErrorEngine.create(install_reporter=False)
        engine.dispose()
        engine.dispose()

    def test_engines_are_independent(self):
        first = ErrorEngine.create(install_reporter=False)
        second = ErrorEngine.create(install_reporter=False)
        first.record("timeout")
        assert second.errors() == []
        assert second.metrics().total_errors == 0

    def test_report_nowait_without_loop(self):
        engine = ErrorEngine.create(install_reporter=False)
        error = engine.report_nowait("timeout")
        assert error.severity == Severity.HIGH
        assert engine.errors() == [error]
