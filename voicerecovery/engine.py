"""Error engine: the single entry point subsystems report failures into.

A report flows classifier -> store/metrics -> toast -> handler registry ->
recovery listeners, and finally auto-executes the plan's automatic steps
through executors registered per action name. Non-recoverable errors never
auto-execute anything.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from .classifier import TAXONOMY, ClassifiedError, classify
from .config import settings
from .const import ErrorKind, Severity, ToastType
from .errors import get_error_reporter, set_error_reporter
from .logging import root_logger
from .messages import error_title, localized_message
from .notifications import NotificationDispatcher, ToastAction, ToastNotification
from .recovery import ErrorHandler, HandlerRegistry, RecoveryPlan, RecoveryStep
from .settings import KeyValueStorage
from .store import ErrorStore, Metrics

logger = root_logger.getChild(__name__)

ErrorListener = Callable[[ClassifiedError], None]
RecoveryListener = Callable[[ClassifiedError, RecoveryPlan], None]
ActionExecutor = Callable[[ClassifiedError, RecoveryStep], Awaitable[Any] | Any]

_LOG_LEVELS = {
    Severity.LOW: "info",
    Severity.MEDIUM: "warning",
    Severity.HIGH: "error",
    Severity.CRITICAL: "critical",
}

_TOAST_TYPES = {
    Severity.LOW: ToastType.INFO,
    Severity.MEDIUM: ToastType.WARNING,
    Severity.HIGH: ToastType.ERROR,
    Severity.CRITICAL: ToastType.ERROR,
}


def _notify_all(listeners: list, *args: Any) -> None:
    for listener in list(listeners):
        try:
            listener(*args)
        except Exception:
            logger.exception("Listener %r failed", listener)


class ErrorEngine:
    def __init__(self, store: ErrorStore, registry: HandlerRegistry, dispatcher: NotificationDispatcher):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self._actions: dict[str, ActionExecutor] = {}
        self._error_listeners: list[ErrorListener] = []
        self._recovery_listeners: list[RecoveryListener] = []
        self._retry_listeners: list[ErrorListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._disposed = False

    @classmethod
    def create(
        cls,
        storage: KeyValueStorage | None = None,
        capacity: int = settings.ERROR_LOG_CAPACITY,
        max_visible: int = settings.TOAST_MAX_VISIBLE,
        install_reporter: bool = True,
    ) -> "ErrorEngine":
        engine = cls(ErrorStore(capacity), HandlerRegistry(), NotificationDispatcher(storage, max_visible))
        if install_reporter:
            set_error_reporter(engine.report_nowait)
        logger.debug("ErrorEngine created (capacity=%d, max_visible=%d)", capacity, max_visible)
        return engine

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if get_error_reporter() == self.report_nowait:
            set_error_reporter(None)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.dispatcher.dispose()
        self._error_listeners.clear()
        self._recovery_listeners.clear()
        self._retry_listeners.clear()
        self._actions.clear()

    def register_handler(self, kind: ErrorKind, handler: ErrorHandler) -> None:
        self.registry.register(kind, handler)

    def register_action(self, action: str, executor: ActionExecutor) -> None:
        """Executor run when an auto-executing plan contains ``action``."""
        self._actions[action] = executor

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return partial(self._unsubscribe, self._error_listeners, listener)

    def on_recovery(self, listener: RecoveryListener) -> Callable[[], None]:
        self._recovery_listeners.append(listener)
        return partial(self._unsubscribe, self._recovery_listeners, listener)

    def on_retry(self, listener: ErrorListener) -> Callable[[], None]:
        """Called when the user picks the "Retry" action on an error toast."""
        self._retry_listeners.append(listener)
        return partial(self._unsubscribe, self._retry_listeners, listener)

    @staticmethod
    def _unsubscribe(listeners: list, listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def record(
        self,
        raw: Any,
        context: dict[str, Any] | None = None,
        subsystem: str | None = None,
        notify: bool = True,
    ) -> ClassifiedError:
        """Classify, store and surface an error without building a plan."""
        error = classify(raw, context, subsystem)
        self.store.record(error)
        getattr(logger, _LOG_LEVELS[error.severity])(
            "%s [%s/%s] from %s: %s", error.id, error.kind, error.severity, subsystem or "app", error.message
        )
        _notify_all(self._error_listeners, error)
        if notify:
            self.show_error_toast(error)
        return error

    async def recover(self, error: ClassifiedError) -> RecoveryPlan:
        plan = await self.registry.handle(error)
        _notify_all(self._recovery_listeners, error, plan)
        if plan.auto_execute and TAXONOMY[error.kind].recoverable:
            await self.execute_plan(plan, error)
        return plan

    async def report(
        self, raw: Any, context: dict[str, Any] | None = None, subsystem: str | None = None
    ) -> RecoveryPlan:
        error = self.record(raw, context, subsystem)
        return await self.recover(error)

    def report_nowait(
        self, raw: Any, context: dict[str, Any] | None = None, subsystem: str | None = None
    ) -> ClassifiedError:
        """Record now, build and run the plan in the background when a loop is running."""
        error = self.record(raw, context, subsystem)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping recovery for %s", error.id)
            return error
        self._track(loop.create_task(self.recover(error)))
        return error

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def execute_plan(self, plan: RecoveryPlan, error: ClassifiedError) -> None:
        for step in plan.auto_steps():
            executor = self._actions.get(step.action)
            if executor is None:
                logger.debug("No executor registered for recovery step %s", step.action)
                continue
            logger.info("Executing recovery step %s for %s", step.action, error.id)
            try:
                result = executor(error, step)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Recovery step %s failed", step.action)

    def show_error_toast(self, error: ClassifiedError) -> ToastNotification | None:
        actions: list[ToastAction] = []
        if error.retryable:
            actions.append(ToastAction(label="Retry", action=partial(self._request_retry, error), primary=True))
        elif error.recoverable:
            actions.append(ToastAction(label="Recover", action=partial(self._request_recovery, error)))

        return self.dispatcher.notify(
            _TOAST_TYPES[error.severity],
            error_title(error.kind),
            localized_message(error),
            actions=actions,
            persistent=error.severity == Severity.CRITICAL,
        )

    def _request_retry(self, error: ClassifiedError) -> None:
        logger.info("Retry requested for %s", error.id)
        _notify_all(self._retry_listeners, error)

    def _request_recovery(self, error: ClassifiedError) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Cannot run recovery for %s without an event loop", error.id)
            return
        self._track(loop.create_task(self.recover(error)))

    def errors(self, kind: ErrorKind | None = None) -> list[ClassifiedError]:
        return self.store.list(kind)

    def clear_errors(self, kind: ErrorKind | None = None) -> None:
        self.store.clear(kind)

    def metrics(self) -> Metrics:
        return self.store.metrics()
