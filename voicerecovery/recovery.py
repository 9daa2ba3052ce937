"""Recovery plans and the handler registry.

Handlers are registered per ``ErrorKind``. On ``handle`` the registry walks
handlers for the error's kind from highest to lowest priority (registration
order among equals) and lets the first one whose ``can_handle`` accepts the
error build the plan. Only that handler runs. If it raises, or nobody
accepts, the built-in plan for the kind is returned instead.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .classifier import ClassifiedError
from .const import ErrorKind
from .logging import root_logger

logger = root_logger.getChild(__name__)


class RecoveryStep(BaseModel):
    action: str
    description: str
    auto_execute: bool = False
    priority: int = 0


class RecoveryPlan(BaseModel):
    steps: list[RecoveryStep] = Field(default_factory=list)
    auto_execute: bool = False
    estimated_time_ms: int | None = None
    user_action: str | None = None

    def auto_steps(self) -> list[RecoveryStep]:
        return sorted((step for step in self.steps if step.auto_execute), key=lambda step: step.priority)


@runtime_checkable
class ErrorHandler(Protocol):
    priority: int

    def can_handle(self, error: ClassifiedError) -> bool: ...

    def handle(self, error: ClassifiedError) -> RecoveryPlan | Awaitable[RecoveryPlan]: ...


class FunctionHandler:
    """ErrorHandler built from plain callables."""

    def __init__(
        self,
        handle: Callable[[ClassifiedError], RecoveryPlan | Awaitable[RecoveryPlan]],
        priority: int = 0,
        can_handle: Callable[[ClassifiedError], bool] | None = None,
        name: str | None = None,
    ):
        self._handle = handle
        self._can_handle = can_handle
        self.priority = priority
        self.name = name or getattr(handle, "__name__", self.__class__.__name__)

    def can_handle(self, error: ClassifiedError) -> bool:
        if self._can_handle is None:
            return True
        return self._can_handle(error)

    def handle(self, error: ClassifiedError) -> RecoveryPlan | Awaitable[RecoveryPlan]:
        return self._handle(error)

    def __repr__(self) -> str:
        return f"FunctionHandler({self.name!r}, priority={self.priority})"


def _step(action: str, description: str, auto: bool, priority: int) -> RecoveryStep:
    return RecoveryStep(action=action, description=description, auto_execute=auto, priority=priority)


def default_plan(error: ClassifiedError) -> RecoveryPlan:
    """Built-in plan per kind, used when no registered handler produces one."""
    match error.kind:
        case ErrorKind.CONNECTION_ERROR:
            return RecoveryPlan(
                steps=[
                    _step("retry_connection", "Attempting to reconnect to server", True, 1),
                    _step("check_network", "Checking network connectivity", True, 2),
                ],
                auto_execute=True,
                user_action="Please check your internet connection",
            )
        case ErrorKind.RATE_LIMIT_ERROR:
            return RecoveryPlan(
                steps=[_step("wait_backoff", "Waiting for rate limit reset", True, 1)],
                auto_execute=True,
                estimated_time_ms=30000,
                user_action="Please wait a moment before trying again",
            )
        case ErrorKind.ASR_ERROR:
            return RecoveryPlan(
                steps=[
                    _step("switch_asr_method", "Switching to alternative speech recognition", True, 1),
                    _step("request_permissions", "Requesting microphone permissions", False, 2),
                    _step("fallback_text", "Switching to text input", False, 3),
                ],
                auto_execute=True,
                estimated_time_ms=5000,
                user_action="Please allow microphone access or use text input",
            )
        case ErrorKind.AUTHENTICATION_ERROR:
            return RecoveryPlan(
                steps=[_step("reauthenticate", "Sign in again to continue", False, 1)],
                auto_execute=False,
                user_action="Please sign in again",
            )
        case ErrorKind.TTS_ERROR:
            return RecoveryPlan(
                steps=[
                    _step("switch_tts_method", "Switching to alternative text-to-speech", True, 1),
                    _step("disable_tts", "Disabling voice output", True, 2),
                ],
                auto_execute=True,
                estimated_time_ms=2000,
                user_action="Voice output disabled, text will be displayed instead",
            )
        case ErrorKind.LLM_ERROR:
            return RecoveryPlan(
                steps=[
                    _step("retry_llm", "Retrying AI request", True, 1),
                    _step("fallback_response", "Using fallback response", True, 2),
                ],
                auto_execute=True,
                estimated_time_ms=15000,
                user_action="AI service temporarily unavailable, please try again",
            )
        case _:
            return RecoveryPlan(
                steps=[
                    _step("log_error", "Logging error for investigation", True, 1),
                    _step("notify_user", "Notifying user of the issue", True, 2),
                ],
                auto_execute=True,
                estimated_time_ms=1000,
                user_action="An unexpected error occurred. Please try again or contact support.",
            )


class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[ErrorKind, list[ErrorHandler]] = {}

    def register(self, kind: ErrorKind, handler: ErrorHandler) -> None:
        handlers = self._handlers.setdefault(ErrorKind(kind), [])
        handlers.append(handler)
        # list.sort is stable: equal priorities keep registration order
        handlers.sort(key=lambda h: h.priority, reverse=True)

    def unregister(self, kind: ErrorKind, handler: ErrorHandler) -> None:
        handlers = self._handlers.get(ErrorKind(kind), [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, kind: ErrorKind) -> list[ErrorHandler]:
        return list(self._handlers.get(ErrorKind(kind), []))

    def clear(self) -> None:
        self._handlers.clear()

    async def handle(self, error: ClassifiedError) -> RecoveryPlan:
        for handler in self.handlers_for(error.kind):
            try:
                accepted = handler.can_handle(error)
            except Exception:
                logger.exception("can_handle failed for %r, using default plan", handler)
                return default_plan(error)
            if not accepted:
                continue

            try:
                plan = handler.handle(error)
                if inspect.isawaitable(plan):
                    plan = await plan
                if not isinstance(plan, RecoveryPlan):
                    raise TypeError(f"expected a RecoveryPlan, got {type(plan).__name__}")
            except Exception:
                logger.exception("Error handler %r failed on %s, using default plan", handler, error.id)
                return default_plan(error)
            logger.debug("Error %s (%s) handled by %r: %d steps", error.id, error.kind, handler, len(plan.steps))
            return plan

        return default_plan(error)
