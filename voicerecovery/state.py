# Copyright (c) 2024-2026 Lukasz Jachym <lukasz.jachym@gmail.com>
# SPDX-License-Identifier: GPL-3.0-or-later

from collections.abc import Callable
from enum import Enum, auto

from .errors import TransitionError
from .logging import root_logger

StateChangeCallback = Callable[["RecordingState", "RecordingState"], None]

logger = root_logger.getChild(__name__)


class RecordingState(Enum):
    IDLE = auto()
    RECORDING = auto()
    RESOLVING = auto()


class RecordingEvent(Enum):
    START_RECORDING = auto()
    STOP_RECORDING = auto()
    RESOLVED = auto()
    ABORT = auto()


class RecordingStateMachine:
    def __init__(self):
        self._state: RecordingState = RecordingState.IDLE
        self._listeners: list[StateChangeCallback] = []

    def add_listener(self, callback: StateChangeCallback) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: StateChangeCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify_listeners(self, old_state: RecordingState, new_state: RecordingState) -> None:
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception("State listener failed")

    def transition(self, event: RecordingEvent) -> RecordingState:
        old_state = self._state
        match self._state, event:
            case RecordingState.IDLE, RecordingEvent.START_RECORDING:
                self._state = RecordingState.RECORDING
            case RecordingState.RECORDING, RecordingEvent.STOP_RECORDING:
                self._state = RecordingState.RESOLVING
            case RecordingState.RESOLVING, RecordingEvent.RESOLVED:
                self._state = RecordingState.IDLE
            case RecordingState.RECORDING | RecordingState.RESOLVING, RecordingEvent.ABORT:
                self._state = RecordingState.IDLE
            # edge cases
            case RecordingState.IDLE, RecordingEvent.ABORT | RecordingEvent.RESOLVED:
                logger.debug("Ignoring %s while idle", event)
            case _:
                msg = f"Unknown transition from: {self._state} on event: {event}"
                raise TransitionError(msg)
        if old_state != self._state:
            self._notify_listeners(old_state, self._state)
        return self._state

    @property
    def current_state(self) -> RecordingState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == RecordingState.RECORDING

    @property
    def is_active(self) -> bool:
        return self._state != RecordingState.IDLE
