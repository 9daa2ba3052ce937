"""Toast notification dispatcher.

Keeps the list of visible toasts: at most ``max_visible`` entries, sorted by
type priority (newest first among equals), one entry per type+title, and
nothing from a muted type+title. Toasts that are not persistent close
themselves after ``duration_ms``; ``pause``/``resume`` freeze the countdown
while the pointer hovers over a toast or it has focus.
"""

import asyncio
import itertools
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from .const import TOAST_DEFAULT_DURATION_MS, TOAST_PRIORITY, SettingsKey, ToastType
from .logging import root_logger
from .settings import KeyValueStorage, MemoryStorage, SettingsReader

logger = root_logger.getChild(__name__)

ToastCallback = Callable[["ToastNotification"], None]
ChangeCallback = Callable[[list["ToastNotification"]], None]


def _new_toast_id() -> str:
    return f"toast_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class ToastAction(BaseModel):
    label: str
    action: Callable[[], Any]
    primary: bool = False
    keep_open: bool = False


class ToastNotification(BaseModel):
    id: str = Field(default_factory=_new_toast_id)
    type: ToastType
    title: str
    message: str
    actions: list[ToastAction] = Field(default_factory=list)
    duration_ms: int | None = None
    persistent: bool = False
    timestamp_ms: int = Field(default_factory=lambda: int(time.time() * 1000))

    @property
    def key(self) -> str:
        return toast_key(self.type, self.title)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe view for the rendering layer (action callbacks become labels)."""
        payload = self.model_dump(mode="json", exclude={"actions"})
        payload["actions"] = [
            {"label": action.label, "primary": action.primary, "keep_open": action.keep_open}
            for action in self.actions
        ]
        return payload


def toast_key(toast_type: ToastType | str, title: str) -> str:
    return f"{ToastType(toast_type).value}:{title}"


@dataclass
class _AutoClose:
    remaining: float
    deadline: float = 0.0
    handle: asyncio.TimerHandle | None = None


class NotificationDispatcher:
    def __init__(self, storage: KeyValueStorage | None = None, max_visible: int = 5):
        self.max_visible = max_visible
        self._settings = SettingsReader(storage if storage is not None else MemoryStorage())
        self._muted: set[str] = self._load_muted()
        self._visible: list[ToastNotification] = []
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._timers: dict[str, _AutoClose] = {}
        self._subscribers: list[ToastCallback] = []
        self._change_subscribers: list[ChangeCallback] = []

    def _load_muted(self) -> set[str]:
        stored = self._settings.get_key(SettingsKey.MUTED_TOASTS, [])
        return {key for key in stored if isinstance(key, str)}

    def _persist_muted(self) -> None:
        self._settings.set_json(SettingsKey.MUTED_TOASTS, sorted(self._muted))

    @property
    def muted(self) -> frozenset[str]:
        return frozenset(self._muted)

    def visible(self) -> list[ToastNotification]:
        return list(self._visible)

    def get(self, toast_id: str) -> ToastNotification | None:
        for toast in self._visible:
            if toast.id == toast_id:
                return toast
        return None

    def subscribe(self, callback: ToastCallback) -> Callable[[], None]:
        """Receive every toast that becomes visible. Returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def subscribe_changes(self, callback: ChangeCallback) -> Callable[[], None]:
        """Receive the full visible list after every change."""
        self._change_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._change_subscribers:
                self._change_subscribers.remove(callback)

        return unsubscribe

    def notify(
        self,
        toast_type: ToastType | str,
        title: str,
        message: str,
        actions: list[ToastAction] | None = None,
        duration_ms: int | None = None,
        persistent: bool = False,
    ) -> ToastNotification | None:
        toast_type = ToastType(toast_type)
        if duration_ms is None and not persistent:
            duration_ms = TOAST_DEFAULT_DURATION_MS[toast_type]
        toast = ToastNotification(
            type=toast_type,
            title=title,
            message=message,
            actions=actions or [],
            duration_ms=None if persistent else duration_ms,
            persistent=persistent,
        )
        return self.emit(toast)

    def emit(self, toast: ToastNotification) -> ToastNotification | None:
        """Show ``toast``. Returns it, or None if it was muted or ranked out."""
        if toast.key in self._muted:
            logger.debug("Dropping muted toast %s", toast.key)
            return None

        for existing in [t for t in self._visible if t.key == toast.key]:
            self._remove(existing.id)

        self._visible.append(toast)
        self._order[toast.id] = next(self._sequence)
        self._visible.sort(key=lambda t: (-TOAST_PRIORITY[t.type], -self._order[t.id]))
        for dropped in self._visible[self.max_visible :]:
            self._remove(dropped.id)

        if self.get(toast.id) is None:
            self._notify_changes()
            return None

        if not toast.persistent and toast.duration_ms:
            self._schedule(toast.id, toast.duration_ms / 1000)

        for callback in list(self._subscribers):
            try:
                callback(toast)
            except Exception:
                logger.exception("Toast subscriber failed")
        self._notify_changes()
        return toast

    def _notify_changes(self) -> None:
        snapshot = self.visible()
        for callback in list(self._change_subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Toast change subscriber failed")

    def _remove(self, toast_id: str) -> ToastNotification | None:
        timer = self._timers.pop(toast_id, None)
        if timer and timer.handle:
            timer.handle.cancel()
        self._order.pop(toast_id, None)
        for index, toast in enumerate(self._visible):
            if toast.id == toast_id:
                return self._visible.pop(index)
        return None

    def _schedule(self, toast_id: str, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, toast %s will not auto-close", toast_id)
            return
        timer = self._timers.setdefault(toast_id, _AutoClose(remaining=delay))
        timer.remaining = delay
        timer.deadline = loop.time() + delay
        timer.handle = loop.call_later(delay, self._expire, toast_id)

    def _expire(self, toast_id: str) -> None:
        if self._remove(toast_id) is not None:
            logger.debug("Toast %s auto-closed", toast_id)
            self._notify_changes()

    def pause(self, toast_id: str) -> bool:
        """Freeze the auto-close countdown (pointer hover or focus)."""
        timer = self._timers.get(toast_id)
        if timer is None or timer.handle is None:
            return False
        loop = asyncio.get_running_loop()
        timer.handle.cancel()
        timer.handle = None
        timer.remaining = max(0.0, timer.deadline - loop.time())
        return True

    def resume(self, toast_id: str) -> bool:
        """Restart a paused countdown with the time that was left."""
        timer = self._timers.get(toast_id)
        if timer is None or timer.handle is not None:
            return False
        self._schedule(toast_id, timer.remaining)
        return True

    def dismiss(self, toast_id: str) -> bool:
        if self._remove(toast_id) is None:
            return False
        self._notify_changes()
        return True

    def dismiss_permanently(self, toast_id: str) -> bool:
        """Dismiss and mute the toast's type+title until un-muted."""
        toast = self.get(toast_id)
        if toast is None:
            return False
        self._muted.add(toast.key)
        self._persist_muted()
        logger.info("Muted toast category %s", toast.key)
        return self.dismiss(toast_id)

    def unmute(self, toast_type: ToastType | str, title: str) -> bool:
        key = toast_key(toast_type, title)
        if key not in self._muted:
            return False
        self._muted.discard(key)
        self._persist_muted()
        return True

    def clear_muted(self) -> None:
        self._muted.clear()
        self._persist_muted()

    def invoke_action(self, toast_id: str, label: str) -> bool:
        """Run a toast action; the toast closes unless the action keeps it open."""
        toast = self.get(toast_id)
        if toast is None:
            return False
        for action in toast.actions:
            if action.label != label:
                continue
            try:
                action.action()
            except Exception:
                logger.exception("Toast action %r failed", label)
            if not action.keep_open:
                self.dismiss(toast_id)
            return True
        return False

    def dispose(self) -> None:
        for timer in self._timers.values():
            if timer.handle:
                timer.handle.cancel()
        self._timers.clear()
        self._visible.clear()
        self._order.clear()
        self._subscribers.clear()
        self._change_subscribers.clear()
