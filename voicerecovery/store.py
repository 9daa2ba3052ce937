from __future__ import annotations

from collections import Counter, deque

from pydantic import BaseModel, Field

from .classifier import ClassifiedError
from .const import ErrorKind, Severity
from .logging import root_logger

logger = root_logger.getChild(__name__)


class Metrics(BaseModel):
    total_errors: int = 0
    errors_by_kind: dict[ErrorKind, int] = Field(default_factory=dict)
    errors_by_severity: dict[Severity, int] = Field(default_factory=dict)


class ErrorStore:
    """Bounded log of classified errors plus lifetime counters.

    ``clear`` only empties the log. Counters are cumulative and are reset by
    ``reset_metrics`` alone.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._log: deque[ClassifiedError] = deque(maxlen=capacity)
        self._total = 0
        self._by_kind: Counter[ErrorKind] = Counter()
        self._by_severity: Counter[Severity] = Counter()

    def record(self, error: ClassifiedError) -> None:
        self._log.append(error)
        self._total += 1
        self._by_kind[error.kind] += 1
        self._by_severity[error.severity] += 1
        logger.debug("Recorded %s %s/%s: %s", error.id, error.kind, error.severity, error.message)

    def list(self, kind: ErrorKind | None = None) -> list[ClassifiedError]:
        if kind is None:
            return list(self._log)
        return [error for error in self._log if error.kind == kind]

    def recent(self, count: int = 10) -> list[ClassifiedError]:
        if count <= 0:
            return []
        return list(self._log)[-count:]

    def clear(self, kind: ErrorKind | None = None) -> None:
        if kind is None:
            self._log.clear()
            return
        kept = [error for error in self._log if error.kind != kind]
        self._log.clear()
        self._log.extend(kept)

    def metrics(self) -> Metrics:
        return Metrics(
            total_errors=self._total,
            errors_by_kind=dict(self._by_kind),
            errors_by_severity=dict(self._by_severity),
        )

    def reset_metrics(self) -> None:
        self._total = 0
        self._by_kind.clear()
        self._by_severity.clear()

    def __len__(self) -> int:
        return len(self._log)
