from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Severity(Enum):
    CRITICAL = (4, "Critical")
    HIGH = (3, "High")
    MEDIUM = (2, "Medium")
    LOW = (1, "Low")
    INFO = (0, "Informational")

    def __init__(self, level: int, display_name: str) -> None:
        self.level = level
        self.display_name = display_name

    def __str__(self) -> str:
        return self.display_name

    @classmethod
    def parse(cls, value: str) -> Severity:
        candidate = value.strip()
        for member in cls:
            if candidate.upper() == member.name or candidate.lower() == member.display_name.lower():
                return member
        raise ValueError(f"Unknown severity: {value!r}")


class RequestStatus(Enum):
    NOT_REQUESTED = "Not Requested"
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed - Click to Retry"
    TIMEOUT = "Timeout - Click to Retry"
    RATE_LIMITED = "Rate Limited - Click to Retry"

    @property
    def display_name(self) -> str:
        return self.value

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def is_final(self) -> bool:
        return self in _FINAL

    @property
    def is_cancellable(self) -> bool:
        return self in (RequestStatus.PENDING, RequestStatus.IN_PROGRESS)


_RETRYABLE = frozenset({RequestStatus.FAILED, RequestStatus.TIMEOUT, RequestStatus.RATE_LIMITED})
_FINAL = _RETRYABLE | {RequestStatus.COMPLETED, RequestStatus.CANCELLED}


@dataclass(frozen=True, slots=True)
class Finding:
    """A single issue reported by the analyzer pipeline."""

    id: str
    title: str
    severity: Severity
    category: str
    file_path: str
    evidence: str
    line_number: int = -1
    description: str = ""
    confidence: float = 1.0
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", max(0.0, min(1.0, self.confidence)))

    def __str__(self) -> str:
        return f"[{self.severity}] {self.title} - {self.file_path} (confidence: {self.confidence:.2f})"
