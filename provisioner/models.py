from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    COMPENSATED = "compensated"


class RunMode(str, Enum):
    """What the executor does with completed steps once a later step fails."""

    RESUME = "resume"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class RetryPolicy:
    """Per-step retry configuration; only retryable errors are retried."""

    max_attempts: int = 1
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


def _utc_now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="seconds")


@dataclass
class StepOutcome:
    """Summary recorded for one step of one run."""

    name: str
    status: StepStatus
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0
    recorded_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.name,
            "status": self.status.value,
            "details": self.details,
            "error": self.error,
            "attempts": self.attempts,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepOutcome":
        if not isinstance(data, dict):
            raise ValueError(f"Step outcome must be a mapping, got {type(data).__name__}")
        if not isinstance(data.get("details", {}), dict):
            raise ValueError("Step outcome details must be a mapping")
        return cls(
            name=data.get("step", ""),
            status=StepStatus(data.get("status", StepStatus.FAILED.value)),
            details=data.get("details", {}),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
            recorded_at=data.get("recorded_at", ""),
        )


@dataclass
class RunResult:
    """Terminal outcome of a pipeline run."""

    success: bool
    completed: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None
    compensated: List[str] = field(default_factory=list)
    compensation_errors: Dict[str, str] = field(default_factory=dict)
    outcomes: List[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "completed": list(self.completed),
            "executed": list(self.executed),
            "skipped": list(self.skipped),
            "failed_step": self.failed_step,
            "error": str(self.error) if self.error is not None else None,
            "compensated": list(self.compensated),
            "compensation_errors": dict(self.compensation_errors),
        }
