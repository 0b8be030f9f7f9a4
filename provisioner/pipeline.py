from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ConfigurationError, LocalIOError, ProvisionError
from .models import RetryPolicy, RunMode, RunResult, StepOutcome, StepStatus
from .settings import ProvisionSettings
from .state import StateStore
from .utils import Sleeper, backoff_delay

_LOGGER = logging.getLogger(__name__)

_PROJECT_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_project_name(name: str) -> str:
    if not name or not _PROJECT_NAME.match(name) or name in {".", ".."}:
        raise ConfigurationError(
            f"Invalid project name {name!r}: use letters, digits, '.', '-' or '_'"
        )
    return name


@dataclass
class PipelineContext:
    """Values shared by the steps of a single run."""

    project_name: str
    workspace: Path
    settings: ProvisionSettings = field(default_factory=ProvisionSettings)
    values: Dict[str, Any] = field(default_factory=dict)
    previous: Dict[str, StepOutcome] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_project_name(self.project_name)
        self.workspace = Path(self.workspace).expanduser().resolve()

    @property
    def project_dir(self) -> Path:
        return self.workspace / self.project_name

    def previous_values(self, step_name: str) -> Dict[str, Any]:
        outcome = self.previous.get(step_name)
        if outcome is None or outcome.status not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            return {}
        return dict(outcome.details.get("values", {}))

    def require(self, key: str) -> Any:
        if key not in self.values:
            raise ProvisionError(f"No value for {key!r}; an earlier step did not produce it")
        return self.values[key]


class Step(ABC):
    """One unit of the provisioning sequence."""

    name: str = ""

    def __init__(self, *, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def is_satisfied(self, context: PipelineContext) -> bool:
        """Return True when the step's effect is already in place."""

    @abstractmethod
    def execute(self, context: PipelineContext) -> Optional[Mapping[str, Any]]:
        """Apply the step and return the values it produced for later steps."""

    def compensate(self, context: PipelineContext) -> None:
        raise NotImplementedError(f"Step {self.name} has no compensating action")

    @property
    def compensable(self) -> bool:
        return type(self).compensate is not Step.compensate

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class _StepFailed(Exception):
    def __init__(self, cause: ProvisionError, attempts: int) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.attempts = attempts


def _as_provision_error(exc: BaseException) -> ProvisionError:
    if isinstance(exc, ProvisionError):
        return exc
    if isinstance(exc, KeyboardInterrupt):
        error: ProvisionError = ProvisionError("Interrupted")
    else:
        error = LocalIOError(f"{type(exc).__name__}: {exc}")
    error.__cause__ = exc
    return error


class PipelineExecutor:
    """Runs steps in order, skipping satisfied ones and stopping at the first failure."""

    def __init__(
        self,
        steps: Iterable[Step],
        *,
        state: Optional[StateStore] = None,
        mode: RunMode = RunMode.RESUME,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.steps: List[Step] = list(steps)
        names = [step.name for step in self.steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Step names must be unique: {names}")
        self.state = state
        self.mode = RunMode(mode)
        self._sleep = sleep

    def run(self, context: PipelineContext) -> RunResult:
        if self.state is not None:
            context.previous = self.state.load_all()

        result = RunResult(success=False)
        executed: List[Step] = []
        for step in self.steps:
            attempts = 0
            try:
                if step.is_satisfied(context):
                    result.outcomes.append(self._skip(step, context))
                    result.skipped.append(step.name)
                    result.completed.append(step.name)
                    continue
                outcome = self._execute(step, context)
            except _StepFailed as failure:
                error, attempts = failure.cause, failure.attempts
            except (Exception, KeyboardInterrupt) as exc:
                error = _as_provision_error(exc)
            else:
                executed.append(step)
                result.outcomes.append(outcome)
                result.executed.append(step.name)
                result.completed.append(step.name)
                continue

            result.failed_step = step.name
            result.error = error
            result.outcomes.append(self._record_failure(step, error, attempts))
            _LOGGER.error(
                "Step %s failed: %s",
                step.name,
                error,
                extra={"event": "step_failed", "context": {"step": step.name, "attempts": attempts}},
            )
            if self.mode is RunMode.ROLLBACK:
                self._rollback(executed, context, result)
            return result

        result.success = True
        _LOGGER.info(
            "Provisioned %s",
            context.project_name,
            extra={
                "event": "run_completed",
                "context": {"executed": result.executed, "skipped": result.skipped},
            },
        )
        return result

    def status(self) -> Dict[str, str]:
        if self.state is None:
            return {}
        journal = self.state.status()
        return {step.name: journal[step.name] for step in self.steps if step.name in journal}

    def _skip(self, step: Step, context: PipelineContext) -> StepOutcome:
        restored = context.previous_values(step.name)
        for key, value in restored.items():
            context.values.setdefault(key, value)
        _LOGGER.info(
            "Skipping %s (already satisfied)",
            step.name,
            extra={"event": "step_skipped", "context": {"step": step.name}},
        )
        outcome = StepOutcome(step.name, StepStatus.SKIPPED, details={"values": restored})
        self._save(outcome)
        return outcome

    def _execute(self, step: Step, context: PipelineContext) -> StepOutcome:
        policy = step.retry_policy
        attempt = 0
        while True:
            attempt += 1
            _LOGGER.info(
                "Running %s",
                step.name,
                extra={"event": "step_started", "context": {"step": step.name, "attempt": attempt}},
            )
            try:
                produced = dict(step.execute(context) or {})
                break
            except (Exception, KeyboardInterrupt) as exc:
                error = _as_provision_error(exc)
                if not error.retryable or attempt >= policy.max_attempts:
                    raise _StepFailed(error, attempt) from exc
                delay = backoff_delay(policy.backoff, attempt)
                _LOGGER.warning(
                    "Step %s failed on attempt %d, retrying in %.1fs: %s",
                    step.name,
                    attempt,
                    delay,
                    error,
                    extra={"event": "step_retry", "context": {"step": step.name, "attempt": attempt}},
                )
                self._sleep(delay)

        context.values.update(produced)
        outcome = StepOutcome(step.name, StepStatus.COMPLETED, details={"values": produced}, attempts=attempt)
        try:
            self._save(outcome)
        except OSError as exc:
            raise _StepFailed(LocalIOError(f"Unable to record journal entry: {exc}"), attempt) from exc
        return outcome

    def _record_failure(self, step: Step, error: ProvisionError, attempts: int) -> StepOutcome:
        outcome = StepOutcome(step.name, StepStatus.FAILED, error=str(error), attempts=attempts)
        try:
            self._save(outcome)
        except OSError as exc:
            _LOGGER.warning(
                "Unable to record failure of %s: %s",
                step.name,
                exc,
                extra={"event": "journal_write_failed", "context": {"step": step.name}},
            )
        return outcome

    def _rollback(self, executed: List[Step], context: PipelineContext, result: RunResult) -> None:
        for step in reversed(executed):
            if not step.compensable:
                continue
            try:
                step.compensate(context)
                self._save(StepOutcome(step.name, StepStatus.COMPENSATED))
            except Exception as exc:  # noqa: BLE001
                result.compensation_errors[step.name] = str(exc)
                _LOGGER.error(
                    "Compensation for %s failed: %s",
                    step.name,
                    exc,
                    extra={"event": "compensation_failed", "context": {"step": step.name}},
                )
                continue
            result.compensated.append(step.name)
            if step.name in result.completed:
                result.completed.remove(step.name)
            _LOGGER.info(
                "Rolled back %s",
                step.name,
                extra={"event": "step_compensated", "context": {"step": step.name}},
            )

    def _save(self, outcome: StepOutcome) -> None:
        if self.state is not None:
            self.state.save(outcome)
