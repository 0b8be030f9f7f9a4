from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .models import StepOutcome
from .utils import dump_json

_LOGGER = logging.getLogger(__name__)

STATE_DIRNAME = ".provisioner"


@dataclass
class StateStore:
    """Journal of step outcomes for one project, one JSON file per step.

    The journal lives next to the project directory rather than inside it so
    that it is never committed with the generated sources.
    """

    workspace: Path
    project_name: str

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace)

    @property
    def state_dir(self) -> Path:
        return self.workspace / STATE_DIRNAME / "state" / self.project_name

    def step_output(self, step_name: str) -> Path:
        return self.state_dir / f"{step_name}.json"

    def load(self, step_name: str) -> Optional[StepOutcome]:
        path = self.step_output(step_name)
        if not path.exists():
            return None
        try:
            return StepOutcome.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, ValueError):
            _LOGGER.warning(
                "Ignoring unreadable journal entry %s",
                path,
                extra={"event": "journal_unreadable", "context": {"step": step_name}},
            )
            return None

    def load_all(self) -> Dict[str, StepOutcome]:
        outcomes: Dict[str, StepOutcome] = {}
        if not self.state_dir.exists():
            return outcomes
        for path in sorted(self.state_dir.glob("*.json")):
            outcome = self.load(path.stem)
            if outcome is not None:
                outcomes[outcome.name] = outcome
        return outcomes

    def save(self, outcome: StepOutcome) -> None:
        dump_json(self.step_output(outcome.name), outcome.to_dict())

    def status(self) -> Dict[str, str]:
        return {name: outcome.status.value for name, outcome in self.load_all().items()}
