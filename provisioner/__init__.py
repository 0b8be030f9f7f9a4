"""Idempotent provisioning of edge-worker projects: scaffold, publish, deploy."""

from .models import RunMode, RunResult, StepOutcome, StepStatus
from .pipeline import PipelineContext, PipelineExecutor, Step
from .run import provision
from .settings import Credentials, ProvisionSettings

__all__ = [
    "Credentials",
    "PipelineContext",
    "PipelineExecutor",
    "ProvisionSettings",
    "RunMode",
    "RunResult",
    "Step",
    "StepOutcome",
    "StepStatus",
    "provision",
]
