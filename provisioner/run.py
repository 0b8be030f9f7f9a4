from __future__ import annotations

import argparse
import dataclasses
import datetime as _dt
import json
import sys
import time
from pathlib import Path
from typing import Callable, Optional

from .errors import ConfigurationError
from .github import GitHubClient
from .logging_setup import setup_logging
from .models import RunMode, RunResult
from .pipeline import PipelineContext, PipelineExecutor, validate_project_name
from .settings import Credentials, ProvisionSettings, load_environment
from .state import StateStore
from .steps import STEP_ORDER, build_steps
from .utils import CommandRunner, Sleeper, run_command


def provision(
    project_name: str,
    credentials: Credentials,
    *,
    settings: Optional[ProvisionSettings] = None,
    workspace: str | Path = ".",
    client: Optional[GitHubClient] = None,
    runner: CommandRunner = run_command,
    sleep: Sleeper = time.sleep,
    today: Callable[[], _dt.date] = _dt.date.today,
) -> RunResult:
    """Scaffold, commit, publish and deploy one worker project."""

    settings = settings or ProvisionSettings()
    context = PipelineContext(project_name=project_name, workspace=Path(workspace), settings=settings)
    state = StateStore(context.workspace, project_name)

    owns_client = client is None
    if client is None:
        client = GitHubClient(
            credentials.github_token,
            api_url=settings.api_url,
            timeout=settings.request_timeout,
        )
    try:
        steps = build_steps(settings, credentials, client, runner=runner, today=today)
        executor = PipelineExecutor(steps, state=state, mode=settings.mode, sleep=sleep)
        return executor.run(context)
    finally:
        if owns_client:
            client.close()


def journal_status(project_name: str, workspace: str | Path = ".") -> dict:
    journal = StateStore(Path(workspace).expanduser().resolve(), project_name).status()
    return {name: journal[name] for name in STEP_ORDER if name in journal}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scaffold a Hono edge worker, push it to GitHub and deploy it with wrangler."
    )
    parser.add_argument("project_name", help="Name of the project, repository and worker.")
    parser.add_argument(
        "--workspace",
        default=".",
        help="Directory in which the project directory and the run journal are created.",
    )
    parser.add_argument("--config", help="Optional JSON or YAML settings file.")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in RunMode],
        help="On failure, keep completed work for the next run (resume) or undo it (rollback).",
    )
    parser.add_argument("--env-file", help="Read credentials from this .env file instead of ./.env.")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ...).")
    parser.add_argument("--log-format", choices=("text", "json"), default="text")
    parser.add_argument("--status", action="store_true", help="Show the journalled step status and exit.")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    try:
        validate_project_name(args.project_name)
        if args.status:
            print(json.dumps(journal_status(args.project_name, args.workspace), indent=2))
            return 0
        settings = ProvisionSettings.from_file(args.config) if args.config else ProvisionSettings()
        if args.mode:
            settings = dataclasses.replace(settings, mode=RunMode(args.mode))
        load_environment(args.env_file)
        credentials = Credentials.from_env()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    result = provision(args.project_name, credentials, settings=settings, workspace=args.workspace)
    print(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        print(f"Step '{result.failed_step}' failed: {result.error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
