from __future__ import annotations

import base64
import datetime as _dt
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import ConfigurationError, ExternalProcessError, LocalIOError
from .github import GitHubClient
from .models import RetryPolicy
from .pipeline import PipelineContext, Step
from .settings import Credentials, ProvisionSettings
from .templates import (
    DEPLOY_CONFIG,
    ENTRYPOINT,
    GITIGNORE,
    LOCKFILE,
    MANIFEST,
    render_deploy_config,
    render_entrypoint,
    render_gitignore,
    render_manifest,
)
from .utils import CommandRunner, ensure_directory, remove_file, run_command, sha256_file, sha256_text, write_text

try:  # pragma: no cover - tomllib is stdlib from 3.11 onwards
    import tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - fallback for 3.10
    import tomli as tomllib  # type: ignore

_LOGGER = logging.getLogger(__name__)

_WORKERS_URL = re.compile(r"https://[\w.-]+\.workers\.dev\S*")


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise LocalIOError(f"Unable to remove {path}: {exc}") from exc


def git_auth_env(credentials: Credentials) -> Dict[str, str]:
    """Per-process git configuration carrying the source-host credentials.

    Keeps the token out of argv, out of .git/config and out of the remote URL.
    """

    basic = base64.b64encode(f"{credentials.github_username}:{credentials.github_token}".encode()).decode()
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
        "GIT_TERMINAL_PROMPT": "0",
    }


class CreateDirectoryStep(Step):
    name = "create-directory"

    def is_satisfied(self, context: PipelineContext) -> bool:
        path = context.project_dir
        if path.exists() and not path.is_dir():
            raise LocalIOError(f"{path} exists and is not a directory")
        return path.is_dir() and any(path.iterdir())

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        ensure_directory(context.project_dir)
        return {"project_dir": str(context.project_dir)}

    def compensate(self, context: PipelineContext) -> None:
        _remove_tree(context.project_dir)


class InitManifestStep(Step):
    name = "init-manifest"

    def is_satisfied(self, context: PipelineContext) -> bool:
        return (context.project_dir / MANIFEST).is_file()

    def execute(self, context: PipelineContext) -> None:
        write_text(context.project_dir / MANIFEST, render_manifest(context.project_name))

    def compensate(self, context: PipelineContext) -> None:
        remove_file(context.project_dir / MANIFEST)


class InstallDependencyStep(Step):
    name = "install-dependency"

    def __init__(self, dependency: str, *, npm_command: Sequence[str] = ("npm",), runner: CommandRunner = run_command) -> None:
        super().__init__()
        self.dependency = dependency
        self.npm_command = list(npm_command)
        self.runner = runner

    def is_satisfied(self, context: PipelineContext) -> bool:
        manifest_path = context.project_dir / MANIFEST
        if not manifest_path.is_file() or not (context.project_dir / LOCKFILE).is_file():
            return False
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise LocalIOError(f"{manifest_path} is not valid JSON: {exc}") from exc
        return self.dependency in (manifest.get("dependencies") or {})

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        self.runner([*self.npm_command, "install", self.dependency], cwd=context.project_dir)
        return {"dependency": self.dependency}


class WriteEntrypointStep(Step):
    name = "write-entrypoint"

    def is_satisfied(self, context: PipelineContext) -> bool:
        path = context.project_dir / ENTRYPOINT
        if not path.is_file():
            return False
        return sha256_file(path) == sha256_text(render_entrypoint(context.project_name))

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        content = render_entrypoint(context.project_name)
        write_text(context.project_dir / ENTRYPOINT, content)
        return {"entrypoint_sha256": sha256_text(content)}

    def compensate(self, context: PipelineContext) -> None:
        remove_file(context.project_dir / ENTRYPOINT)


class WriteDeployConfigStep(Step):
    name = "write-deploy-config"

    def __init__(self, account_id: str, *, today: Callable[[], _dt.date] = _dt.date.today) -> None:
        super().__init__()
        self.account_id = account_id
        self.today = today

    def is_satisfied(self, context: PipelineContext) -> bool:
        path = context.project_dir / DEPLOY_CONFIG
        if not path.is_file():
            return False
        try:
            tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError:
            _LOGGER.warning(
                "Rewriting unparseable %s",
                path,
                extra={"event": "deploy_config_invalid", "context": {"path": str(path)}},
            )
            return False
        return True

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        if not self.account_id:
            raise ConfigurationError("An edge platform account id is required to write the deployment config")
        day = self.today()
        write_text(
            context.project_dir / DEPLOY_CONFIG,
            render_deploy_config(context.project_name, self.account_id, day),
        )
        return {"compatibility_date": day.isoformat()}

    def compensate(self, context: PipelineContext) -> None:
        remove_file(context.project_dir / DEPLOY_CONFIG)


class _GitStep(Step):
    def __init__(
        self,
        *,
        git_command: Sequence[str] = ("git",),
        runner: CommandRunner = run_command,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(retry_policy=retry_policy)
        self.git_command = list(git_command)
        self.runner = runner

    def _git(self, context: PipelineContext, *args: str, env: Optional[Mapping[str, str]] = None, check: bool = True):
        return self.runner([*self.git_command, *args], cwd=context.project_dir, env=env, check=check)

    def _head(self, context: PipelineContext) -> Optional[str]:
        result = self._git(context, "rev-parse", "--verify", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None


class InitGitStep(_GitStep):
    name = "init-git"

    def __init__(
        self,
        *,
        branch: str,
        message: str,
        author_name: str,
        author_email: str,
        git_command: Sequence[str] = ("git",),
        runner: CommandRunner = run_command,
    ) -> None:
        super().__init__(git_command=git_command, runner=runner)
        self.branch = branch
        self.message = message
        self.author_name = author_name
        self.author_email = author_email

    def is_satisfied(self, context: PipelineContext) -> bool:
        if not (context.project_dir / ".git").exists():
            return False
        head = self._head(context)
        if head is None:
            return False
        current = self._git(context, "rev-parse", "--abbrev-ref", "HEAD", check=False)
        if current.returncode != 0 or current.stdout.strip() != self.branch:
            return False
        status = self._git(context, "status", "--porcelain", check=False)
        if status.returncode != 0 or status.stdout.strip():
            return False
        context.values["head_commit"] = head
        return True

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        gitignore = context.project_dir / GITIGNORE
        if not gitignore.exists():
            write_text(gitignore, render_gitignore())

        self._git(context, "init")
        self._git(context, "add", ".")
        status = self._git(context, "status", "--porcelain")
        if status.stdout.strip():
            try:
                self._git(
                    context,
                    "-c",
                    f"user.name={self.author_name}",
                    "-c",
                    f"user.email={self.author_email}",
                    "commit",
                    "-m",
                    self.message,
                )
            except ExternalProcessError as exc:
                if "nothing to commit" not in exc.stdout + exc.stderr:
                    raise
        head = self._git(context, "rev-parse", "--verify", "HEAD").stdout.strip()
        self._git(context, "branch", "-M", self.branch)
        return {"head_commit": head, "branch": self.branch}

    def compensate(self, context: PipelineContext) -> None:
        _remove_tree(context.project_dir / ".git")


class CreateRemoteStep(Step):
    name = "create-remote"

    def __init__(
        self,
        client: GitHubClient,
        *,
        owner: str,
        private: bool = True,
        organization: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(retry_policy=retry_policy)
        self.client = client
        self.owner = owner
        self.private = private
        self.organization = organization

    def is_satisfied(self, context: PipelineContext) -> bool:
        repository = self.client.get_repository(self.owner, context.project_name)
        if repository is None:
            return False
        context.values["clone_url"] = repository.clone_url
        return True

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        repository = self.client.create_repository(
            context.project_name,
            private=self.private,
            organization=self.organization,
        )
        return {"clone_url": repository.clone_url, "repository": f"{repository.owner}/{repository.name}"}

    def compensate(self, context: PipelineContext) -> None:
        self.client.delete_repository(self.owner, context.project_name)


class PushStep(_GitStep):
    name = "push"

    def __init__(
        self,
        credentials: Credentials,
        *,
        branch: str,
        git_command: Sequence[str] = ("git",),
        runner: CommandRunner = run_command,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(git_command=git_command, runner=runner, retry_policy=retry_policy)
        self.credentials = credentials
        self.branch = branch

    def is_satisfied(self, context: PipelineContext) -> bool:
        clone_url = context.values.get("clone_url")
        if not clone_url:
            return False
        head = self._head(context)
        if head is None:
            return False
        result = self._git(
            context,
            "ls-remote",
            clone_url,
            f"refs/heads/{self.branch}",
            env=git_auth_env(self.credentials),
            check=False,
        )
        if result.returncode != 0:
            return False
        remote_heads = [line.split()[0] for line in result.stdout.splitlines() if line.strip()]
        return head in remote_heads

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        clone_url = context.require("clone_url")
        remotes = self._git(context, "remote").stdout.split()
        if "origin" in remotes:
            self._git(context, "remote", "set-url", "origin", clone_url)
        else:
            self._git(context, "remote", "add", "origin", clone_url)

        command = [*self.git_command, "push", "-u", "origin", self.branch]
        result = self.runner(command, cwd=context.project_dir, env=git_auth_env(self.credentials), check=False)
        if result.returncode != 0:
            output = result.stdout + result.stderr
            rejected = "rejected" in output or "non-fast-forward" in output
            raise ExternalProcessError(command, result.returncode, result.stdout, result.stderr, retryable=not rejected)
        head = self._git(context, "rev-parse", "--verify", "HEAD").stdout.strip()
        return {"pushed_commit": head}


class DeployStep(_GitStep):
    name = "deploy"

    def __init__(
        self,
        credentials: Credentials,
        *,
        wrangler_command: Sequence[str] = ("wrangler",),
        git_command: Sequence[str] = ("git",),
        runner: CommandRunner = run_command,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(git_command=git_command, runner=runner, retry_policy=retry_policy)
        self.credentials = credentials
        self.wrangler_command = list(wrangler_command)

    def fingerprint(self, context: PipelineContext) -> Optional[str]:
        """Identity of the build that would be deployed from the current tree."""

        head = self._head(context)
        entrypoint = context.project_dir / ENTRYPOINT
        config = context.project_dir / DEPLOY_CONFIG
        if head is None or not entrypoint.is_file() or not config.is_file():
            return None
        return sha256_text(f"{head}:{sha256_file(entrypoint)}:{sha256_file(config)}")

    def is_satisfied(self, context: PipelineContext) -> bool:
        deployed = context.previous_values(self.name).get("fingerprint")
        return deployed is not None and deployed == self.fingerprint(context)

    def execute(self, context: PipelineContext) -> Mapping[str, Any]:
        fingerprint = self.fingerprint(context)
        if fingerprint is None:
            raise LocalIOError("Nothing to deploy: the project has no commit or generated files")
        result = self.runner(
            [*self.wrangler_command, "deploy"],
            cwd=context.project_dir,
            env={
                "CLOUDFLARE_API_TOKEN": self.credentials.cloudflare_api_token,
                "CLOUDFLARE_ACCOUNT_ID": self.credentials.cloudflare_account_id,
            },
        )
        produced: Dict[str, Any] = {
            "fingerprint": fingerprint,
            "deployed_at": _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="seconds"),
        }
        match = _WORKERS_URL.search(result.stdout)
        if match:
            produced["deployment_url"] = match.group(0)
        return produced


STEP_ORDER = (
    CreateDirectoryStep.name,
    InitManifestStep.name,
    InstallDependencyStep.name,
    WriteEntrypointStep.name,
    WriteDeployConfigStep.name,
    InitGitStep.name,
    CreateRemoteStep.name,
    PushStep.name,
    DeployStep.name,
)


def build_steps(
    settings: ProvisionSettings,
    credentials: Credentials,
    client: GitHubClient,
    *,
    runner: CommandRunner = run_command,
    today: Callable[[], _dt.date] = _dt.date.today,
) -> List[Step]:
    """Assemble the provisioning sequence in execution order."""

    network_retry = RetryPolicy(max_attempts=settings.max_attempts, backoff=settings.retry_backoff)
    return [
        CreateDirectoryStep(),
        InitManifestStep(),
        InstallDependencyStep(settings.dependency, npm_command=settings.npm_command, runner=runner),
        WriteEntrypointStep(),
        WriteDeployConfigStep(credentials.cloudflare_account_id, today=today),
        InitGitStep(
            branch=settings.branch,
            message=settings.commit_message,
            author_name=settings.commit_author_name,
            author_email=settings.author_email(credentials),
            git_command=settings.git_command,
            runner=runner,
        ),
        CreateRemoteStep(
            client,
            owner=settings.repository_owner(credentials),
            private=settings.private,
            organization=settings.organization,
            retry_policy=network_retry,
        ),
        PushStep(
            credentials,
            branch=settings.branch,
            git_command=settings.git_command,
            runner=runner,
            retry_policy=network_retry,
        ),
        DeployStep(
            credentials,
            wrangler_command=settings.wrangler_command,
            git_command=settings.git_command,
            runner=runner,
            retry_policy=network_retry,
        ),
    ]
