from __future__ import annotations

import json
from pathlib import Path

import httpx

from provisioner.models import RunMode, StepStatus
from provisioner.run import journal_status, provision
from provisioner.settings import ProvisionSettings
from provisioner.steps import STEP_ORDER

from conftest import FIXED_DAY, FakeGitHub, FakeRunner


def _provision(tmp_path, credentials, runner, github, **kwargs):
    sleeps: list = []
    with github.client() as client:
        result = provision(
            "demo-api",
            credentials,
            workspace=tmp_path,
            client=client,
            runner=runner,
            sleep=sleeps.append,
            today=lambda: FIXED_DAY,
            **kwargs,
        )
    return result, sleeps


def test_demo_api_end_to_end(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    result, _ = _provision(tmp_path, credentials, runner, github)

    assert result.success, result.error
    assert result.completed == list(STEP_ORDER)
    assert result.executed == list(STEP_ORDER)

    project = tmp_path / "demo-api"
    manifest = json.loads((project / "package.json").read_text())
    assert manifest["name"] == "demo-api"
    assert "hono" in manifest["dependencies"]
    assert "Hello from demo-api!" in (project / "index.js").read_text()
    config = (project / "wrangler.toml").read_text()
    assert 'compatibility_date = "2026-10-19"' in config
    assert 'account_id = "cf-account-123"' in config

    assert runner.invoked("git commit")
    assert "demo-api" in github.repos
    clone_url = "https://github.com/octocat/demo-api.git"
    assert runner.remote_heads[(clone_url, "main")]
    deploy_calls = [call for call in runner.calls if call[0][0] == "wrangler"]
    assert len(deploy_calls) == 1
    _, cwd, env = deploy_calls[0]
    assert cwd == project.resolve()
    assert env["CLOUDFLARE_API_TOKEN"] == "cf-test-token"

    deploy = result.outcomes[-1]
    assert deploy.details["values"]["deployment_url"] == "https://demo-api.example.workers.dev"


def test_tokens_stay_out_of_commands_and_committed_files(
    tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub
) -> None:
    _provision(tmp_path, credentials, runner, github)

    for command in runner.commands():
        assert all("ghp-test-token" not in part for part in command)
        assert all("cf-test-token" not in part for part in command)
    for path in (tmp_path / "demo-api").rglob("*"):
        if path.is_file() and ".git" not in path.parts:
            assert "ghp-test-token" not in path.read_text(errors="ignore")

    push_env = next(env for command, _, env in runner.calls if command[1:2] == ["push"])
    assert push_env["GIT_CONFIG_KEY_0"] == "http.extraHeader"


def test_second_run_is_a_no_op(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    first, _ = _provision(tmp_path, credentials, runner, github)
    calls_before = len(runner.calls)
    second, _ = _provision(tmp_path, credentials, runner, github)

    assert first.success and second.success
    assert second.completed == first.completed
    assert second.executed == []
    assert second.skipped == list(STEP_ORDER)
    assert github.count("POST") == 1
    new_commands = runner.commands()[calls_before:]
    assert not any(command[0] in {"npm", "wrangler"} for command in new_commands)
    assert not any("push" in command or "commit" in command for command in new_commands)


def test_name_conflict_fails_at_create_remote(tmp_path: Path, credentials, runner: FakeRunner) -> None:
    github = FakeGitHub(conflict=True)
    result, sleeps = _provision(tmp_path, credentials, runner, github)

    assert not result.success
    assert result.failed_step == "create-remote"
    assert result.error.kind == "conflict"
    assert "name already exists" in str(result.error)
    assert result.completed == list(STEP_ORDER[:6])
    assert sleeps == []
    assert not runner.invoked("git push")
    assert not runner.invoked("git ls-remote")
    assert not runner.invoked("wrangler deploy")


def test_rerun_resumes_after_failed_deploy(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    runner.fail_next("wrangler deploy", stderr="Authentication error [code: 10000]")
    first, _ = _provision(tmp_path, credentials, runner, github)

    assert first.failed_step == "deploy"
    assert "Authentication error" in str(first.error)
    assert journal_status("demo-api", tmp_path)["deploy"] == StepStatus.FAILED.value

    second, _ = _provision(tmp_path, credentials, runner, github)
    assert second.success
    assert second.skipped == list(STEP_ORDER[:-1])
    assert second.executed == ["deploy"]


def test_rerun_tolerates_partial_directory(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    project = tmp_path / "demo-api"
    project.mkdir()
    (project / "package.json").write_text(json.dumps({"name": "demo-api", "dependencies": {}}))

    result, _ = _provision(tmp_path, credentials, runner, github)

    assert result.success
    assert result.skipped[:2] == ["create-directory", "init-manifest"]
    assert "install-dependency" in result.executed


def test_existing_remote_repository_is_reused(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    github.repos["demo-api"] = github.payload("demo-api")
    result, _ = _provision(tmp_path, credentials, runner, github)

    assert result.success
    assert "create-remote" in result.skipped
    assert github.count("POST") == 0
    assert runner.invoked("git push")


def test_rate_limited_create_is_retried(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    attempts = []

    def rate_limit_once(request: httpx.Request):
        if request.method == "POST" and not attempts:
            attempts.append(request)
            return httpx.Response(429, json={"message": "secondary rate limit"})
        return None

    github.responders.append(rate_limit_once)
    settings = ProvisionSettings(max_attempts=3, retry_backoff=2.0)
    result, sleeps = _provision(tmp_path, credentials, runner, github, settings=settings)

    assert result.success
    assert sleeps == [2.0]
    assert github.count("POST") == 2


def test_rejected_push_is_not_retried(tmp_path: Path, credentials, runner: FakeRunner, github: FakeGitHub) -> None:
    runner.fail_next("git push", stderr="! [rejected] main -> main (non-fast-forward)")
    result, sleeps = _provision(tmp_path, credentials, runner, github)

    assert result.failed_step == "push"
    assert sleeps == []
    assert not runner.invoked("wrangler deploy")


def test_rollback_mode_undoes_local_work(tmp_path: Path, credentials, runner: FakeRunner) -> None:
    github = FakeGitHub(conflict=True)
    settings = ProvisionSettings(mode=RunMode.ROLLBACK)
    result, _ = _provision(tmp_path, credentials, runner, github, settings=settings)

    assert result.failed_step == "create-remote"
    assert result.compensated == [
        "init-git",
        "write-deploy-config",
        "write-entrypoint",
        "init-manifest",
        "create-directory",
    ]
    assert not (tmp_path / "demo-api").exists()
