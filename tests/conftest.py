from __future__ import annotations

import datetime as _dt
import hashlib
import json
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from provisioner.errors import ExternalProcessError
from provisioner.github import GitHubClient
from provisioner.settings import Credentials

IGNORED = {".git", "node_modules", ".wrangler"}
FIXED_DAY = _dt.date(2026, 10, 19)


def _tree_hash(root: Path) -> str:
    digest = hashlib.sha256()
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if relative.parts[0] in IGNORED or not path.is_file():
            continue
        digest.update(str(relative).encode())
        digest.update(path.read_bytes())
    return digest.hexdigest()


class FakeRunner:
    """Stands in for git, npm and wrangler, keeping git state inside .git/."""

    def __init__(self) -> None:
        self.calls: List[Tuple[List[str], Optional[Path], Dict[str, str]]] = []
        self.remote_heads: Dict[Tuple[str, str], str] = {}
        self.failures: Dict[str, List[Tuple[int, str, str]]] = {}

    def fail_next(self, action: str, returncode: int = 1, stdout: str = "", stderr: str = "boom") -> None:
        self.failures.setdefault(action, []).append((returncode, stdout, stderr))

    def commands(self) -> List[List[str]]:
        return [command for command, _, _ in self.calls]

    def invoked(self, action: str) -> bool:
        return any(self._action(command) == action for command in self.commands())

    def __call__(self, command, *, cwd=None, env=None, check=True):
        command = list(command)
        cwd = Path(cwd) if cwd else None
        self.calls.append((command, cwd, dict(env or {})))
        action = self._action(command)
        if self.failures.get(action):
            returncode, stdout, stderr = self.failures[action].pop(0)
        else:
            returncode, stdout, stderr = self._simulate(command, cwd)
        if check and returncode != 0:
            raise ExternalProcessError(command, returncode, stdout, stderr)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    @staticmethod
    def _args(command: List[str]) -> List[str]:
        args = command[1:]
        while args and args[0] == "-c":
            args = args[2:]
        return args

    def _action(self, command: List[str]) -> str:
        args = self._args(command)
        return f"{command[0]} {args[0]}" if args else command[0]

    def _simulate(self, command: List[str], cwd: Path) -> Tuple[int, str, str]:
        tool, args = command[0], self._args(command)
        if tool == "npm":
            return self._npm(args, cwd)
        if tool == "wrangler":
            return 0, f"Uploaded {cwd.name}\n  https://{cwd.name}.example.workers.dev\n", ""
        if tool == "git":
            return self._git(args, cwd)
        return 127, "", f"{tool}: command not found"

    def _npm(self, args: List[str], cwd: Path) -> Tuple[int, str, str]:
        manifest_path = cwd / "package.json"
        manifest = json.loads(manifest_path.read_text())
        manifest.setdefault("dependencies", {})[args[1]] = "^4.6.0"
        manifest_path.write_text(json.dumps(manifest, indent=2) + "\n")
        (cwd / "package-lock.json").write_text(json.dumps({"name": manifest["name"], "lockfileVersion": 3}))
        (cwd / "node_modules" / args[1]).mkdir(parents=True, exist_ok=True)
        return 0, "added 1 package", ""

    def _load(self, cwd: Path) -> Optional[dict]:
        state_path = cwd / ".git" / "fake-state.json"
        if not state_path.exists():
            return None
        return json.loads(state_path.read_text())

    def _store(self, cwd: Path, state: dict) -> None:
        (cwd / ".git" / "fake-state.json").write_text(json.dumps(state))

    def _git(self, args: List[str], cwd: Path) -> Tuple[int, str, str]:
        if args[0] == "init":
            (cwd / ".git").mkdir(exist_ok=True)
            if self._load(cwd) is None:
                self._store(cwd, {"branch": "master", "head": None, "tree": None, "remotes": {}})
            return 0, "Initialized empty Git repository", ""
        if args[0] == "ls-remote":
            head = self.remote_heads.get((args[1], args[2].rsplit("/", 1)[-1]))
            return 0, f"{head}\t{args[2]}\n" if head else "", ""

        state = self._load(cwd)
        if state is None:
            return 128, "", "fatal: not a git repository"
        if args[0] == "add":
            return 0, "", ""
        if args[0] == "status":
            return 0, "" if state["tree"] == _tree_hash(cwd) else "A  index.js\n", ""
        if args[0] == "commit":
            tree = _tree_hash(cwd)
            if tree == state["tree"]:
                return 1, "nothing to commit, working tree clean", ""
            state["head"] = hashlib.sha1(f"{state['head']}{tree}".encode()).hexdigest()
            state["tree"] = tree
            self._store(cwd, state)
            return 0, "1 file changed", ""
        if args[0] == "rev-parse":
            if args[1] == "--abbrev-ref":
                return 0, state["branch"] + "\n", ""
            if state["head"] is None:
                return 128, "", "fatal: Needed a single revision"
            return 0, state["head"] + "\n", ""
        if args[0] == "branch":
            state["branch"] = args[2]
            self._store(cwd, state)
            return 0, "", ""
        if args[0] == "remote":
            if len(args) == 1:
                return 0, "".join(f"{name}\n" for name in state["remotes"]), ""
            state["remotes"][args[2]] = args[3]
            self._store(cwd, state)
            return 0, "", ""
        if args[0] == "push":
            url = state["remotes"][args[2]]
            self.remote_heads[(url, args[3])] = state["head"]
            return 0, "", f"To {url}"
        return 1, "", f"unsupported git command {args}"


class FakeGitHub:
    """In-memory stand-in for the repository endpoints of the GitHub API."""

    def __init__(self, owner: str = "octocat", *, conflict: bool = False) -> None:
        self.owner = owner
        self.conflict = conflict
        self.repos: Dict[str, dict] = {}
        self.requests: List[Tuple[str, str]] = []
        self.responders: List[Callable[[httpx.Request], Optional[httpx.Response]]] = []

    def payload(self, name: str, private: bool = True) -> dict:
        return {
            "name": name,
            "owner": {"login": self.owner},
            "private": private,
            "clone_url": f"https://github.com/{self.owner}/{name}.git",
            "html_url": f"https://github.com/{self.owner}/{name}",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        for responder in self.responders:
            response = responder(request)
            if response is not None:
                return response

        parts = request.url.path.strip("/").split("/")
        if request.method == "GET" and parts[0] == "repos":
            repo = self.repos.get(parts[2])
            if repo is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=repo)
        if request.method == "POST" and request.url.path == "/user/repos":
            body = json.loads(request.content)
            if self.conflict or body["name"] in self.repos:
                return httpx.Response(
                    422,
                    json={
                        "message": "Repository creation failed.",
                        "errors": [{"message": "name already exists on this account"}],
                    },
                )
            self.repos[body["name"]] = self.payload(body["name"], body["private"])
            return httpx.Response(201, json=self.repos[body["name"]])
        if request.method == "DELETE" and parts[0] == "repos":
            if self.repos.pop(parts[2], None) is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(204)
        return httpx.Response(400, json={"message": "unexpected request"})

    def client(self) -> GitHubClient:
        return GitHubClient("ghp-test-token", transport=httpx.MockTransport(self.handler))

    def count(self, method: str) -> int:
        return sum(1 for seen, _ in self.requests if seen == method)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        github_username="octocat",
        github_token="ghp-test-token",
        cloudflare_account_id="cf-account-123",
        cloudflare_api_token="cf-test-token",
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()
