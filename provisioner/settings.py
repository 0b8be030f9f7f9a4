from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigurationError
from .models import RunMode

REQUIRED_ENV = (
    "GITHUB_USERNAME",
    "GITHUB_TOKEN",
    "CLOUDFLARE_ACCOUNT_ID",
    "CLOUDFLARE_API_TOKEN",
)


@dataclass(frozen=True)
class Credentials:
    """Account identifiers and tokens for the source host and the edge platform."""

    github_username: str
    github_token: str = field(repr=False)
    cloudflare_account_id: str
    cloudflare_api_token: str = field(repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Credentials":
        env = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_ENV if not env.get(name, "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
        return cls(
            github_username=env["GITHUB_USERNAME"].strip(),
            github_token=env["GITHUB_TOKEN"].strip(),
            cloudflare_account_id=env["CLOUDFLARE_ACCOUNT_ID"].strip(),
            cloudflare_api_token=env["CLOUDFLARE_API_TOKEN"].strip(),
        )


def load_environment(env_file: Optional[str | Path] = None) -> None:
    """Seed os.environ from a .env file without overriding variables already set."""

    if env_file is not None:
        path = Path(env_file)
        if not path.exists():
            raise ConfigurationError(f"Environment file not found: {path}")
        load_dotenv(path, override=False)
    else:
        load_dotenv(find_dotenv(usecwd=True), override=False)


@dataclass(frozen=True)
class ProvisionSettings:
    """Tunable behaviour of a provisioning run."""

    private: bool = True
    branch: str = "main"
    organization: Optional[str] = None
    dependency: str = "hono"
    commit_message: str = "Initial commit for Hono Cloudflare Worker"
    commit_author_name: str = "Edge Provisioner"
    commit_author_email: Optional[str] = None
    api_url: str = "https://api.github.com"
    npm_command: Tuple[str, ...] = ("npm",)
    git_command: Tuple[str, ...] = ("git",)
    wrangler_command: Tuple[str, ...] = ("wrangler",)
    max_attempts: int = 3
    retry_backoff: float = 1.0
    request_timeout: float = 30.0
    mode: RunMode = RunMode.RESUME

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisionSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(unknown)}")

        values = dict(data)
        for key in ("npm_command", "git_command", "wrangler_command"):
            if key in values:
                values[key] = _as_command(key, values[key])
        if "mode" in values:
            try:
                values["mode"] = RunMode(values["mode"])
            except ValueError as exc:
                raise ConfigurationError(f"Invalid mode: {values['mode']!r}") from exc
        for key, value in values.items():
            _check_type(key, value)
        if values.get("max_attempts", 1) < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> "ProvisionSettings":
        path = Path(path)
        try:
            raw_text = path.read_text()
        except OSError as exc:
            raise ConfigurationError(f"Unable to read settings file {path}: {exc}") from exc
        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            import yaml

            try:
                raw_data = yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Settings file {path} is neither JSON nor YAML") from exc

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError("Settings file must contain a mapping at the top level")
        return cls.from_dict(raw_data)

    def author_email(self, credentials: Credentials) -> str:
        if self.commit_author_email:
            return self.commit_author_email
        return f"{credentials.github_username}@users.noreply.github.com"

    def repository_owner(self, credentials: Credentials) -> str:
        return self.organization or credentials.github_username


def _as_command(key: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(value.split())
    elif isinstance(value, (list, tuple)):
        parts = tuple(str(part) for part in value)
    else:
        raise ConfigurationError(f"{key} must be a string or a list of strings")
    if not parts:
        raise ConfigurationError(f"{key} must not be empty")
    return parts


_FIELD_TYPES: Dict[str, Tuple[type, ...]] = {
    "private": (bool,),
    "branch": (str,),
    "organization": (str, type(None)),
    "dependency": (str,),
    "commit_message": (str,),
    "commit_author_name": (str,),
    "commit_author_email": (str, type(None)),
    "api_url": (str,),
    "max_attempts": (int,),
    "retry_backoff": (int, float),
    "request_timeout": (int, float),
}


def _check_type(key: str, value: Any) -> None:
    expected = _FIELD_TYPES.get(key)
    if expected is None:
        return
    # bool is an int subclass; only "private" accepts it.
    if isinstance(value, bool) and bool not in expected:
        raise ConfigurationError(f"{key} must not be a boolean")
    if not isinstance(value, expected):
        names = " or ".join("null" if t is type(None) else t.__name__ for t in expected)
        raise ConfigurationError(f"{key} must be {names}, got {value!r}")
