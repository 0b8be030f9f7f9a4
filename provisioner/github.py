from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .errors import RemoteAPIError

_LOGGER = logging.getLogger(__name__)

USER_AGENT = "edge-provisioner"


@dataclass(frozen=True)
class RemoteRepository:
    owner: str
    name: str
    clone_url: str
    html_url: str = ""
    private: bool = True

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RemoteRepository":
        try:
            return cls(
                owner=payload["owner"]["login"],
                name=payload["name"],
                clone_url=payload["clone_url"],
                html_url=payload.get("html_url", ""),
                private=bool(payload.get("private", True)),
            )
        except (KeyError, TypeError) as exc:
            raise RemoteAPIError(f"Unexpected repository payload: missing {exc}", kind="invalid") from exc


def _error_kind(response: httpx.Response) -> str:
    status = response.status_code
    if status == 429:
        return "rate_limit"
    if status == 403 and response.headers.get("x-ratelimit-remaining") == "0":
        return "rate_limit"
    if status in {401, 403}:
        return "auth"
    if status == 404:
        return "not_found"
    if status in {409, 422}:
        return "conflict"
    if status >= 500:
        return "server"
    return "invalid"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    message = payload.get("message", "") if isinstance(payload, dict) else ""
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list):
        details = [err.get("message", "") for err in errors if isinstance(err, dict) and err.get("message")]
        if details:
            message = f"{message} ({'; '.join(details)})"
    return message or response.reason_phrase


class GitHubClient:
    """Minimal client for the repository endpoints of the GitHub REST API."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=api_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": USER_AGENT,
            },
        )

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise RemoteAPIError(f"{method} {path} failed: {exc}", kind="network") from exc
        if response.is_error:
            raise RemoteAPIError(
                f"{method} {path} returned {response.status_code}: {_error_message(response)}",
                kind=_error_kind(response),
                status_code=response.status_code,
            )
        return response

    def get_repository(self, owner: str, name: str) -> Optional[RemoteRepository]:
        try:
            response = self._request("GET", f"/repos/{owner}/{name}")
        except RemoteAPIError as exc:
            if exc.kind == "not_found":
                return None
            raise
        return RemoteRepository.from_payload(response.json())

    def create_repository(
        self,
        name: str,
        *,
        private: bool = True,
        organization: Optional[str] = None,
    ) -> RemoteRepository:
        path = f"/orgs/{organization}/repos" if organization else "/user/repos"
        response = self._request("POST", path, json={"name": name, "private": private})
        repository = RemoteRepository.from_payload(response.json())
        _LOGGER.info(
            "Created repository %s/%s",
            repository.owner,
            repository.name,
            extra={"event": "repository_created", "context": {"clone_url": repository.clone_url}},
        )
        return repository

    def delete_repository(self, owner: str, name: str) -> None:
        try:
            self._request("DELETE", f"/repos/{owner}/{name}")
        except RemoteAPIError as exc:
            if exc.kind != "not_found":
                raise
