"""Thin async GitHub REST client plus reference parsing helpers.

Only the handful of endpoints the job engine needs: issues and comments for
tracking, pull requests and branches for resolving refs, gists for long
results and the repository comment feed for mentions.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import httpx

from runtime_utils.errors import GitHubError
from runtime_utils.errors import GitHubNotFoundError

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
DEFAULT_TIMEOUT = 30.0

REPO_AND_BRANCH_RE = re.compile(r"^https://github\.com/([A-Za-z\d\-_]+)/([A-Za-z\d\-_]+)/(?:tree|blob)/([A-Za-z\d\-_]+)([?#/].*)?$")


def github_headers(token: str | None) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": "runtime-utils/1.0",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def github_async_client(token: str | None, *, timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=GITHUB_API_BASE,
        headers=github_headers(token),
        timeout=timeout,
        follow_redirects=True,
    )


@dataclass(frozen=True)
class GitHubIssue:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    html_url: str
    patch_url: str
    state: str
    user_login: str
    base_repo_full_name: str
    base_ref: str
    head_repo_full_name: str
    head_ref: str

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PullRequest":
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            html_url=data["html_url"],
            patch_url=data.get("patch_url") or f"{data['html_url']}.patch",
            state=data.get("state") or "open",
            user_login=(data.get("user") or {}).get("login") or "",
            base_repo_full_name=data["base"]["repo"]["full_name"],
            base_ref=data["base"]["ref"],
            head_repo_full_name=(data["head"].get("repo") or {}).get("full_name") or data["base"]["repo"]["full_name"],
            head_ref=data["head"]["ref"],
        )


@dataclass(frozen=True)
class GitHubComment:
    id: int
    body: str
    html_url: str
    user_login: str
    user_type: str
    repo_owner: str
    repo_name: str
    issue_number: int
    updated_at: datetime | None = None

    @property
    def repository(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


def _issue_number_from_url(url: str) -> int:
    return int(url.rstrip("/").rsplit("/", 1)[-1])


def comment_from_api(owner: str, repo: str, data: dict[str, Any]) -> GitHubComment:
    user = data.get("user") or {}
    updated = data.get("updated_at")
    return GitHubComment(
        id=data["id"],
        body=data.get("body") or "",
        html_url=data.get("html_url") or "",
        user_login=user.get("login") or "",
        user_type=user.get("type") or "",
        repo_owner=owner,
        repo_name=repo,
        issue_number=_issue_number_from_url(data["issue_url"]),
        updated_at=datetime.fromisoformat(updated.replace("Z", "+00:00")) if updated else None,
    )


class GitHubClient:
    def __init__(self, token: str | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or github_async_client(token)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        resp = await self._client.request(method, url, **kwargs)
        if resp.status_code == 404:
            raise GitHubNotFoundError(404, f"{method} {url}")
        if resp.status_code >= 400:
            raise GitHubError(resp.status_code, resp.text[:500])
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # Issues / comments ---------------------------------------------------

    async def create_issue(self, owner: str, repo: str, title: str, body: str) -> GitHubIssue:
        data = await self._request("POST", f"/repos/{owner}/{repo}/issues", json={"title": title, "body": body})
        return GitHubIssue(number=data["number"], html_url=data["html_url"])

    async def update_issue_body(self, owner: str, repo: str, number: int, body: str) -> None:
        await self._request("PATCH", f"/repos/{owner}/{repo}/issues/{number}", json={"body": body})

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> str:
        data = await self._request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", json={"body": body})
        return data["html_url"]

    async def add_comment_reaction(self, owner: str, repo: str, comment_id: int, content: str = "+1") -> None:
        await self._request("POST", f"/repos/{owner}/{repo}/issues/comments/{comment_id}/reactions", json={"content": content})

    async def is_pull_request(self, owner: str, repo: str, number: int) -> bool:
        data = await self._request("GET", f"/repos/{owner}/{repo}/issues/{number}")
        return "pull_request" in data

    async def list_recent_comments(self, owner: str, repo: str, since: datetime, *, limit: int = 25) -> list[GitHubComment]:
        """Comments updated at or after ``since``, newest first."""
        data = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/issues/comments",
            params={
                "since": since.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "sort": "updated",
                "direction": "desc",
                "per_page": 100,
            },
        )
        comments = [comment_from_api(owner, repo, item) for item in data or []]
        return [c for c in comments if "@" in c.body][:limit]

    # Pull requests / repositories -------------------------------------

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest:
        data = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        return PullRequest.from_api(data)

    async def branch_exists(self, owner: str, repo: str, branch: str) -> bool:
        try:
            await self._request("GET", f"/repos/{owner}/{repo}/branches/{branch}")
        except GitHubNotFoundError:
            return False
        return True

    async def has_push_access(self, full_name: str) -> bool:
        data = await self._request("GET", f"/repos/{full_name}")
        return bool((data.get("permissions") or {}).get("push"))

    # Gists ---------------------------------------------------------------

    async def create_gist(self, description: str, files: dict[str, str], *, public: bool = False) -> str:
        data = await self._request(
            "POST",
            "/gists",
            json={
                "description": description,
                "public": public,
                "files": {name: {"content": content} for name, content in files.items()},
            },
        )
        return data["html_url"]


def try_parse_issue_or_pr_number(text: str) -> int | None:
    """Accept ``1234`` or an issue/PR URL on github.com."""
    parts = text.strip().split(" ", 1)
    if not parts or not parts[0]:
        return None

    candidate = parts[0]
    if candidate.isdigit():
        number = int(candidate)
        return number if number > 0 else None

    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or (parsed.hostname or "").lower() != "github.com":
        return None
    path = parsed.path.lower()
    if "/pull/" not in path and "/issues/" not in path:
        return None

    last = parsed.path.rstrip("/").rsplit("/", 1)[-1]
    if not last.isdigit() or int(last) <= 0:
        return None
    return int(last)


async def try_resolve_repo_and_branch(github: GitHubClient, url: str) -> tuple[str, str] | None:
    """Resolve a tree/blob URL to ``(owner/repo, branch)``.

    Branch names may contain slashes, so up to three extra path segments are
    tried before giving up.
    """
    match = REPO_AND_BRANCH_RE.match(url)
    if not match:
        return None

    owner, repo, branch, remainder = match.group(1), match.group(2), match.group(3), match.group(4)

    if await github.branch_exists(owner, repo, branch):
        return f"{owner}/{repo}", branch

    if remainder and remainder.startswith("/"):
        parts = [p.strip() for p in remainder.split("/") if p.strip()]
        for part in parts[:3]:
            branch = f"{branch}/{part}"
            if await github.branch_exists(owner, repo, branch):
                return f"{owner}/{repo}", branch

    return None


__all__ = [
    "GitHubClient",
    "GitHubComment",
    "GitHubIssue",
    "PullRequest",
    "comment_from_api",
    "github_async_client",
    "github_headers",
    "try_parse_issue_or_pr_number",
    "try_resolve_repo_and_branch",
]
