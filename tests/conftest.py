"""Shared fixtures: in-memory GitHub, blob storage, provisioners and a job registry."""

from __future__ import annotations

import asyncio
import os
import time
from datetime import UTC
from datetime import datetime

import pytest

# Set required env vars before importing app code
os.environ.setdefault("RUNTIME_UTILS_TESTING", "true")
os.environ.setdefault("RUNTIME_UTILS_DATABASE_URL", "sqlite:///")
os.environ.setdefault("RUNTIME_UTILS_RUNTIME_UTILS_TOKEN", "test-token")

from runtime_utils.config import Settings  # noqa: E402
from runtime_utils.errors import GitHubNotFoundError  # noqa: E402
from runtime_utils.jobs.base import JobBase  # noqa: E402
from runtime_utils.jobs.registry import JobRegistry  # noqa: E402
from runtime_utils.provisioners.base import Provisioner  # noqa: E402
from runtime_utils.provisioners.base import ProvisionerKind  # noqa: E402
from runtime_utils.services.artifact_storage import BlobInfo  # noqa: E402
from runtime_utils.services.background import pending_background_tasks  # noqa: E402
from runtime_utils.services.configuration import ConfigurationService  # noqa: E402
from runtime_utils.services.github import GitHubComment  # noqa: E402
from runtime_utils.services.github import GitHubIssue  # noqa: E402
from runtime_utils.services.github import PullRequest  # noqa: E402
from runtime_utils.services.job_records import ProcessedMentionStore  # noqa: E402
from runtime_utils.services.ops_alerts import OpsAlerts  # noqa: E402

OPERATOR_HEADERS = {"X-Runtime-Utils-Token": "test-token"}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeGitHub:
    """Records every write; reads are served from plain dicts the test fills in."""

    def __init__(self) -> None:
        self.issues: dict[int, dict] = {}
        self.comments: list[tuple[str, str, int, str]] = []
        self.reactions: list[tuple[str, str, int, str]] = []
        self.gists: list[tuple[str, dict[str, str]]] = []
        self.pull_requests: dict[int, PullRequest] = {}
        self.branches: set[tuple[str, str, str]] = set()
        self.push_access: set[str] = set()
        self.feed: list[GitHubComment] = []
        self._next_issue = 1000

    async def aclose(self) -> None:
        pass

    async def create_issue(self, owner, repo, title, body) -> GitHubIssue:
        self._next_issue += 1
        number = self._next_issue
        self.issues[number] = {"title": title, "bodies": [body]}
        return GitHubIssue(number=number, html_url=f"https://github.com/{owner}/{repo}/issues/{number}")

    async def update_issue_body(self, owner, repo, number, body) -> None:
        self.issues[number]["bodies"].append(body)

    def latest_body(self, number: int) -> str:
        return self.issues[number]["bodies"][-1]

    async def create_comment(self, owner, repo, number, body) -> str:
        self.comments.append((owner, repo, number, body))
        return f"https://github.com/{owner}/{repo}/issues/{number}#issuecomment-{len(self.comments)}"

    def comments_on(self, number: int) -> list[str]:
        return [body for _, _, n, body in self.comments if n == number]

    async def add_comment_reaction(self, owner, repo, comment_id, content="+1") -> None:
        self.reactions.append((owner, repo, comment_id, content))

    async def is_pull_request(self, owner, repo, number) -> bool:
        return number in self.pull_requests

    async def get_pull_request(self, owner, repo, number) -> PullRequest:
        if number not in self.pull_requests:
            raise GitHubNotFoundError(404, f"pull {number}")
        return self.pull_requests[number]

    async def branch_exists(self, owner, repo, branch) -> bool:
        return (owner, repo, branch) in self.branches

    async def has_push_access(self, full_name) -> bool:
        return full_name in self.push_access

    async def list_recent_comments(self, owner, repo, since, *, limit=25) -> list[GitHubComment]:
        return [c for c in self.feed if c.repository == f"{owner}/{repo}"][:limit]

    async def create_gist(self, description, files, *, public=False) -> str:
        self.gists.append((description, files))
        return f"https://gist.github.com/runtime-utils/{len(self.gists)}"


class FakeBlobStorage:
    """Keeps blobs in memory. ``reported_sizes`` lets a test pretend a blob is huge."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.modified: dict[str, datetime] = {}
        self.deleted: list[str] = []
        self.reported_sizes: dict[str, int] = {}

    async def upload(self, key, data, *, content_type=None) -> int:
        payload = bytes(data) if isinstance(data, (bytes, bytearray)) else data.read()
        self.blobs[key] = payload
        self.modified[key] = datetime.now(UTC)
        return self.reported_sizes.get(key.rsplit("/", 1)[-1], len(payload))

    async def get_info(self, key) -> BlobInfo | None:
        if key not in self.blobs:
            return None
        return BlobInfo(size=len(self.blobs[key]), last_modified=self.modified[key])

    async def delete(self, key) -> None:
        self.deleted.append(key)
        self.blobs.pop(key, None)

    def presigned_list_url(self, prefix, expires_in) -> str:
        return f"https://storage.test/{prefix}?list"

    def public_url(self, key) -> str:
        return f"https://storage.test/{key}"


class RecordingOps(OpsAlerts):
    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.messages: list[str] = []

    async def send(self, content, exc=None) -> None:
        self.messages.append(content)
        await super().send(content, exc)


class InMemoryCompletedJobStore:
    def __init__(self) -> None:
        self.records = {}

    async def save(self, record) -> None:
        self.records[record.external_id] = record

    async def try_get(self, external_id):
        return self.records.get(external_id)


class FakeProvisioner(Provisioner):
    """Pretends a VM came up immediately and waits for the job to finish."""

    def __init__(self, ops: OpsAlerts, kind: ProvisionerKind) -> None:
        super().__init__(ops)
        self.kind = kind
        self.jobs: list[JobBase] = []
        self.core_counts: list[int] = []

    async def run(self, job, scripts, default_core_count) -> None:
        self.jobs.append(job)
        self.core_counts.append(default_core_count)
        job.remote_login_credentials = f"ssh runner@{self.kind.value}.test"
        await job.wait_for_completion()


class ScriptedJob(JobBase):
    """Runs ``body(job)`` as its core; without a body it waits for the runner to finish."""

    title_prefix = "Scripted"

    def __init__(self, registry, *, body=None, init=None, **kwargs) -> None:
        super().__init__(registry, **kwargs)
        self._body = body
        self._init = init
        self.core_ran = False

    async def initialize(self) -> None:
        if self._init is not None:
            await self._init(self)

    async def run_core(self) -> None:
        self.core_ran = True
        if self._body is not None:
            await self._body(self)
        else:
            await self.wait_for_completion()


def make_pull_request(number: int = 42, *, state: str = "open", head_repo: str = "contributor/runtime") -> PullRequest:
    return PullRequest(
        number=number,
        title="Vectorize IndexOfAny",
        html_url=f"https://github.com/dotnet/runtime/pull/{number}",
        patch_url=f"https://github.com/dotnet/runtime/pull/{number}.patch",
        state=state,
        user_login="contributor",
        base_repo_full_name="dotnet/runtime",
        base_ref="main",
        head_repo_full_name=head_repo,
        head_ref="feature",
    )


def make_comment(body: str, *, comment_id: int = 1, login: str = "alice", repo: str = "dotnet/runtime", issue_number: int = 42, user_type: str = "User") -> GitHubComment:
    owner, name = repo.split("/", 1)
    return GitHubComment(
        id=comment_id,
        body=body,
        html_url=f"https://github.com/{repo}/issues/{issue_number}#issuecomment-{comment_id}",
        user_login=login,
        user_type=user_type,
        repo_owner=owner,
        repo_name=name,
        issue_number=issue_number,
    )


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


async def drain_background(timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while pending_background_tasks() and time.monotonic() < deadline:
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        testing=True,
        runtime_utils_token="test-token",
        public_base_url="https://runtime-utils.test",
        shutdown_grace_seconds=0,
    )


@pytest.fixture()
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture()
def storage() -> FakeBlobStorage:
    return FakeBlobStorage()


@pytest.fixture()
def ops(test_settings) -> RecordingOps:
    return RecordingOps(test_settings)


@pytest.fixture()
def completed_jobs() -> InMemoryCompletedJobStore:
    return InMemoryCompletedJobStore()


@pytest.fixture()
def provisioners(ops) -> dict[ProvisionerKind, FakeProvisioner]:
    return {kind: FakeProvisioner(ops, kind) for kind in ProvisionerKind}


@pytest.fixture()
def make_registry(test_settings, github, storage, ops, completed_jobs, provisioners):
    def _make(**overrides) -> JobRegistry:
        configuration = ConfigurationService(None)
        configuration.set("RuntimeUtils.AuthorizedUser.alice", True)
        kwargs = dict(
            settings=test_settings,
            configuration=configuration,
            github=github,
            storage=storage,
            completed_jobs=completed_jobs,
            processed_mentions=ProcessedMentionStore(None),
            provisioners=provisioners,
            ops=ops,
        )
        kwargs.update(overrides)
        return JobRegistry(**kwargs)

    return _make


@pytest.fixture()
async def registry(make_registry):
    registry = make_registry()
    try:
        yield registry
    finally:
        await registry.stop()
        await drain_background()
