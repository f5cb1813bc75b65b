"""Job lifecycle engine.

A job is one run of a remote workload against a pull request or branch. The
engine owns the tracking issue, the rolling log, the artifact list, the
timeouts and the completion bookkeeping; subclasses only say what to run and
what to do with the results.

Lifecycle::

    created -> initializing -> tracking issue -> provisioning/running
            -> finalizing -> completed

Completion is reached from a normal return, the idle timeout, the duration
timeout or a fail-fast. Nothing escapes ``run_job``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import threading
import time
import traceback
import uuid
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from typing import TYPE_CHECKING
from typing import AsyncIterator
from typing import BinaryIO
from typing import Callable
from typing import Iterable

from runtime_utils.errors import RuntimeUtilsError
from runtime_utils.formatting import GB
from runtime_utils.formatting import elapsed_time
from runtime_utils.formatting import next_snowflake_string
from runtime_utils.formatting import rough_size
from runtime_utils.formatting import split_lines
from runtime_utils.formatting import truncate_with_dots
from runtime_utils.jobs.metadata import JobMetadata
from runtime_utils.jobs.timeouts import CompletionSource
from runtime_utils.jobs.timeouts import Deadline
from runtime_utils.jobs.timeouts import JobCancellation
from runtime_utils.provisioners.base import build_startup_scripts
from runtime_utils.provisioners.base import choose_provisioner
from runtime_utils.schemas import ArtifactOut
from runtime_utils.schemas import CompletedJobRecord
from runtime_utils.schemas import SystemHardwareInfo
from runtime_utils.services.artifact_storage import ARTIFACTS_PREFIX
from runtime_utils.services.artifact_storage import LOGS_PREFIX
from runtime_utils.services.artifact_storage import RUNNER_STATE_PREFIX
from runtime_utils.services.background import spawn_background
from runtime_utils.services.github import GitHubComment
from runtime_utils.services.github import GitHubIssue
from runtime_utils.services.github import PullRequest
from runtime_utils.services.github import try_parse_issue_or_pr_number
from runtime_utils.services.github import try_resolve_repo_and_branch
from runtime_utils.services.rolling_log import RollingLog

if TYPE_CHECKING:
    from runtime_utils.jobs.registry import JobRegistry

logger = logging.getLogger(__name__)

LOG_CAPACITY = 100_000
MAX_ARTIFACT_COUNT = 128
MAX_TOTAL_ARTIFACT_BYTES = 16 * GB
COMMENT_LENGTH_LIMIT = 65_000
TITLE_MAX_LENGTH = 80
INITIALIZATION_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_DURATION_SECONDS = 5 * 60 * 60
ADMIN_NO_TIME_LIMIT_SECONDS = 7 * 24 * 60 * 60
DEFAULT_IDLE_TIMEOUT_MS = 5 * 60 * 1000
MAX_REF_LIST_LENGTH = 100

IDLE_TIMEOUT_MESSAGE = "Job idle timeout exceeded, terminating ..."
DURATION_TIMEOUT_MESSAGE = "Job duration exceeded, terminating ..."

_ARTIFACT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]{0,199}$")


class JobCancelledError(RuntimeUtilsError):
    """Raised inside ``run_job`` when a timeout or fail-fast stopped the job."""


@dataclass(frozen=True)
class Artifact:
    file_name: str
    url: str
    size: int


class _Clock:
    def __init__(self) -> None:
        self._started = time.monotonic()
        self._stopped: float | None = None

    @property
    def running(self) -> bool:
        return self._stopped is None

    @property
    def elapsed(self) -> float:
        end = self._stopped if self._stopped is not None else time.monotonic()
        return end - self._started

    def stop(self) -> None:
        if self._stopped is None:
            self._stopped = time.monotonic()


class JobBase(ABC):
    post_error_as_github_comment = False
    run_using_github_actions = False

    def __init__(
        self,
        registry: "JobRegistry",
        *,
        github_commenter_login: str | None = None,
        arguments: str | None = None,
        comment: GitHubComment | None = None,
        pull_request: PullRequest | None = None,
        branch: tuple[str, str] | None = None,
    ) -> None:
        self.registry = registry
        self.github_comment = comment
        self.github_commenter_login = github_commenter_login or (comment.user_login if comment else None)
        self.pull_request = pull_request

        self.job_id = uuid.uuid4().hex
        self.external_id = next_snowflake_string()
        self.start_time = datetime.now(UTC)
        self.max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS

        self._clock = _Clock()
        self._logs = RollingLog(LOG_CAPACITY)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._core_task: asyncio.Task | None = None

        self._artifacts: list[Artifact] = []
        self._artifacts_lock = threading.Lock()
        self._artifact_count = 0
        self._total_artifact_bytes = 0

        self._first_error_message: str | None = None
        self._error_comment_posted = False
        self._manually_cancelled = False
        self._completion = asyncio.Event()

        self.cancellation = JobCancellation()
        self.cancellation.add_callback(self._on_cancelled)
        self._idle_timer = Deadline("idle", lambda: self.cancellation.cancel(CompletionSource.IDLE_TIMEOUT))
        self._duration_timer = Deadline("duration", lambda: self.cancellation.cancel(CompletionSource.DURATION_TIMEOUT))
        self.idle_timeout_ms = registry.configuration.get("RuntimeUtilsService.IdleTimeoutMs", DEFAULT_IDLE_TIMEOUT_MS)

        self.tracking_issue: GitHubIssue | None = None
        self.initial_remote_runner_contact: datetime | None = None
        self.last_system_info: SystemHardwareInfo | None = None
        self.last_progress_summary: str | None = None
        self.remote_login_credentials: str | None = None
        self.should_mention_job_initiator = False
        self.tested_pr_or_branch_link: str | None = comment.html_url if comment else None

        first_line = split_lines(arguments or "")[0].strip()

        self.metadata = JobMetadata()
        self.metadata.add("JobId", self.job_id)
        self.metadata.add("ExternalId", self.external_id)
        self.metadata.add("JobType", self.job_type)
        self.metadata.add("JobStartTime", str(int(self.start_time.timestamp() * 1000)))
        self.metadata.add("CustomArguments", first_line)
        self.metadata.add(
            "PersistentStateUri",
            registry.storage.presigned_list_url(RUNNER_STATE_PREFIX, self.max_duration_seconds),
        )

        if pull_request is not None:
            self._init_ref_metadata(
                pull_request.base_repo_full_name,
                pull_request.base_ref,
                pull_request.head_repo_full_name,
                pull_request.head_ref,
            )
            self.tested_pr_or_branch_link = pull_request.html_url
        elif branch is not None:
            repository, branch_name = branch
            self._init_ref_metadata(registry.settings.default_repository, "main", repository, branch_name)
            self.tested_pr_or_branch_link = f"https://github.com/{repository}/tree/{branch_name}"

        self.should_delete_vm = self.get_config_flag("ShouldDeleteVM", True)
        self.suppress_tracking_issue = self.is_from_admin and "-notrackingissue" in self._arguments_lower

        logger.info("Starting %s: %s", self.job_type, self.progress_url)

    def _init_ref_metadata(self, base_repo: str, base_branch: str, pr_repo: str, pr_branch: str) -> None:
        self.metadata.add("BaseRepo", base_repo)
        self.metadata.add("BaseBranch", base_branch)
        self.metadata.add("PrRepo", pr_repo)
        self.metadata.add("PrBranch", pr_branch)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def title_prefix(self) -> str: ...

    async def initialize(self) -> None:
        """Kind-specific setup. Runs inside the initialization time budget."""

    @abstractmethod
    async def run_core(self) -> None:
        """Execute the job. Returns once the remote work is finished."""

    async def intercept_artifact(self, file_name: str, content: BinaryIO) -> bytes | None:
        """Inspect an artifact before upload; return replacement bytes to upload instead."""
        return None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def job_type(self) -> str:
        return type(self).__name__

    @property
    def settings(self):
        return self.registry.settings

    @property
    def github(self):
        return self.registry.github

    @property
    def repo_owner(self) -> str:
        if self.github_comment is not None:
            return self.github_comment.repo_owner
        return self.settings.default_repository_owner

    @property
    def repo_name(self) -> str:
        if self.github_comment is not None:
            return self.github_comment.repo_name
        return self.settings.default_repository_name

    @property
    def custom_arguments(self) -> str:
        return self.metadata["CustomArguments"]

    @property
    def _arguments_lower(self) -> str:
        return self.custom_arguments.lower()

    @property
    def use_arm(self) -> bool:
        return "-arm" in self._arguments_lower

    @property
    def use_intel(self) -> bool:
        return "-intel" in self._arguments_lower

    @property
    def architecture(self) -> str:
        return "ARM64" if self.use_arm else "X64"

    @property
    def fast(self) -> bool:
        return "-fast" in self._arguments_lower

    @property
    def use_windows(self) -> bool:
        return "-win" in self._arguments_lower

    @property
    def use_hetzner(self) -> bool:
        return "-hetzner" in self._arguments_lower

    @property
    def use_helix(self) -> bool:
        return "-helix" in self._arguments_lower

    @property
    def is_from_admin(self) -> bool:
        return self.registry.check_admin_permissions(self.github_commenter_login)

    @property
    def should_link_to_pr_or_branch(self) -> bool:
        return self.get_config_flag("LinkToPR", True) and "-noprlink" not in self._arguments_lower

    @property
    def progress_url(self) -> str:
        return f"{self.settings.public_base_url}/api/runtime-utils/jobs/progress?jobId={self.external_id}"

    @property
    def metadata_url(self) -> str:
        return f"{self.settings.public_base_url}/api/runtime-utils/jobs/metadata?jobId={self.job_id}"

    @property
    def title(self) -> str:
        if self.pull_request is not None:
            descriptor = f"[{self.pull_request.user_login}] {self.pull_request.title}"
        elif "PrRepo" in self.metadata:
            descriptor = f"{self.metadata['PrRepo']}/{self.metadata['PrBranch']}"
        elif self.github_comment is not None:
            descriptor = f"For {self.github_commenter_login} in {self.repo_owner}/{self.repo_name}#{self.github_comment.issue_number}"
        elif self.github_commenter_login:
            descriptor = f"For {self.github_commenter_login}"
        else:
            descriptor = self.start_time.isoformat(timespec="seconds")
        return truncate_with_dots(f"[{self.title_prefix}] {descriptor}", TITLE_MAX_LENGTH)

    @property
    def completed(self) -> bool:
        return not self._clock.running

    @property
    def elapsed_seconds(self) -> float:
        return self._clock.elapsed

    def get_elapsed_time(self, include_seconds: bool = True) -> str:
        return elapsed_time(self._clock.elapsed, include_seconds)

    @property
    def first_error_message(self) -> str | None:
        return self._first_error_message

    @property
    def idle_timeout_seconds(self) -> float:
        return self.idle_timeout_ms / 1000

    @property
    def idle_timed_out(self) -> bool:
        """True when the idle window was cut short (timeout, fail-fast or forced)."""
        return self.cancellation.source in (CompletionSource.IDLE_TIMEOUT, CompletionSource.FAIL_FAST)

    @property
    def completion_signaled(self) -> bool:
        return self._completion.is_set()

    @property
    def artifacts(self) -> list[Artifact]:
        with self._artifacts_lock:
            return list(self._artifacts)

    @property
    def total_artifact_bytes(self) -> int:
        with self._artifacts_lock:
            return self._total_artifact_bytes

    def get_config_flag(self, name: str, default):
        return self.registry.configuration.get(f"RuntimeUtils.{name}", default)

    # ------------------------------------------------------------------
    # Loop plumbing
    # ------------------------------------------------------------------

    def _call_soon(self, callback: Callable[..., object], *args) -> None:
        """Run ``callback`` on the job's loop, from whatever thread we are on."""
        loop = self._loop
        if loop is None or loop.is_closed():
            callback(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def _on_cancelled(self, source: CompletionSource) -> None:
        self._idle_timer.disable()
        self._duration_timer.disable()

        message = {
            CompletionSource.IDLE_TIMEOUT: IDLE_TIMEOUT_MESSAGE,
            CompletionSource.DURATION_TIMEOUT: DURATION_TIMEOUT_MESSAGE,
        }.get(source)
        if message is not None and self._first_error_message is None:
            self._first_error_message = message
            self.log(message)

        logger.info("Job %s completion source: %s", self.external_id, source.value)

        if self._core_task is not None and not self._core_task.done():
            self._core_task.cancel()
        self._completion.set()

    def extend_idle_timeout(self, multiplier: float) -> None:
        """Stretch the current idle window; the next log line restores the normal one."""
        self._call_soon(self._idle_timer.reset, self.idle_timeout_seconds * multiplier)

    def force_idle_timeout(self) -> None:
        self._call_soon(self._idle_timer.fire)

    async def wait_for_completion(self) -> None:
        await self._completion.wait()

    # ------------------------------------------------------------------
    # Remote worker callbacks
    # ------------------------------------------------------------------

    def log(self, line: str) -> None:
        total = int(self._clock.elapsed)
        hours, rem = divmod(total, 3600)
        minutes, seconds = divmod(rem, 60)
        self.raw_logs_received([f"[{hours:02}:{minutes:02}:{seconds:02}]* {line}"])

    def raw_logs_received(self, lines: Iterable[str]) -> None:
        if self.completed:
            return

        batch = list(lines)
        self._logs.add_lines(batch)
        self._call_soon(self._idle_timer.reset, self.idle_timeout_seconds)

        for line in batch:
            # ERROR: System.Exception: foo
            if line.startswith("ERROR: ") and self._first_error_message is None:
                self._first_error_message = line
                if self.pull_request is not None and self.post_error_as_github_comment:
                    self._call_soon(self._spawn_error_comment)

    def _spawn_error_comment(self) -> None:
        if self._error_comment_posted or not self.get_config_flag("PostErrorComments", True):
            return
        if self._loop is None:
            logger.warning("Job %s not running, skipping error comment", self.external_id)
            return
        self._error_comment_posted = True
        spawn_background(self._post_error_comment(), description=f"error-comment:{self.external_id}")

    async def _post_error_comment(self) -> None:
        message = self._first_error_message
        try:
            await self.github.create_comment(self.repo_owner, self.repo_name, self.pull_request.number, f"```\n{message}\n```")
        except Exception as exc:  # noqa: BLE001
            await self.registry.ops.send(f"Failed to post comment for message '{message}'", exc)

    @staticmethod
    def is_valid_artifact_name(file_name: str) -> bool:
        return bool(_ARTIFACT_NAME_RE.match(file_name)) and ".." not in file_name

    async def artifact_received(self, file_name: str, content: BinaryIO | bytes) -> bool:
        """Upload an artifact. Returns False if a ceiling rejected it."""
        with self._artifacts_lock:
            if self._artifact_count >= MAX_ARTIFACT_COUNT:
                rejected_for_count = True
            else:
                rejected_for_count = False
                self._artifact_count += 1

        if rejected_for_count:
            self.log(f"Too many artifacts received, skipping {file_name}")
            return False

        if isinstance(content, (bytes, bytearray)):
            content = io.BytesIO(content)

        replacement = await self.intercept_artifact(file_name, content)
        if replacement is not None:
            content = io.BytesIO(replacement)

        storage = self.registry.storage
        key = f"{ARTIFACTS_PREFIX}{self.external_id}/{file_name}"
        size = await storage.upload(key, content)
        url = await self.registry.url_shortener.create(self.progress_url, storage.public_url(key))

        with self._artifacts_lock:
            accepted = MAX_TOTAL_ARTIFACT_BYTES - self._total_artifact_bytes >= size
            if accepted:
                self._artifacts.append(Artifact(file_name, url, size))
                self._total_artifact_bytes += size

        if not accepted:
            self.log(f"Artifact '{file_name}' was not saved because it would exceed the {rough_size(MAX_TOTAL_ARTIFACT_BYTES)} limit")
            await storage.delete(key)
            return False

        self.log(f"Saved artifact '{file_name}' to {url} ({rough_size(size)})")
        return True

    @staticmethod
    async def read_artifact(content: BinaryIO, limit_bytes: int) -> bytes:
        """Read an intercepted artifact fully. Raises ``ValueError`` past ``limit_bytes``."""
        data = await asyncio.to_thread(content.read, limit_bytes + 1)
        if len(data) > limit_bytes:
            raise ValueError(f"Artifact exceeds the {rough_size(limit_bytes)} interception limit")
        return data

    def record_remote_runner_contact(self) -> bool:
        """Returns True on the first contact."""
        if self.initial_remote_runner_contact is not None:
            return False
        self.initial_remote_runner_contact = datetime.now(UTC)
        self.log("Initial remote runner contact")
        return True

    def update_system_info(self, info: SystemHardwareInfo, progress_summary: str | None) -> None:
        if self.completed:
            return
        self.last_system_info = info
        progress_summary = (progress_summary or "").strip()
        self.last_progress_summary = truncate_with_dots(progress_summary, 100) if progress_summary else None

    def notify_job_completion(self) -> None:
        self._call_soon(self._complete)

    def _complete(self) -> None:
        if not self._completion.is_set():
            self._completion.set()
            logger.info("Finished job %s in %s", self.progress_url, self.get_elapsed_time())
        self._idle_timer.disable()

    def fail_fast(self, message: str, cancelled_by_author: bool) -> None:
        if self.completed or self.cancellation.cancelled:
            return

        self._manually_cancelled = True
        if cancelled_by_author:
            self.should_mention_job_initiator = False

        message = f"!!! FailFast: {message}"
        self._first_error_message = message
        self.log(message)
        self._call_soon(self.cancellation.cancel, CompletionSource.FAIL_FAST)

    # ------------------------------------------------------------------
    # Log reading
    # ------------------------------------------------------------------

    async def stream_logs(self) -> AsyncIterator[str | None]:
        """Yield log lines as they arrive; ``None`` means "flush now".

        Ends once the job is completed and every line was delivered.
        """
        cursor = 0
        batch_size = 100
        cooldown_ms = 100
        last_yield = time.monotonic()
        last_read_count = 0

        while True:
            lines, cursor = self._logs.get(cursor, batch_size)
            for line in lines:
                yield line

            if lines:
                cooldown_ms = 0
                last_yield = time.monotonic()
                if len(lines) != batch_size:
                    yield None
            else:
                if last_read_count == batch_size:
                    yield None

                if self.completed:
                    break

                cooldown_ms = min(max(cooldown_ms + 10, 100), 1000)
                await asyncio.sleep(cooldown_ms / 1000)

                if time.monotonic() - last_yield > 10:
                    last_yield = time.monotonic()
                    yield None

            last_read_count = len(lines)

    def try_find_log_line(self, predicate: Callable[[str], bool]) -> str | None:
        cursor = 0
        while True:
            lines, cursor = self._logs.get(cursor, 100)
            if not lines:
                return None
            for line in lines:
                if predicate(line):
                    return line

    def log_lines(self) -> list[str]:
        return self._logs.snapshot()

    # ------------------------------------------------------------------
    # Tracking issue
    # ------------------------------------------------------------------

    def _arguments_line(self) -> str:
        if self.custom_arguments.strip():
            return f"Using arguments: ````{self.custom_arguments}````"
        return ""

    def _link_line(self) -> str:
        if self.should_link_to_pr_or_branch and self.tested_pr_or_branch_link:
            return self.tested_pr_or_branch_link
        return ""

    async def _create_tracking_issue(self, start_github_actions: bool) -> None:
        if self.suppress_tracking_issue:
            if start_github_actions:
                await self.registry.ops.send(f"Can't use GH Actions when tracking issue is suppressed: <{self.progress_url}>")
            return

        marker = f"<!-- RUN_AS_GITHUB_ACTION_{self.external_id} -->" if start_github_actions else ""
        body = "\n".join(
            [
                f"Job is in progress - see {self.progress_url}",
                self._link_line(),
                self._arguments_line(),
                "",
                marker,
            ]
        )

        self.tracking_issue = await self.github.create_issue(
            self.settings.issue_repository_owner,
            self.settings.issue_repository_name,
            self.title,
            body,
        )

    async def update_issue_body(self, new_body: str) -> None:
        if self.tracking_issue is None:
            self.log(f"No tracking issue. New body:\n{new_body}")
            return
        await self.github.update_issue_body(
            self.settings.issue_repository_owner,
            self.settings.issue_repository_name,
            self.tracking_issue.number,
            new_body,
        )

    def get_artifact_list(self) -> str:
        artifacts = self.artifacts
        if not artifacts:
            return ""
        lines = ["Artifacts:"]
        lines.extend(f"- [{a.file_name}]({a.url}) ({rough_size(a.size)})" for a in artifacts)
        return "\n".join(lines) + "\n\n"

    def _commit_link(self, marker: str, repo_key: str, label: str) -> str:
        line = self.try_find_log_line(lambda l: marker in l)
        if line is None or repo_key not in self.metadata:
            return ""
        return f"{label}: https://github.com/{self.metadata[repo_key]}/commit/{line.split(' ')[-1]}"

    def _fenced_error(self) -> str:
        if self._first_error_message is None:
            return ""
        return f"\n```\n{self._first_error_message}\n```\n"

    async def set_final_tracking_issue_body(self, custom_info: str = "") -> None:
        runner_delay = ""
        if self.initial_remote_runner_contact is not None:
            delay = (self.initial_remote_runner_contact - self.start_time).total_seconds()
            runner_delay = f" (remote runner delay: {elapsed_time(delay)})"

        body = "\n".join(
            [
                f"[Job]({self.progress_url}) completed in {self.get_elapsed_time()}{runner_delay}.",
                self._link_line(),
                self._arguments_line(),
                self._commit_link("main commit: ", "BaseRepo", "Main commit"),
                self._commit_link("pr commit: ", "PrRepo", "PR commit"),
                self._fenced_error(),
                "",
                custom_info,
                "",
                self.get_artifact_list(),
            ]
        )
        await self.update_issue_body(body)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def _parse_pr_list(self, argument_name: str) -> None:
        flag = f"-{argument_name.lower()} "
        offset = self._arguments_lower.find(flag)
        if offset < 0:
            return

        value = self.custom_arguments[offset + len(flag) :].split(" ", 1)[0]
        refs = [part.strip().strip("#<>") for part in value.split(",") if part.strip()]
        if len(refs) > MAX_REF_LIST_LENGTH:
            raise ValueError(f"Too many references in -{argument_name} (max {MAX_REF_LIST_LENGTH})")

        branches: list[tuple[str, str]] = []
        for ref in refs:
            number = try_parse_issue_or_pr_number(ref)
            if number is not None and number < 1_000_000_000:
                try:
                    pr = await self.github.get_pull_request(self.repo_owner, self.repo_name, number)
                except Exception:
                    self.log(f"Failed to get PR info for {number}")
                    raise
                self.log(f"PR {number}: {pr.head_repo_full_name}/{pr.head_ref}")
                branches.append((pr.head_repo_full_name, pr.head_ref))

            resolved = await try_resolve_repo_and_branch(self.github, ref)
            if resolved is not None:
                self.log(f"Branch: {resolved[0]}/{resolved[1]}")
                branches.append(resolved)

        value = ",".join(f"{repo};{branch}" for repo, branch in branches)
        self.log(f"Adding {argument_name}: {value}")
        self.metadata.add(argument_name, value)

    async def _initialize_all(self) -> None:
        await self._parse_pr_list("dependsOn")
        await self._parse_pr_list("combineWith")
        await self.initialize()

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def run_on_new_virtual_machine(self, default_core_count: int) -> None:
        scripts = build_startup_scripts(self.job_id, self.metadata_url, self.settings.runner_repository_url)
        kind = choose_provisioner(
            use_helix=self.use_helix,
            use_windows=self.use_windows,
            use_hetzner=self.use_hetzner,
            force_hetzner=self.get_config_flag("ForceHetzner", False),
        )
        provisioner = self.registry.provisioners.get(kind)
        if provisioner is None:
            raise RuntimeUtilsError(f"No {kind.value} provisioner is configured")
        await provisioner.run(self, scripts, default_core_count)

    async def run_on_github_actions(self) -> None:
        """The workflow is triggered by the tracking issue marker; just wait for the runner."""
        await self.wait_for_completion()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run_core_cancellable(self) -> None:
        if self.cancellation.cancelled:
            raise JobCancelledError(self._first_error_message or "Job cancelled")

        self._core_task = asyncio.create_task(self.run_core(), name=f"job-core:{self.external_id}")
        try:
            await self._core_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise JobCancelledError(self._first_error_message or "Job cancelled") from None
        finally:
            self._core_task = None

    async def _save_logs_artifact(self) -> str | None:
        data = self._logs.to_text().encode("utf-8")
        key: str | None = f"{LOGS_PREFIX}{self.external_id}.txt"
        try:
            await self.registry.storage.upload(key, data, content_type="text/plain")
        except Exception as exc:  # noqa: BLE001
            await self.registry.ops.send(f"Failed to archive logs for {self.external_id}", exc)
            key = None

        await self.artifact_received("logs.txt", data)
        return key

    def _build_record(self, logs_key: str | None) -> CompletedJobRecord:
        return CompletedJobRecord(
            external_id=self.external_id,
            title=self.title,
            started_at=self.start_time,
            duration_seconds=self._clock.elapsed,
            tested_pr_or_branch_link=self.tested_pr_or_branch_link,
            tracking_issue_url=self.tracking_issue.html_url if self.tracking_issue else None,
            metadata=self.metadata.to_dict(),
            artifacts=[ArtifactOut(file_name=a.file_name, url=a.url, size=a.size) for a in self.artifacts],
            logs_artifact_url=self.registry.storage.public_url(logs_key) if logs_key else None,
        )

    async def run_job(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._idle_timer.attach(self._loop)
        self._duration_timer.attach(self._loop)

        self.log("Starting ...")

        if "-notimelimit" in self._arguments_lower:
            self.max_duration_seconds = ADMIN_NO_TIME_LIMIT_SECONDS if self.is_from_admin else self.max_duration_seconds * 2

        self.should_mention_job_initiator = self.get_config_flag("ShouldMentionJobInitiator", True)

        self._duration_timer.reset(self.max_duration_seconds)
        self._idle_timer.reset(self.idle_timeout_seconds)

        initialization_error: BaseException | None = None
        try:
            await asyncio.wait_for(self._initialize_all(), INITIALIZATION_TIMEOUT_SECONDS)
            max_end = self.start_time.timestamp() + self.max_duration_seconds
            self.metadata["JobMaxEndTime"] = str(int(max_end * 1000))
        except Exception as exc:  # noqa: BLE001
            initialization_error = exc

        try:
            await self._create_tracking_issue(self.run_using_github_actions and initialization_error is None)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to create tracking issue for %s", self.external_id)
            initialization_error = initialization_error or exc

        logs_key: str | None = None
        try:
            self.log(f"Using custom arguments: '{self.custom_arguments}'")

            if initialization_error is not None:
                raise initialization_error

            if self.run_using_github_actions:
                self.log("Starting runner on GitHub actions ...")

            await self._run_core_cancellable()

            self.last_system_info = None
            logs_key = await self._save_logs_artifact()
        except Exception as exc:
            self.last_system_info = None
            if self.cancellation.source is None:
                self.cancellation.cancel(CompletionSource.ERROR)

            self.log(f"Uncaught exception: {''.join(traceback.format_exception(exc))}")
            if self._first_error_message is None:
                self._first_error_message = "".join(traceback.format_exception_only(exc)).strip()

            try:
                logs_key = await self._save_logs_artifact()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to save logs artifact for %s", self.external_id)

            if not self._manually_cancelled:
                await self.registry.ops.send(f"Job {self.progress_url} failed", exc)

            try:
                await self.update_issue_body(
                    f"Something went wrong with the [Job]({self.progress_url}) after {self.get_elapsed_time()} :man_shrugging:\n"
                    "\n"
                    "```\n"
                    f"{self._first_error_message}\n"
                    "```\n"
                )
            except Exception:  # noqa: BLE001
                logger.exception("Failed to update tracking issue for %s", self.external_id)
        finally:
            self._clock.stop()
            self.cancellation.cancel(CompletionSource.FINISHED)
            self._idle_timer.disable()
            self._duration_timer.disable()
            self.notify_job_completion()

            try:
                await self.registry.completed_jobs.save(self._build_record(logs_key))
            except Exception as exc:  # noqa: BLE001
                await self.registry.ops.send(f"Failed to save completed job record for {self.external_id}", exc)

            if self.should_mention_job_initiator and self.github_commenter_login and self.tracking_issue is not None:
                try:
                    await self.github.create_comment(
                        self.settings.issue_repository_owner,
                        self.settings.issue_repository_name,
                        self.tracking_issue.number,
                        f"@{self.github_commenter_login}",
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to mention job initiator (%s): %s", self.github_commenter_login, exc)


__all__ = [
    "Artifact",
    "JobBase",
    "JobCancelledError",
    "MAX_ARTIFACT_COUNT",
    "MAX_TOTAL_ARTIFACT_BYTES",
]
