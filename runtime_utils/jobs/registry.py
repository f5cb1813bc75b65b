"""Job registry.

Tracks every live job under both its internal id (used by the remote runner)
and its public id (used in links), authorizes requesters, and polls GitHub for
``@bot`` mentions that should start new jobs.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from enum import Enum
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from runtime_utils.config import Settings
from runtime_utils.config import get_settings
from runtime_utils.jobs.backport import BackportJob
from runtime_utils.jobs.base import JobBase
from runtime_utils.jobs.benchmark import BenchmarkLibrariesJob
from runtime_utils.jobs.fake import FakeInMemoryJob
from runtime_utils.jobs.fuzz import FuzzLibrariesJob
from runtime_utils.jobs.jit_diff import JitDiffJob
from runtime_utils.jobs.kinds import JobKind
from runtime_utils.jobs.rebase import RebaseJob
from runtime_utils.jobs.regex_diff import RegexDiffJob
from runtime_utils.provisioners.azure import AzureResourceManagerClient
from runtime_utils.provisioners.azure import AzureVmProvisioner
from runtime_utils.provisioners.base import Provisioner
from runtime_utils.provisioners.base import ProvisionerKind
from runtime_utils.provisioners.helix import HelixClient
from runtime_utils.provisioners.helix import HelixQueueProvisioner
from runtime_utils.provisioners.hetzner import HetznerClient
from runtime_utils.provisioners.hetzner import HetznerVmProvisioner
from runtime_utils.services.artifact_storage import BlobStorage
from runtime_utils.services.background import spawn_background
from runtime_utils.services.configuration import ConfigurationService
from runtime_utils.services.github import GitHubClient
from runtime_utils.services.github import GitHubComment
from runtime_utils.services.job_records import CompletedJobStore
from runtime_utils.services.job_records import ProcessedMentionStore
from runtime_utils.services.mentions import MentionIntent
from runtime_utils.services.mentions import classify_backport_mention
from runtime_utils.services.mentions import classify_issue_mention
from runtime_utils.services.mentions import classify_pull_request_mention
from runtime_utils.services.mentions import extract_mention_arguments
from runtime_utils.services.mentions import is_help_request
from runtime_utils.services.mentions import usage_markdown
from runtime_utils.services.ops_alerts import OpsAlerts
from runtime_utils.services.rolling_log import RollingLog
from runtime_utils.services.url_shortener import PassthroughUrlShortener
from runtime_utils.services.url_shortener import UrlShortener

logger = logging.getLogger(__name__)

JOB_CLASSES: dict[JobKind, type[JobBase]] = {
    JobKind.JIT_DIFF: JitDiffJob,
    JobKind.FUZZ: FuzzLibrariesJob,
    JobKind.BENCHMARK: BenchmarkLibrariesJob,
    JobKind.REGEX_DIFF: RegexDiffJob,
    JobKind.REBASE: RebaseJob,
    JobKind.BACKPORT: BackportJob,
    JobKind.FAKE: FakeInMemoryJob,
}

BACKPORT_REPOSITORY = f"{BackportJob.repo_owner}/{BackportJob.repo_name}"
MENTION_LOOKBACK = timedelta(minutes=5)
MENTIONS_PER_REPOSITORY = 25
DIAGNOSTIC_LOG_CAPACITY = 10_000

# Bot accounts that routinely quote other people's mentions
_SILENT_UNAUTHORIZED_LOGINS = ("msftbot", "dotnet-policy-service")


class IdKind(str, Enum):
    INTERNAL = "internal"
    PUBLIC = "public"


class JobRegistry:
    def __init__(
        self,
        *,
        settings: Settings,
        configuration: ConfigurationService,
        github: GitHubClient,
        storage: BlobStorage,
        completed_jobs: CompletedJobStore,
        processed_mentions: ProcessedMentionStore,
        provisioners: dict[ProvisionerKind, Provisioner],
        ops: OpsAlerts,
        url_shortener: UrlShortener | None = None,
        poll_mentions: bool = False,
    ) -> None:
        self.settings = settings
        self.configuration = configuration
        self.github = github
        self.storage = storage
        self.completed_jobs = completed_jobs
        self.processed_mentions = processed_mentions
        self.provisioners = provisioners
        self.ops = ops
        self.url_shortener = url_shortener or PassthroughUrlShortener()
        self.poll_mentions = poll_mentions

        self.diagnostic_log = RollingLog(DIAGNOSTIC_LOG_CAPACITY)

        self._jobs: dict[tuple[IdKind, str], JobBase] = {}
        self._lock = threading.Lock()
        self._shutting_down = False
        self._scheduler: AsyncIOScheduler | None = None
        self._last_scan: datetime | None = None
        self._owned_clients: list[Any] = []

    @classmethod
    def from_settings(cls, settings: Settings | None = None, session_factory: sessionmaker | None = None) -> "JobRegistry":
        """Wire up the production collaborators."""
        settings = settings or get_settings()
        if session_factory is None:
            from runtime_utils.db import SessionLocal

            session_factory = SessionLocal

        ops = OpsAlerts(settings)
        github = GitHubClient(settings.github_token)
        storage = BlobStorage(
            settings.s3_bucket,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            public_base_url=settings.s3_public_base_url,
        )

        provisioners: dict[ProvisionerKind, Provisioner] = {}
        owned: list[Any] = [github]

        if settings.azure_subscription_id and settings.azure_client_id:
            arm = AzureResourceManagerClient(
                settings.azure_tenant_id or "",
                settings.azure_client_id,
                settings.azure_client_secret or "",
                settings.azure_subscription_id,
            )
            owned.append(arm)
            provisioners[ProvisionerKind.AZURE] = AzureVmProvisioner(
                ops,
                arm,
                template_url=settings.azure_vm_template_url,
                locations=settings.azure_location_list(),
            )
        else:
            logger.warning("Azure credentials not configured, Azure VMs are disabled")

        if settings.hetzner_api_key:
            hetzner = HetznerClient(settings.hetzner_api_key)
            owned.append(hetzner)
            provisioners[ProvisionerKind.HETZNER] = HetznerVmProvisioner(ops, hetzner)

        helix = HelixClient(settings.helix_api_base_url)
        owned.append(helix)
        provisioners[ProvisionerKind.HELIX] = HelixQueueProvisioner(ops, helix, creator=settings.bot_login)

        registry = cls(
            settings=settings,
            configuration=ConfigurationService(session_factory),
            github=github,
            storage=storage,
            completed_jobs=CompletedJobStore(session_factory),
            processed_mentions=ProcessedMentionStore(session_factory),
            provisioners=provisioners,
            ops=ops,
            poll_mentions=not settings.testing and bool(settings.github_token),
        )
        registry._owned_clients = owned
        return registry

    def _log(self, message: str) -> None:
        logger.info(message)
        self.diagnostic_log.add_lines([f"{datetime.now(UTC):%Y-%m-%d %H:%M:%S} {message}"])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    async def start(self) -> None:
        await asyncio.to_thread(self.configuration.load)

        if not self.poll_mentions or self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.poll_mentions_once,
            trigger=IntervalTrigger(seconds=self.settings.mention_poll_interval_seconds),
            id="mention_poller",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Mention poller started (every %ss)", self.settings.mention_poll_interval_seconds)

    async def stop(self) -> None:
        with self._lock:
            self._shutting_down = True

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        active = self.get_all_active_jobs()
        for job in active:
            job.fail_fast("runtime-utils is restarting", cancelled_by_author=False)

        if active:
            # Give jobs time to delete cloud resources and save state
            await asyncio.sleep(self.settings.shutdown_grace_seconds)

        for client in self._owned_clients:
            try:
                await client.aclose()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to close %s", type(client).__name__)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def start_job(self, kind: JobKind, **kwargs: Any) -> JobBase:
        job = JOB_CLASSES[kind](self, **kwargs)
        return self.start_job_core(job)

    def start_job_core(self, job: JobBase) -> JobBase:
        with self._lock:
            if self._shutting_down:
                logger.warning("Registry is shutting down, not starting %s", job.external_id)
                return job
            self._jobs[(IdKind.INTERNAL, job.job_id)] = job
            self._jobs[(IdKind.PUBLIC, job.external_id)] = job

        self._log(f"Started {job.job_type} {job.external_id} for {job.github_commenter_login}")

        loop = asyncio.get_running_loop()
        loop.call_later(self.settings.job_retention_hours * 3600, self._forget, job)
        spawn_background(self._run_detached(job), description=f"job:{job.external_id}")
        return job

    async def _run_detached(self, job: JobBase) -> None:
        try:
            await job.run_job()
        except Exception as exc:  # noqa: BLE001
            await self.ops.send(f"Job {job.external_id} escaped its run loop", exc)

    def _forget(self, job: JobBase) -> None:
        with self._lock:
            self._jobs.pop((IdKind.INTERNAL, job.job_id), None)
            self._jobs.pop((IdKind.PUBLIC, job.external_id), None)

    def try_get_job(self, job_id: str, public: bool) -> JobBase | None:
        kind = IdKind.PUBLIC if public else IdKind.INTERNAL
        with self._lock:
            job = self._jobs.get((kind, job_id))
        if job is None:
            return None
        # Both id spaces share one map; make sure the id matches the requested slot
        if (job.external_id if public else job.job_id) != job_id:
            return None
        return job

    def get_all_active_jobs(self) -> list[JobBase]:
        with self._lock:
            jobs = [job for (kind, _), job in self._jobs.items() if kind is IdKind.PUBLIC]
        active = [job for job in jobs if not job.completed]
        active.sort(key=lambda job: job.elapsed_seconds, reverse=True)
        return active

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def check_user_permissions(self, login: str | None) -> bool:
        if not login:
            return False
        return self.configuration.get(f"RuntimeUtils.AuthorizedUser.{login}", False)

    def check_admin_permissions(self, login: str | None) -> bool:
        if not login:
            return False
        return self.configuration.get(f"RuntimeUtils.AdminUser.{login}", False)

    # ------------------------------------------------------------------
    # Mention poller
    # ------------------------------------------------------------------

    async def poll_mentions_once(self) -> None:
        if self._shutting_down:
            return

        now = datetime.now(UTC)
        since = (self._last_scan or now) - MENTION_LOOKBACK
        self._last_scan = now

        for repository in self.settings.watched_repository_list():
            owner, name = repository.split("/", 1)
            try:
                comments = await self.github.list_recent_comments(owner, name, since, limit=MENTIONS_PER_REPOSITORY)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failure while polling for mentions in %s: %s", repository, exc)
                continue

            for comment in comments:
                try:
                    await self.process_comment(comment)
                except Exception as exc:  # noqa: BLE001
                    await self.ops.send(f"Failure while processing comment {comment.html_url}", exc)

    async def process_comment(self, comment: GitHubComment) -> JobBase | None:
        """Handle one comment from the feed. Returns the started job, if any."""
        bot = self.settings.bot_login
        if f"@{bot}".lower() not in comment.body.lower():
            return None
        if comment.user_type != "User" or comment.user_login.lower() == bot.lower():
            return None
        if not await self.processed_mentions.try_add(comment.id):
            return None

        arguments = extract_mention_arguments(comment.body, bot)
        if arguments is None:
            return None

        self._log(f"Processing mention from {comment.user_login} in {comment.html_url}: '{comment.body}'")

        if is_help_request(arguments):
            await self._reply(comment, usage_markdown(bot))
            return None

        login = comment.user_login
        if not self.check_user_permissions(login):
            if not any(name in login.lower() for name in _SILENT_UNAUTHORIZED_LOGINS):
                await self.ops.send(
                    f"User {login} tried to start a job, but is not authorized. <{comment.html_url}>\n\n"
                    f"`RuntimeUtils.AuthorizedUser.{login} = true`"
                )
            return None

        repository = comment.repository
        pull_request = None
        if await self.github.is_pull_request(comment.repo_owner, comment.repo_name, comment.issue_number):
            pull_request = await self.github.get_pull_request(comment.repo_owner, comment.repo_name, comment.issue_number)
            if repository == self.settings.default_repository:
                if not pull_request.is_open:
                    return None
                intent = classify_pull_request_mention(arguments, bot)
            elif repository == BACKPORT_REPOSITORY:
                intent = classify_backport_mention(arguments)
            else:
                return None
        elif repository == self.settings.default_repository:
            intent = classify_issue_mention(arguments)
        else:
            return None

        return await self._dispatch(comment, arguments, pull_request, intent)

    async def _dispatch(self, comment: GitHubComment, arguments: str, pull_request, intent: MentionIntent) -> JobBase | None:
        if intent.reply is not None:
            await self._reply(comment, intent.reply)
            return None
        if intent.kind is None:
            return None

        if intent.requires_push_access and not await self.github.has_push_access(pull_request.head_repo_full_name):
            await self._reply(
                comment,
                "I don't have push access to your repository.\n"
                f"You can add me as a collaborator at https://github.com/{pull_request.head_repo_full_name}/settings/access",
            )
            await self.ops.send(f"User {comment.user_login} requires collaborator access. <{pull_request.html_url}>")
            return None

        return self.start_job(
            intent.kind,
            github_commenter_login=comment.user_login,
            arguments=arguments,
            comment=comment,
            pull_request=pull_request,
        )

    async def _reply(self, comment: GitHubComment, content: str) -> None:
        await self.github.create_comment(comment.repo_owner, comment.repo_name, comment.issue_number, content)


__all__ = ["IdKind", "JOB_CLASSES", "JobRegistry"]
