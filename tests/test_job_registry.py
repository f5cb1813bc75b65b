"""JobRegistry: id lookup, active job listing, shutdown, authorization and mention handling."""

import asyncio

from conftest import ScriptedJob
from conftest import make_comment
from conftest import make_pull_request
from conftest import wait_until

from runtime_utils.jobs.backport import BackportJob
from runtime_utils.jobs.benchmark import BenchmarkLibrariesJob
from runtime_utils.jobs.fake import FakeInMemoryJob
from runtime_utils.jobs.fuzz import FuzzLibrariesJob
from runtime_utils.jobs.jit_diff import JitDiffJob
from runtime_utils.jobs.kinds import JobKind
from runtime_utils.jobs.rebase import RebaseJob

COMPARE_URL = "https://github.com/dotnet/runtime/compare/" + "a" * 40 + "..." + "b" * 40


class TestLookup:
    async def test_ids_resolve_only_in_their_own_space(self, registry):
        first = ScriptedJob(registry)
        second = ScriptedJob(registry)
        # Force a collision between one job's public id and another's internal id
        second.job_id = first.external_id

        registry.start_job_core(first)
        registry.start_job_core(second)

        assert registry.try_get_job(first.external_id, public=True) is first
        assert registry.try_get_job(first.external_id, public=False) is second
        assert registry.try_get_job(first.job_id, public=False) is first
        assert registry.try_get_job(first.job_id, public=True) is None
        assert registry.try_get_job("unknown", public=True) is None

    async def test_active_jobs_are_sorted_longest_running_first(self, registry):
        older = registry.start_job_core(ScriptedJob(registry))
        await asyncio.sleep(0.05)
        newer = registry.start_job_core(ScriptedJob(registry))
        done = registry.start_job_core(ScriptedJob(registry, body=lambda job: asyncio.sleep(0)))
        await wait_until(lambda: done.completed)

        assert registry.get_all_active_jobs() == [older, newer]
        # Completed jobs stay addressable until retention expires
        assert registry.try_get_job(done.external_id, public=True) is done

    async def test_jobs_are_forgotten_after_retention(self, make_registry, test_settings):
        settings = test_settings.model_copy(update={"job_retention_hours": 0.1 / 3600})
        registry = make_registry(settings=settings)
        try:
            job = registry.start_job_core(ScriptedJob(registry, body=lambda job: asyncio.sleep(0)))
            await wait_until(lambda: registry.try_get_job(job.external_id, public=True) is None)
            assert registry.try_get_job(job.job_id, public=False) is None
        finally:
            await registry.stop()

    async def test_start_job_by_kind(self, registry):
        job = registry.start_job(JobKind.FAKE, github_commenter_login="alice")

        assert isinstance(job, FakeInMemoryJob)
        assert job.suppress_tracking_issue
        await wait_until(lambda: job.remote_login_credentials is not None)
        assert job.custom_arguments == "Fake args"


class TestShutdown:
    async def test_stop_fails_active_jobs_and_refuses_new_ones(self, registry):
        job = registry.start_job_core(ScriptedJob(registry))
        await wait_until(lambda: job.tracking_issue is not None)

        await registry.stop()
        await wait_until(lambda: job.completed)

        assert registry.shutting_down
        assert job.first_error_message == "!!! FailFast: runtime-utils is restarting"

        late = registry.start_job_core(ScriptedJob(registry))
        assert registry.try_get_job(late.external_id, public=True) is None
        assert not late.completed

    async def test_scheduler_registers_the_mention_poller(self, make_registry):
        registry = make_registry(poll_mentions=True)
        await registry.start()
        try:
            assert registry._scheduler.get_job("mention_poller") is not None
        finally:
            await registry.stop()
        assert registry._scheduler is None


class TestAuthorization:
    def test_user_and_admin_flags(self, make_registry):
        registry = make_registry()
        registry.configuration.set("RuntimeUtils.AdminUser.root", True)

        assert registry.check_user_permissions("alice")
        assert not registry.check_user_permissions("mallory")
        assert not registry.check_user_permissions(None)
        assert registry.check_admin_permissions("root")
        assert not registry.check_admin_permissions("alice")


class TestMentions:
    async def test_pull_request_mention_starts_jit_diff(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)

        job = await registry.process_comment(make_comment("@MihuBot -arm -fast"))

        assert isinstance(job, JitDiffJob)
        assert job.custom_arguments == "-arm -fast"
        assert job.use_arm and job.fast
        assert job.pull_request.number == 42
        assert registry.try_get_job(job.external_id, public=True) is job
        assert any("Processing mention from alice" in line for line in registry.diagnostic_log.snapshot())

    async def test_comment_is_processed_once(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)
        comment = make_comment("@MihuBot", comment_id=77)

        assert await registry.process_comment(comment) is not None
        assert await registry.process_comment(comment) is None

    async def test_help_is_answered_without_authorization(self, registry, github, ops):
        job = await registry.process_comment(make_comment("@MihuBot help", login="mallory"))

        assert job is None
        assert "<details>" in github.comments_on(42)[0]
        assert ops.messages == []

    async def test_unauthorized_user_alerts_operators(self, registry, github, ops):
        github.pull_requests[42] = make_pull_request(42)

        assert await registry.process_comment(make_comment("@MihuBot", login="mallory")) is None

        assert github.comments == []
        assert "mallory" in ops.messages[0]
        assert "RuntimeUtils.AuthorizedUser.mallory = true" in ops.messages[0]

    async def test_known_bots_are_ignored_silently(self, registry, ops):
        assert await registry.process_comment(make_comment("> @MihuBot\n\n@MihuBot", login="msftbot")) is None
        assert ops.messages == []

    async def test_quoted_and_fenced_mentions_are_ignored(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)

        assert await registry.process_comment(make_comment("```\n@MihuBot\n```", comment_id=1)) is None
        assert await registry.process_comment(make_comment("> @MihuBot -arm", comment_id=2)) is None
        assert github.comments == []

    async def test_non_users_and_the_bot_itself_are_ignored(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)

        assert await registry.process_comment(make_comment("@MihuBot", comment_id=1, user_type="Bot")) is None
        assert await registry.process_comment(make_comment("@MihuBot", comment_id=2, login="mihubot")) is None

    async def test_closed_pull_requests_are_ignored(self, registry, github):
        github.pull_requests[42] = make_pull_request(42, state="closed")

        assert await registry.process_comment(make_comment("@MihuBot")) is None

    async def test_fuzz_without_pattern_gets_usage(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)

        assert await registry.process_comment(make_comment("@MihuBot fuzz")) is None
        assert github.comments_on(42) == ["Usage: `@MihuBot fuzz <fuzzer name pattern>`"]

    async def test_fuzz_with_pattern_starts_fuzzing(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)

        job = await registry.process_comment(make_comment("@MihuBot fuzz SearchValues"))

        assert isinstance(job, FuzzLibrariesJob)

    async def test_rebase_requires_push_access(self, registry, github, ops):
        github.pull_requests[42] = make_pull_request(42)

        assert await registry.process_comment(make_comment("@MihuBot rebase", comment_id=1)) is None
        assert "push access" in github.comments_on(42)[0]
        assert any("collaborator access" in message for message in ops.messages)

        github.push_access.add("contributor/runtime")
        job = await registry.process_comment(make_comment("@MihuBot rebase", comment_id=2))
        assert isinstance(job, RebaseJob)
        assert job.title_prefix == "Rebase"

    async def test_backport_mention_on_yarp(self, registry, github):
        github.pull_requests[9] = make_pull_request(9)

        job = await registry.process_comment(make_comment("@MihuBot backport to release/latest", repo="dotnet/yarp", issue_number=9))

        assert isinstance(job, BackportJob)
        await wait_until(lambda: job.tracking_issue is not None)
        assert job.metadata["BackportJob_TargetBranch"] == "release/latest"
        assert job.metadata["BackportJob_Title"] == "[release/latest] Vectorize IndexOfAny"

    async def test_issue_mentions_only_start_compare_benchmarks(self, registry):
        assert await registry.process_comment(make_comment("@MihuBot benchmark Regex", comment_id=1, issue_number=7)) is None

        job = await registry.process_comment(make_comment(f"@MihuBot benchmark Regex {COMPARE_URL}", comment_id=2, issue_number=7))
        assert isinstance(job, BenchmarkLibrariesJob)

    async def test_unwatched_repositories_are_ignored(self, registry):
        assert await registry.process_comment(make_comment("@MihuBot", repo="someone/else")) is None

    async def test_poller_starts_jobs_from_the_feed(self, registry, github):
        github.pull_requests[42] = make_pull_request(42)
        github.feed = [make_comment("@MihuBot", comment_id=5)]

        await registry.poll_mentions_once()
        await registry.poll_mentions_once()

        active = registry.get_all_active_jobs()
        assert len(active) == 1
        assert isinstance(active[0], JitDiffJob)
