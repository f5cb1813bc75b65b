"""Helix queue provisioner: submission, queue polling, forced idle timeout and cancellation."""

import asyncio
import json

import httpx
import pytest

from conftest import ScriptedJob
from conftest import drain_background
from conftest import wait_until

from runtime_utils.jobs.timeouts import CompletionSource
from runtime_utils.provisioners.base import ProvisionerKind
from runtime_utils.provisioners.helix import HelixClient
from runtime_utils.provisioners.helix import HelixJob
from runtime_utils.provisioners.helix import HelixQueueProvisioner
from runtime_utils.provisioners.helix import HelixWorkItemCounts
from runtime_utils.provisioners.helix import queue_for


class FakeHelix:
    def __init__(self, counts):
        self._counts = list(counts)
        self.submitted: list[dict] = []
        self.cancelled: list[HelixJob] = []

    async def submit_job(self, **kwargs) -> HelixJob:
        self.submitted.append(kwargs)
        return HelixJob(correlation_id="corr-1", cancellation_token="cancel-me")

    async def details_url(self, correlation_id) -> str:
        return f"https://helix.test/api/jobs/{correlation_id}"

    async def work_item_counts(self, correlation_id) -> HelixWorkItemCounts:
        if len(self._counts) > 1:
            return self._counts.pop(0)
        return self._counts[0]

    async def cancel(self, job) -> None:
        self.cancelled.append(job)


def _registry_with(make_registry, ops, helix, poll_interval=0.01):
    provisioner = HelixQueueProvisioner(ops, helix, creator="MihuBot")
    provisioner.poll_interval_seconds = poll_interval
    return make_registry(provisioners={ProvisionerKind.HELIX: provisioner})


class TestQueueSelection:
    @pytest.mark.parametrize(
        ("use_windows", "use_arm", "expected"),
        [
            (False, False, "ubuntu.2204.amd64.open"),
            (False, True, "ubuntu.2204.armarch.open"),
            (True, False, "windows.11.amd64.client.open"),
            (True, True, "windows.11.arm64.open"),
        ],
    )
    def test_queue_for(self, use_windows, use_arm, expected):
        assert queue_for(use_windows=use_windows, use_arm=use_arm) == expected

    def test_queued_counts(self):
        assert HelixWorkItemCounts(waiting=1).queued
        assert HelixWorkItemCounts(unscheduled=1).queued
        assert not HelixWorkItemCounts(running=1).queued


class TestHelixProvisioner:
    async def test_finished_work_item_completes_without_cancelling(self, make_registry, ops):
        helix = FakeHelix(
            [
                HelixWorkItemCounts(waiting=1),
                HelixWorkItemCounts(running=1),
                HelixWorkItemCounts(finished=1),
            ]
        )
        registry = _registry_with(make_registry, ops, helix)

        async def body(job):
            await job.run_on_new_virtual_machine(4)

        job = ScriptedJob(registry, github_commenter_login="alice", arguments="-helix", body=body)
        task = asyncio.create_task(job.run_job())
        await wait_until(lambda: any("No more running Helix work items" in line for line in job.log_lines()))
        job.notify_job_completion()
        await asyncio.wait_for(task, timeout=5)
        await drain_background()

        assert job.cancellation.source is CompletionSource.FINISHED
        assert helix.cancelled == []
        submitted = helix.submitted[0]
        assert submitted["queue_id"] == "ubuntu.2204.amd64.open"
        assert submitted["payload_file_name"] == "start-runner.sh"
        assert submitted["source"] == f"runtime-utils/{job.external_id}/alice"
        assert job.metadata_url in submitted["payload"]

    async def test_stuck_queue_forces_idle_timeout_and_cancels(self, make_registry, ops):
        helix = FakeHelix([HelixWorkItemCounts(waiting=1)])
        registry = _registry_with(make_registry, ops, helix)

        job = ScriptedJob(registry, arguments="-win", body=lambda job: job.run_on_new_virtual_machine(4))
        job.idle_timeout_ms = 50

        await asyncio.wait_for(job.run_job(), timeout=10)
        await drain_background()

        assert job.cancellation.source is CompletionSource.IDLE_TIMEOUT
        assert helix.cancelled == [HelixJob(correlation_id="corr-1", cancellation_token="cancel-me")]
        assert helix.submitted[0]["payload_file_name"] == "start-runner.ps1"


class TestHelixClient:
    async def test_submit_and_poll(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            assert request.url.params["api-version"] == "2019-06-17"
            if request.method == "POST" and request.url.path == "/api/jobs":
                return httpx.Response(200, json={"Name": "corr-9", "CancellationToken": "tok"})
            if request.url.path.endswith("/details"):
                return httpx.Response(200, json={"WorkItems": {"Waiting": 0, "Running": 2, "Finished": 1}})
            if request.url.path.endswith("/cancel"):
                return httpx.Response(200)
            return httpx.Response(200, json={"DetailsUrl": "https://helix.test/details/corr-9"})

        client = HelixClient("https://helix.test", client=httpx.AsyncClient(base_url="https://helix.test", transport=httpx.MockTransport(handler)))

        job = await client.submit_job(
            queue_id="ubuntu.2204.amd64.open",
            job_type="runtime-utils/JitDiffJob",
            creator="MihuBot",
            source="runtime-utils/1/alice",
            work_item="runner",
            command="sudo -s bash ./start-runner.sh",
            payload_file_name="start-runner.sh",
            payload="echo hi",
        )
        assert job == HelixJob(correlation_id="corr-9", cancellation_token="tok")
        assert json.loads(requests[0].content)["WorkItems"][0]["Payload"]["FileName"] == "start-runner.sh"

        assert await client.details_url("corr-9") == "https://helix.test/details/corr-9"
        assert await client.work_item_counts("corr-9") == HelixWorkItemCounts(running=2, finished=1)

        await client.cancel(job)
        assert requests[-1].url.params["jobCancellationToken"] == "tok"
