"""Helix queue provisioner.

Instead of owning a VM, submit a single work item to a shared Helix queue and
poll it until it starts and finishes. A work item stuck in the queue for more
than ten idle windows forces the idle timeout so the job does not wait forever.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any

import httpx

from runtime_utils.errors import HelixError
from runtime_utils.provisioners.base import Provisioner
from runtime_utils.provisioners.base import ProvisionerKind
from runtime_utils.provisioners.base import StartupScripts
from runtime_utils.provisioners.base import dispatch_teardown
from runtime_utils.services.ops_alerts import OpsAlerts

if TYPE_CHECKING:
    from runtime_utils.jobs.base import JobBase

logger = logging.getLogger(__name__)

HELIX_API_VERSION = "2019-06-17"


@dataclass(frozen=True)
class HelixJob:
    correlation_id: str
    cancellation_token: str | None


@dataclass(frozen=True)
class HelixWorkItemCounts:
    waiting: int = 0
    unscheduled: int = 0
    running: int = 0
    finished: int = 0

    @property
    def queued(self) -> bool:
        return self.waiting > 0 or self.unscheduled > 0


class HelixClient:
    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=60.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        params = {"api-version": HELIX_API_VERSION, **kwargs.pop("params", {})}
        resp = await self._client.request(method, path, params=params, **kwargs)
        if resp.status_code >= 400:
            raise HelixError(f"Helix {method} {path} failed: {resp.status_code} {resp.text[:200]}")
        return resp.json() if resp.content else None

    async def submit_job(
        self,
        *,
        queue_id: str,
        job_type: str,
        creator: str,
        source: str,
        work_item: str,
        command: str,
        payload_file_name: str,
        payload: str,
    ) -> HelixJob:
        data = await self._request(
            "POST",
            "/api/jobs",
            json={
                "QueueId": queue_id,
                "Type": job_type,
                "Creator": creator,
                "Source": source,
                "WorkItems": [
                    {
                        "Name": work_item,
                        "Command": command,
                        "Payload": {"FileName": payload_file_name, "Content": payload},
                    }
                ],
            },
        )
        return HelixJob(correlation_id=data["Name"], cancellation_token=data.get("CancellationToken"))

    async def details_url(self, correlation_id: str) -> str:
        data = await self._request("GET", f"/api/jobs/{correlation_id}")
        return data.get("DetailsUrl") or f"{self._client.base_url}api/jobs/{correlation_id}"

    async def work_item_counts(self, correlation_id: str) -> HelixWorkItemCounts:
        data = await self._request("GET", f"/api/jobs/{correlation_id}/details")
        items = data.get("WorkItems") or {}
        return HelixWorkItemCounts(
            waiting=int(items.get("Waiting", 0)),
            unscheduled=int(items.get("Unscheduled", 0)),
            running=int(items.get("Running", 0)),
            finished=int(items.get("Finished", 0)),
        )

    async def cancel(self, job: HelixJob) -> None:
        params = {"jobCancellationToken": job.cancellation_token} if job.cancellation_token else {}
        await self._request("POST", f"/api/jobs/{job.correlation_id}/cancel", params=params)


def queue_for(*, use_windows: bool, use_arm: bool) -> str:
    if use_windows:
        return "windows.11.arm64.open" if use_arm else "windows.11.amd64.client.open"
    return "ubuntu.2204.armarch.open" if use_arm else "ubuntu.2204.amd64.open"


class HelixQueueProvisioner(Provisioner):
    kind = ProvisionerKind.HELIX
    poll_interval_seconds = 30.0

    def __init__(self, ops: OpsAlerts, helix: HelixClient, *, creator: str = "runtime-utils") -> None:
        super().__init__(ops)
        self.helix = helix
        self.creator = creator

    async def run(self, job: "JobBase", scripts: StartupScripts, default_core_count: int) -> None:
        queue_id = queue_for(use_windows=job.use_windows, use_arm=job.use_arm)
        job.log(f"Submitting a Helix job ({queue_id}) ...")

        if job.use_windows:
            command = "PowerShell -NoProfile -ExecutionPolicy Bypass -Command \"& './start-runner.ps1'\""
            payload_file, payload = "start-runner.ps1", scripts.windows
        else:
            command = "sudo -s bash ./start-runner.sh"
            payload_file, payload = "start-runner.sh", scripts.linux

        helix_job = await self.helix.submit_job(
            queue_id=queue_id,
            job_type=f"runtime-utils/{job.job_type}",
            creator=self.creator,
            source=f"runtime-utils/{job.external_id}/{job.github_commenter_login}",
            work_item="runner",
            command=command,
            payload_file_name=payload_file,
            payload=payload,
        )

        try:
            queued_at = time.monotonic()
            job.log(f"Job queued {await self.helix.details_url(helix_job.correlation_id)} ...")

            while not job.completion_signaled:
                await asyncio.sleep(self.poll_interval_seconds)
                counts = await self.helix.work_item_counts(helix_job.correlation_id)

                if counts.queued:
                    waited = time.monotonic() - queued_at
                    job.log(f"Waiting for Helix job to start ({int(waited)} sec) ...")
                    if waited * 1000 > job.idle_timeout_ms * 10:
                        job.force_idle_timeout()
                    continue

                if counts.running == 0 and counts.finished > 0:
                    job.log("No more running Helix work items.")
                    break

            await job.wait_for_completion()
        finally:
            if job.idle_timed_out:
                job.log("Cancelling the Helix job")
                dispatch_teardown(job, self.ops, lambda: self.helix.cancel(helix_job), helix_job.correlation_id)


__all__ = ["HelixClient", "HelixJob", "HelixQueueProvisioner", "HelixWorkItemCounts", "queue_for"]
