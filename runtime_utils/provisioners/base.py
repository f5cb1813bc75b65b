"""Shared provisioner contract, startup scripts and teardown dispatch.

A provisioner turns a startup script into a running remote worker, waits for
the job to signal completion and then tears the resource down. Teardown never
blocks the job: it is spawned in the background and failures only reach the
logs and the operator channel.
"""

from __future__ import annotations

import logging
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from typing import Awaitable
from typing import Callable

from runtime_utils.services.background import spawn_background
from runtime_utils.services.ops_alerts import OpsAlerts

if TYPE_CHECKING:
    from runtime_utils.jobs.base import JobBase

logger = logging.getLogger(__name__)


class ProvisionerKind(str, Enum):
    AZURE = "azure"
    HETZNER = "hetzner"
    HELIX = "helix"


def choose_provisioner(*, use_helix: bool, use_windows: bool, use_hetzner: bool, force_hetzner: bool) -> ProvisionerKind:
    if use_helix or use_windows:
        return ProvisionerKind.HELIX
    if use_hetzner or force_hetzner:
        return ProvisionerKind.HETZNER
    return ProvisionerKind.AZURE


@dataclass(frozen=True)
class StartupScripts:
    linux: str
    windows: str
    cloud_init: str


def build_startup_scripts(job_id: str, metadata_url: str, runner_repository_url: str) -> StartupScripts:
    linux = "\n".join(
        [
            f"wget {metadata_url} &",
            "apt-get update",
            "apt-get install -y dotnet-sdk-8.0",
            "cd /home",
            f"git clone --no-tags --single-branch --progress {runner_repository_url}",
            "cd runtime-utils/Runner",
            f"HOME=/root JOB_ID={job_id} dotnet run -c Release",
        ]
    )

    windows = "\n".join(
        [
            "winget install -e --id Git.Git",
            f"git clone --no-tags --single-branch --progress {runner_repository_url}",
            "cd runtime-utils/Runner",
            "",
            "Invoke-WebRequest 'https://dot.net/v1/dotnet-install.ps1' -OutFile 'dotnet-install.ps1'",
            "./dotnet-install.ps1 -Verbose -Channel '8.0' -InstallDir dotnet-install",
            "",
            f"$env:JOB_ID = '{job_id}';",
            "dotnet-install/dotnet run -c Release",
        ]
    )

    cloud_init = "#cloud-config\n    runcmd:\n" + "\n".join(f"        - {line}" for line in linux.split("\n"))

    return StartupScripts(linux=linux, windows=windows, cloud_init=cloud_init)


def cpu_type(job: "JobBase") -> str:
    if job.use_arm:
        return "ARM64"
    return "X64Intel" if job.use_intel else "X64Amd"


def dispatch_teardown(
    job: "JobBase",
    ops: OpsAlerts,
    action: Callable[[], Awaitable[object]],
    info: str,
) -> None:
    """Run ``action`` detached; failures are logged, never raised into the job."""

    async def _run() -> None:
        try:
            await action()
        except Exception as exc:  # noqa: BLE001
            await ops.send(f"Failed to delete resource {info} for job {job.external_id}", exc)

    spawn_background(_run(), description=f"teardown:{info}")


class Provisioner(ABC):
    kind: ProvisionerKind

    def __init__(self, ops: OpsAlerts) -> None:
        self.ops = ops

    @abstractmethod
    async def run(self, job: "JobBase", scripts: StartupScripts, default_core_count: int) -> None:
        """Start a worker for ``job``, wait for completion, then tear it down."""


__all__ = [
    "Provisioner",
    "ProvisionerKind",
    "StartupScripts",
    "build_startup_scripts",
    "choose_provisioner",
    "cpu_type",
    "dispatch_teardown",
]
