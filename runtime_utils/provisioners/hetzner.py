from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any

import httpx

from runtime_utils.errors import HetznerError
from runtime_utils.provisioners.base import Provisioner
from runtime_utils.provisioners.base import ProvisionerKind
from runtime_utils.provisioners.base import StartupScripts
from runtime_utils.provisioners.base import cpu_type
from runtime_utils.provisioners.base import dispatch_teardown
from runtime_utils.services.ops_alerts import OpsAlerts

if TYPE_CHECKING:
    from runtime_utils.jobs.base import JobBase

logger = logging.getLogger(__name__)

HETZNER_API_BASE = "https://api.hetzner.cloud/v1"


@dataclass(frozen=True)
class HetznerServer:
    id: int
    ipv4: str | None
    root_password: str | None
    cores: float | None = None
    memory: float | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "HetznerServer":
        server = data.get("server")
        if not server:
            raise HetznerError("No server info")
        server_type = server.get("server_type") or {}
        ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip")
        return cls(
            id=int(server["id"]),
            ipv4=ipv4,
            root_password=data.get("root_password"),
            cores=server_type.get("cores"),
            memory=server_type.get("memory"),
        )


class HetznerClient:
    def __init__(self, api_key: str, *, client: httpx.AsyncClient | None = None) -> None:
        if not api_key:
            raise ValueError("Missing Hetzner API key")
        self._client = client or httpx.AsyncClient(base_url=HETZNER_API_BASE, timeout=60.0)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if "json" in kwargs:
            logger.debug("Hetzner server request: %s", kwargs["json"])
        resp = await self._client.request(method, path, headers=self._headers, **kwargs)
        logger.debug("Hetzner server response: %s", resp.text)
        if resp.status_code >= 400:
            raise HetznerError(f"Failed to {method} {path}: {resp.status_code}")
        return resp.json() if resp.content else {}

    async def create_server(self, name: str, image: str, location: str, server_type: str, user_data: str) -> HetznerServer:
        data = await self._request(
            "POST",
            "/servers",
            json={
                "name": name,
                "image": image.lower(),
                "location": location.lower(),
                "server_type": server_type.lower(),
                "user_data": user_data,
            },
        )
        return HetznerServer.from_api(data)

    async def delete_server(self, server_id: int) -> None:
        await self._request("DELETE", f"/servers/{server_id}")


def default_server_type(*, use_arm: bool, use_intel: bool, fast: bool) -> str:
    if fast:
        return "cax41" if use_arm else ("cx52" if use_intel else "cpx51")
    return "cax31" if use_arm else ("cx42" if use_intel else "cpx41")


class HetznerVmProvisioner(Provisioner):
    kind = ProvisionerKind.HETZNER

    def __init__(self, ops: OpsAlerts, hetzner: HetznerClient) -> None:
        super().__init__(ops)
        self.hetzner = hetzner

    async def run(self, job: "JobBase", scripts: StartupScripts, default_core_count: int) -> None:
        cpu = cpu_type(job)
        default_type = default_server_type(use_arm=job.use_arm, use_intel=job.use_intel, fast=job.fast)
        server_type = job.get_config_flag(f"Hetzner.VMSize{'Fast' if job.fast else ''}{cpu}", default_type)

        job.log(f"Starting a Hetzner VM ({server_type}) ...")

        server = await self.hetzner.create_server(
            f"runner-{job.job_id}",
            job.get_config_flag(f"HetznerImage{job.architecture}", "ubuntu-22.04"),
            job.get_config_flag(f"HetznerLocation{cpu}", "hel1"),
            server_type,
            scripts.cloud_init,
        )

        try:
            job.log(f"VM starting (CpuType={cpu} CPU={server.cores} Memory={server.memory}) ...")
            if server.ipv4:
                job.remote_login_credentials = f"ssh root@{server.ipv4}  {server.root_password}"

            await job.wait_for_completion()
        finally:
            if job.should_delete_vm:
                job.log("Deleting the VM")
                dispatch_teardown(job, self.ops, lambda: self.hetzner.delete_server(server.id), str(server.id))
            else:
                job.log("Configuration opted not to delete the VM")


__all__ = ["HetznerClient", "HetznerServer", "HetznerVmProvisioner", "default_server_type"]
