"""Azure VM provisioner.

Each job gets its own resource group per attempted region; the VM itself is
created from an ARM template deployment. Regions are tried in order and the
next one is attempted only while the deployment has not completed.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import TYPE_CHECKING
from typing import Any

import httpx

from runtime_utils.errors import AzureRequestError
from runtime_utils.provisioners.base import Provisioner
from runtime_utils.provisioners.base import ProvisionerKind
from runtime_utils.provisioners.base import StartupScripts
from runtime_utils.provisioners.base import cpu_type
from runtime_utils.provisioners.base import dispatch_teardown
from runtime_utils.services.ops_alerts import OpsAlerts

if TYPE_CHECKING:
    from runtime_utils.jobs.base import JobBase

logger = logging.getLogger(__name__)

ARM_BASE_URL = "https://management.azure.com"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
RESOURCES_API_VERSION = "2021-04-01"
NETWORK_API_VERSION = "2023-09-01"

_TERMINAL_STATES = {"Succeeded", "Failed", "Canceled"}


def _raise_for_arm(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    code = None
    message = resp.text[:500]
    try:
        error = resp.json().get("error") or {}
        code = error.get("code")
        message = error.get("message") or message
    except ValueError:
        pass
    raise AzureRequestError(resp.status_code, code, message)


class AzureResourceManagerClient:
    """Just enough of the ARM REST API to create and delete runner VMs."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        subscription_id: str,
        *,
        client: httpx.AsyncClient | None = None,
        poll_interval: float = 10.0,
    ) -> None:
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._subscription_id = subscription_id
        self._client = client or httpx.AsyncClient(timeout=60.0)
        self._poll_interval = poll_interval
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at - 60:
            return self._token

        resp = await self._client.post(
            f"{LOGIN_BASE_URL}/{self._tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": f"{ARM_BASE_URL}/.default",
            },
        )
        _raise_for_arm(resp)
        payload = resp.json()
        self._token = payload["access_token"]
        self._token_expires_at = time.monotonic() + float(payload.get("expires_in", 3600))
        return self._token

    async def _request(self, method: str, path: str, api_version: str, **kwargs: Any) -> httpx.Response:
        token = await self._get_token()
        resp = await self._client.request(
            method,
            f"{ARM_BASE_URL}/subscriptions/{self._subscription_id}{path}",
            params={"api-version": api_version},
            headers={"Authorization": f"Bearer {token}"},
            **kwargs,
        )
        _raise_for_arm(resp)
        return resp

    async def create_resource_group(self, name: str, location: str) -> None:
        await self._request("PUT", f"/resourcegroups/{name}", RESOURCES_API_VERSION, json={"location": location})

    async def delete_resource_group(self, name: str) -> None:
        await self._request("DELETE", f"/resourcegroups/{name}", RESOURCES_API_VERSION)

    async def deploy(self, resource_group: str, name: str, template: dict, parameters: dict) -> None:
        """Create the deployment and wait until it reaches a terminal state."""
        path = f"/resourcegroups/{resource_group}/providers/Microsoft.Resources/deployments/{name}"
        body = {"properties": {"mode": "Incremental", "template": template, "parameters": parameters}}
        await self._request("PUT", path, RESOURCES_API_VERSION, json=body)

        while True:
            resp = await self._request("GET", path, RESOURCES_API_VERSION)
            properties = resp.json().get("properties") or {}
            state = properties.get("provisioningState")
            if state in _TERMINAL_STATES:
                break
            await asyncio.sleep(self._poll_interval)

        if state != "Succeeded":
            error = properties.get("error") or {}
            raise AzureRequestError(resp.status_code, error.get("code") or state, error.get("message") or f"Deployment {state}")

    async def list_public_ips(self, resource_group: str) -> list[str]:
        resp = await self._request(
            "GET",
            f"/resourceGroups/{resource_group}/providers/Microsoft.Network/publicIPAddresses",
            NETWORK_API_VERSION,
        )
        return [ip for item in resp.json().get("value", []) if (ip := (item.get("properties") or {}).get("ipAddress"))]


def default_vm_size(core_count: int, *, use_arm: bool, use_intel: bool) -> str:
    # Larger VMs have enough RAM for a ram disk
    needs_fast_side_disk = core_count < 8
    if use_arm:
        family = "D{n}pds_v6" if needs_fast_side_disk else "D{n}ps_v6"
    elif use_intel:
        family = "D{n}ds_v5"
    else:
        family = "D{n}ads_v6" if needs_fast_side_disk else "D{n}as_v6"
    return "Standard_" + family.format(n=core_count)


class AzureVmProvisioner(Provisioner):
    kind = ProvisionerKind.AZURE

    def __init__(
        self,
        ops: OpsAlerts,
        arm: AzureResourceManagerClient,
        *,
        template_url: str,
        locations: list[str],
        http: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(ops)
        self.arm = arm
        self.template_url = template_url
        self.locations = locations
        self._http = http

    async def _fetch_template(self) -> dict:
        if self._http is not None:
            resp = await self._http.get(self.template_url)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                resp = await client.get(self.template_url)
        resp.raise_for_status()
        return resp.json()

    async def run(self, job: "JobBase", scripts: StartupScripts, default_core_count: int) -> None:
        if not self.locations:
            raise AzureRequestError(0, "NoLocations", "No Azure locations are configured")

        core_count = default_core_count * 2 if job.fast else default_core_count
        config_name = f"{'Fast' if job.fast else ''}{cpu_type(job)}"
        vm_size = job.get_config_flag(
            f"Azure.VMSize{config_name}",
            default_vm_size(core_count, use_arm=job.use_arm, use_intel=job.use_intel),
        )
        disk_size = job.get_config_flag(f"Azure.VMDisk{config_name}", core_count * 8)
        password = f"{job.job_id}aA1"

        template = await self._fetch_template()
        parameters = {
            "runnerId": {"value": job.job_id},
            "osDiskSizeGiB": {"value": disk_size},
            "virtualMachineSize": {"value": vm_size},
            "adminPassword": {"value": password},
            "customData": {"value": base64.b64encode(scripts.cloud_init.encode("utf-8")).decode("ascii")},
            "imageReference": {
                "value": {
                    "publisher": "canonical",
                    "offer": "0001-com-ubuntu-server-jammy",
                    "sku": "22_04-lts-arm64" if job.use_arm else "22_04-lts-gen2",
                    "version": "latest",
                }
            },
        }

        state = {"deployment_complete": False}

        for index, location in enumerate(self.locations):
            try:
                job.log(f"Creating a new Azure VM ({vm_size}) in {location} ...")
                await self._deploy_and_wait(job, location, template, parameters, password, vm_size, state)
                break
            except AzureRequestError as exc:
                if state["deployment_complete"] or index == len(self.locations) - 1:
                    raise
                job.log(f"Failed to create VM in {location}: {exc.code} {exc.message}. Retrying ...")

    async def _deploy_and_wait(
        self,
        job: "JobBase",
        location: str,
        template: dict,
        parameters: dict,
        password: str,
        vm_size: str,
        state: dict[str, bool],
    ) -> None:
        job.log("Creating a new Azure resource group for this deployment ...")
        resource_group = f"runtime-utils-runner-{location}-{job.job_id}"
        await self.arm.create_resource_group(resource_group, location)

        try:
            job.log(f"Starting deployment of Azure VM ({vm_size}) ...")
            job.extend_idle_timeout(4)

            deployment_name = f"runner-deployment-{location}-{job.job_id}"
            await self.arm.deploy(resource_group, deployment_name, template, parameters)

            job.log("Azure deployment complete")
            state["deployment_complete"] = True

            ips = await self.arm.list_public_ips(resource_group)
            if ips:
                job.remote_login_credentials = f"ssh runner@{ips[0]}  {password}"

            await job.wait_for_completion()
        finally:
            if job.should_delete_vm:
                job.log("Deleting the VM resource group")
                dispatch_teardown(job, self.ops, lambda: self.arm.delete_resource_group(resource_group), resource_group)
            else:
                job.log("Configuration opted not to delete the VM")


__all__ = ["AzureResourceManagerClient", "AzureVmProvisioner", "default_vm_size"]
