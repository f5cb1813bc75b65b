"""Hetzner provisioner and API client."""

import asyncio
import json

import httpx
import pytest

from conftest import ScriptedJob
from conftest import drain_background
from conftest import wait_until

from runtime_utils.errors import HetznerError
from runtime_utils.provisioners.base import ProvisionerKind
from runtime_utils.provisioners.hetzner import HetznerClient
from runtime_utils.provisioners.hetzner import HetznerServer
from runtime_utils.provisioners.hetzner import HetznerVmProvisioner
from runtime_utils.provisioners.hetzner import default_server_type

SERVER_RESPONSE = {
    "server": {
        "id": 321,
        "public_net": {"ipv4": {"ip": "5.6.7.8"}},
        "server_type": {"cores": 16, "memory": 32.0},
    },
    "root_password": "hunter2",
}


class HetznerApi:
    def __init__(self, *, create_status: int = 201) -> None:
        self.create_status = create_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return httpx.Response(self.create_status, json=SERVER_RESPONSE)
        return httpx.Response(200, json={"action": {"id": 1}})

    def client(self) -> HetznerClient:
        return HetznerClient(
            "secret-key",
            client=httpx.AsyncClient(base_url="https://hetzner.test/v1", transport=httpx.MockTransport(self)),
        )


class TestHetznerClient:
    async def test_create_server_sends_lowercased_fields(self):
        api = HetznerApi()
        server = await api.client().create_server("runner-1", "Ubuntu-22.04", "HEL1", "CPX41", "#cloud-config")

        assert server == HetznerServer(id=321, ipv4="5.6.7.8", root_password="hunter2", cores=16, memory=32.0)
        request = api.requests[0]
        assert request.headers["Authorization"] == "Bearer secret-key"
        assert json.loads(request.content) == {
            "name": "runner-1",
            "image": "ubuntu-22.04",
            "location": "hel1",
            "server_type": "cpx41",
            "user_data": "#cloud-config",
        }

    async def test_errors_raise(self):
        api = HetznerApi(create_status=422)
        with pytest.raises(HetznerError):
            await api.client().create_server("runner-1", "ubuntu-22.04", "hel1", "cpx41", "")

    def test_missing_server_info_raises(self):
        with pytest.raises(HetznerError):
            HetznerServer.from_api({"root_password": "x"})

    def test_api_key_is_required(self):
        with pytest.raises(ValueError):
            HetznerClient("")


class TestServerType:
    @pytest.mark.parametrize(
        ("use_arm", "use_intel", "fast", "expected"),
        [
            (False, False, False, "cpx41"),
            (False, False, True, "cpx51"),
            (True, False, False, "cax31"),
            (True, False, True, "cax41"),
            (False, True, False, "cx42"),
            (False, True, True, "cx52"),
        ],
    )
    def test_defaults(self, use_arm, use_intel, fast, expected):
        assert default_server_type(use_arm=use_arm, use_intel=use_intel, fast=fast) == expected


class TestHetznerProvisioner:
    async def test_runs_job_and_deletes_the_server(self, make_registry, ops):
        api = HetznerApi()
        registry = make_registry(provisioners={ProvisionerKind.HETZNER: HetznerVmProvisioner(ops, api.client())})

        job = ScriptedJob(registry, arguments="-hetzner -arm", body=lambda job: job.run_on_new_virtual_machine(4))
        task = asyncio.create_task(job.run_job())
        await wait_until(lambda: job.remote_login_credentials is not None)
        job.notify_job_completion()
        await asyncio.wait_for(task, timeout=5)
        await drain_background()

        assert job.remote_login_credentials == "ssh root@5.6.7.8  hunter2"
        create = json.loads(api.requests[0].content)
        assert create["server_type"] == "cax31"
        assert create["name"] == f"runner-{job.job_id}"
        assert create["user_data"].startswith("#cloud-config")
        assert [(r.method, r.url.path) for r in api.requests[1:]] == [("DELETE", "/v1/servers/321")]

    async def test_missing_provisioner_fails_the_job(self, make_registry, github):
        registry = make_registry(provisioners={})

        job = ScriptedJob(registry, arguments="-hetzner", body=lambda job: job.run_on_new_virtual_machine(4))
        await job.run_job()

        assert "No hetzner provisioner is configured" in github.latest_body(job.tracking_issue.number)
