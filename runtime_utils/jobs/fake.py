from __future__ import annotations

import asyncio
import random

from runtime_utils.jobs.base import JobBase
from runtime_utils.schemas import SystemHardwareInfo


class FakeInMemoryJob(JobBase):
    """Emits dummy telemetry until stopped. Handy for exercising the dashboard locally."""

    title_prefix = "Fake"
    tick_seconds = 1.0

    def __init__(self, registry, *, github_commenter_login: str | None = None, **kwargs) -> None:
        kwargs.setdefault("arguments", "Fake args")
        super().__init__(registry, github_commenter_login=github_commenter_login, **kwargs)
        self.suppress_tracking_issue = True

    async def run_core(self) -> None:
        self.remote_login_credentials = "foo@127.0.0.1 bar"
        counter = 0
        while True:
            await asyncio.sleep(self.tick_seconds)
            counter += 1
            self.update_system_info(
                SystemHardwareInfo(
                    cpu_usage=random.random() * 16,
                    cpu_cores_available=16,
                    memory_usage_gb=random.random() * 64,
                    memory_available_gb=64,
                ),
                "a" * random.randint(5, 20),
            )
            self.log(f"Dummy message {counter} {'a' * random.randint(50, 500)}")
