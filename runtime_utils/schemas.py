from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class SystemHardwareInfo(BaseModel):
    """Resource usage snapshot reported by a remote runner."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    cpu_usage: float = Field(alias="cpuUsage")
    cpu_cores_available: float = Field(alias="cpuCoresAvailable")
    memory_usage_gb: float = Field(alias="memoryUsageGB")
    memory_available_gb: float = Field(alias="memoryAvailableGB")

    @property
    def cpu_usage_percentage(self) -> int:
        if self.cpu_cores_available <= 0:
            return 0
        return int(self.cpu_usage / self.cpu_cores_available * 100)

    @property
    def memory_usage_percentage(self) -> int:
        if self.memory_available_gb <= 0:
            return 0
        return int(self.memory_usage_gb / self.memory_available_gb * 100)


class ArtifactOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_name: str
    url: str
    size: int


class CompletedJobRecord(BaseModel):
    """Immutable snapshot of a finished job, written once."""

    model_config = ConfigDict(frozen=True)

    external_id: str
    title: str
    started_at: datetime
    duration_seconds: float
    tested_pr_or_branch_link: str | None = None
    tracking_issue_url: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    artifacts: list[ArtifactOut] = Field(default_factory=list)
    logs_artifact_url: str | None = None

    @property
    def custom_arguments(self) -> str | None:
        return self.metadata.get("CustomArguments")

    @property
    def job_type(self) -> str | None:
        return self.metadata.get("JobType")


class ActiveJobOut(BaseModel):
    external_id: str
    title: str
    job_type: str
    started_at: datetime
    elapsed: str
    github_commenter_login: str | None = None
    tracking_issue_url: str | None = None
    progress_summary: str | None = None
    cpu_usage_percentage: int | None = None
    memory_usage_percentage: int | None = None


class ActiveJobList(BaseModel):
    jobs: list[ActiveJobOut]
