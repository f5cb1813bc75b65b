from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core
    testing: bool = False
    log_level: str = "INFO"
    database_url: str = "sqlite:///./runtime_utils.db"
    public_base_url: str = "http://localhost:8000"

    # Operator token (fail-fast, metadata lookups by public id)
    runtime_utils_token: str | None = None

    # GitHub
    github_token: str | None = None
    github_push_token: str | None = None
    bot_login: str = "MihuBot"
    issue_repository: str = "MihuBot/runtime-utils"
    default_repository: str = "dotnet/runtime"
    watched_repositories: str = "dotnet/runtime,dotnet/yarp"
    runner_repository_url: str = "https://github.com/MihaZupan/runtime-utils"

    # Discord (operator channel)
    discord_webhook_url: str | None = None
    discord_enable_alerts: bool = False

    # Azure
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    azure_subscription_id: str | None = None
    azure_vm_template_url: str = (
        "https://gist.githubusercontent.com/MihaZupan/5385b7153709beae35cdf029eabf50eb/raw/AzureVirtualMachineTemplate.json"
    )
    azure_locations: str = "eastus2,eastus,westus3"

    # Hetzner
    hetzner_api_key: str | None = None

    # Helix
    helix_api_base_url: str = "https://helix.dot.net"

    # Blob storage (S3 compatible)
    s3_bucket: str = "runtime-utils"
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_public_base_url: str | None = None

    # Registry
    mention_poll_interval_seconds: float = 1.0
    job_retention_hours: float = 48.0
    shutdown_grace_seconds: float = 10.0

    class Config:
        env_prefix = "RUNTIME_UTILS_"
        env_file = ".env"
        extra = "ignore"

    @property
    def issue_repository_owner(self) -> str:
        return self.issue_repository.split("/", 1)[0]

    @property
    def issue_repository_name(self) -> str:
        return self.issue_repository.split("/", 1)[1]

    @property
    def default_repository_owner(self) -> str:
        return self.default_repository.split("/", 1)[0]

    @property
    def default_repository_name(self) -> str:
        return self.default_repository.split("/", 1)[1]

    def watched_repository_list(self) -> list[str]:
        return [repo.strip() for repo in self.watched_repositories.split(",") if repo.strip()]

    def azure_location_list(self) -> list[str]:
        return [location.strip() for location in self.azure_locations.split(",") if location.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
