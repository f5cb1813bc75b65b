from __future__ import annotations

from runtime_utils.formatting import next_snowflake_string
from runtime_utils.jobs.base import JobBase
from runtime_utils.services.mentions import BACKPORT_RE


class BackportJob(JobBase):
    title_prefix = "Backport"
    run_using_github_actions = True

    repo_owner = "dotnet"
    repo_name = "yarp"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.metadata.add("PushToken", self.settings.github_push_token or "")

    @property
    def post_error_as_github_comment(self) -> bool:
        return self.should_link_to_pr_or_branch

    async def initialize(self) -> None:
        match = BACKPORT_RE.match(self.custom_arguments)
        if match is None or self.pull_request is None:
            raise ValueError(f"Invalid arguments. Expected `@{self.settings.bot_login} backport to release/latest`")

        target_branch = match.group(1)
        pr = self.pull_request

        self.metadata.add("BackportJob_BaseRepo", f"{self.repo_owner}/{self.repo_name}")
        self.metadata.add("BackportJob_ForkRepo", f"{self.settings.bot_login}/{self.repo_name}")
        self.metadata.add("BackportJob_TargetBranch", target_branch)
        self.metadata.add("BackportJob_NewBranch", f"bp-{next_snowflake_string()}")
        self.metadata.add("BackportJob_PatchUrl", pr.patch_url)
        self.metadata.add("BackportJob_Title", f"[{target_branch}] {pr.title}")
        self.metadata.add("BackportJob_Body", f"Backport of #{pr.number} to {target_branch}\n\ncc: @{self.github_commenter_login}")

    async def run_core(self) -> None:
        await self.run_on_github_actions()
        await self.set_final_tracking_issue_body()

        if self.first_error_message is None:
            self.should_mention_job_initiator = False
