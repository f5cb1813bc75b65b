from __future__ import annotations

from runtime_utils.jobs.base import JobBase


class RebaseJob(JobBase):
    """Rebase, merge or format a PR branch from a GitHub Actions workflow."""

    run_using_github_actions = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.metadata.add("PushToken", self.settings.github_push_token or "")

    @property
    def title_prefix(self) -> str:
        arguments = self._arguments_lower
        if arguments.startswith("rebase"):
            return "Rebase"
        if arguments.startswith("merge"):
            return "Merge"
        return "Format"

    async def run_core(self) -> None:
        await self.run_on_github_actions()
        await self.set_final_tracking_issue_body()

        if self.first_error_message is None:
            self.should_mention_job_initiator = False
