from __future__ import annotations

from typing import BinaryIO

from runtime_utils.formatting import MB
from runtime_utils.jobs.base import COMMENT_LENGTH_LIMIT
from runtime_utils.jobs.base import JobBase


class BenchmarkLibrariesJob(JobBase):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._results_markdown: str | None = None

    @property
    def title_prefix(self) -> str:
        return f"Benchmark {self.architecture}"

    @property
    def post_error_as_github_comment(self) -> bool:
        return self.should_link_to_pr_or_branch

    async def run_core(self) -> None:
        await self.run_on_new_virtual_machine(8 if "PrBranch" in self.metadata else 4)

        results = ""
        if self._results_markdown and self._results_markdown.strip():
            results = self._results_markdown
            if len(results) > COMMENT_LENGTH_LIMIT * 0.8:
                target = self.tracking_issue.html_url if self.tracking_issue else self.progress_url
                gist_url = await self.github.create_gist(f"Benchmark results for {target}", {"Results.md": results})
                results = f"See benchmark results at {gist_url}"

        await self.set_final_tracking_issue_body(results)

        if self.pull_request is not None:
            issue_number = self.pull_request.number
        elif self.github_comment is not None:
            issue_number = self.github_comment.issue_number
        else:
            issue_number = None

        if results and self.should_link_to_pr_or_branch and self.should_mention_job_initiator and issue_number is not None:
            await self.github.create_comment(self.repo_owner, self.repo_name, issue_number, results)
            self.should_mention_job_initiator = False

    async def intercept_artifact(self, file_name: str, content: BinaryIO) -> bytes | None:
        if file_name != "results.md":
            return None
        data = await self.read_artifact(content, MB)
        self._results_markdown = data.decode("utf-8", errors="replace")
        return data
