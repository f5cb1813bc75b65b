from __future__ import annotations

from typing import BinaryIO

from runtime_utils.formatting import MB
from runtime_utils.jobs.base import JobBase


class RegexDiffJob(JobBase):
    title_prefix = "RegexDiff"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._short_results: str | None = None
        self._long_results: str | None = None

    @property
    def post_error_as_github_comment(self) -> bool:
        return self.should_link_to_pr_or_branch

    async def run_core(self) -> None:
        await self.run_on_new_virtual_machine(16)

        results = ""
        if self._short_results and self._short_results.strip():
            results = (
                "<details>\n"
                "<summary>Examples of GeneratedRegex source diffs</summary>\n\n"
                f"{self._short_results}\n\n"
                "</details>"
            )

            if self._long_results and self._long_results.strip():
                target = self.tracking_issue.html_url if self.tracking_issue else self.progress_url
                gist_url = await self.github.create_gist(
                    f"Regex source generator diff examples for {target}",
                    {"Results.md": self._long_results},
                )
                results = f"{results}\n\nFor more diff examples, see {gist_url}"

        await self.set_final_tracking_issue_body(results)

        if results and self.should_link_to_pr_or_branch and self.should_mention_job_initiator and self.pull_request is not None:
            self.should_mention_job_initiator = False
            await self.github.create_comment(self.repo_owner, self.repo_name, self.pull_request.number, results)

    async def intercept_artifact(self, file_name: str, content: BinaryIO) -> bytes | None:
        if file_name not in ("ShortExampleDiffs.md", "LongExampleDiffs.md"):
            return None
        data = await self.read_artifact(content, MB)
        markdown = data.decode("utf-8", errors="replace")
        if file_name == "ShortExampleDiffs.md":
            self._short_results = markdown
        else:
            self._long_results = markdown
        return data
