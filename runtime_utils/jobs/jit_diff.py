from __future__ import annotations

from typing import BinaryIO

from runtime_utils.formatting import MB
from runtime_utils.jobs.base import COMMENT_LENGTH_LIMIT
from runtime_utils.jobs.base import JobBase
from runtime_utils.services.artifact_storage import JIT_DIFF_EXTRA_ASSEMBLIES_PREFIX

_SUMMARY_FILES = {
    "diff-frameworks.txt": "frameworks",
    "ShortDiffsImprovements.md": "short_improvements",
    "ShortDiffsRegressions.md": "short_regressions",
    "LongDiffsImprovements.md": "long_improvements",
    "LongDiffsRegressions.md": "long_regressions",
}


async def post_large_diff_gist(job: JobBase, diffs_markdown: str, regressions: bool) -> str:
    target = job.tracking_issue.html_url if job.tracking_issue else job.progress_url
    kind = "regressions" if regressions else "improvements"
    return await job.github.create_gist(
        f"JIT diffs {kind} for {target}",
        {"Regressions.md" if regressions else "Improvements.md": diffs_markdown},
    )


class JitDiffJob(JobBase):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._summaries: dict[str, str] = {}

    @property
    def title_prefix(self) -> str:
        return f"JitDiff {self.architecture}"

    @property
    def should_post_diffs_comment(self) -> bool:
        return self.get_config_flag("ShouldPostDiffsComment", True)

    async def initialize(self) -> None:
        self.metadata.add(
            "JitDiffExtraAssembliesUri",
            self.registry.storage.presigned_list_url(JIT_DIFF_EXTRA_ASSEMBLIES_PREFIX, self.max_duration_seconds),
        )

    async def run_core(self) -> None:
        await self.run_on_new_virtual_machine(16)

        self.last_system_info = None

        frameworks = self._summaries.get("frameworks")
        diffs = ""
        if frameworks is not None:
            collapse = len(frameworks) > COMMENT_LENGTH_LIMIT / 6
            diffs = "### Diffs\n\n"
            if collapse:
                diffs += "<details>\n<summary>Diffs</summary>\n\n"
            diffs += f"```\n{frameworks}\n```\n"
            if collapse:
                diffs += "\n</details>\n"
            diffs += "\n\n"

        await self.set_final_tracking_issue_body(diffs)

        if frameworks is not None and self.should_post_diffs_comment and self.tracking_issue is not None:
            await self._post_diff_examples(True, self._summaries.get("short_regressions"), self._summaries.get("long_regressions"))
            await self._post_diff_examples(False, self._summaries.get("short_improvements"), self._summaries.get("long_improvements"))

    async def _post_diff_examples(self, regressions: bool, short_diffs: str | None, long_diffs: str | None) -> None:
        if not short_diffs:
            return
        if long_diffs:
            gist_url = await post_large_diff_gist(self, long_diffs, regressions)
            short_diffs = f"{short_diffs}\n\nLarger list of diffs: {gist_url}"
        await self.github.create_comment(
            self.settings.issue_repository_owner,
            self.settings.issue_repository_name,
            self.tracking_issue.number,
            short_diffs,
        )

    async def intercept_artifact(self, file_name: str, content: BinaryIO) -> bytes | None:
        if file_name != "diff-frameworks.txt" and not file_name.endswith(".md"):
            return None

        data = await self.read_artifact(content, MB)
        slot = _SUMMARY_FILES.get(file_name)
        if slot is not None:
            self._summaries[slot] = data.decode("utf-8", errors="replace")
        return data
