from __future__ import annotations

import io
import logging
import threading
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from typing import BinaryIO

from runtime_utils.formatting import MB
from runtime_utils.formatting import rough_size
from runtime_utils.formatting import split_lines
from runtime_utils.jobs.base import JobBase
from runtime_utils.services.artifact_storage import RUNNER_STATE_PREFIX

logger = logging.getLogger(__name__)

STACK_SUFFIX = "-stack.txt"
INPUTS_SUFFIX = "-inputs.zip"
MAX_STACK_LINES = 60
MIN_PERSISTED_INPUTS_BYTES = 100_000


def truncate_stack_trace(stack_trace: str) -> str:
    lines = split_lines(stack_trace)
    if len(lines) <= MAX_STACK_LINES:
        return stack_trace
    message = f"... Skipped {len(lines) - MAX_STACK_LINES} lines ..."
    marker = "=" * len(message)
    half = MAX_STACK_LINES // 2
    return "\n".join([*lines[:half], "", marker, message, marker, "", *lines[-half:]])


class FuzzLibrariesJob(JobBase):
    title_prefix = "Fuzzing"
    run_using_github_actions = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._stack_traces: dict[str, str] = {}
        self._stack_traces_lock = threading.Lock()

    @property
    def post_error_as_github_comment(self) -> bool:
        return self.should_link_to_pr_or_branch

    async def run_core(self) -> None:
        await self.run_on_github_actions()

        with self._stack_traces_lock:
            stack_traces = dict(self._stack_traces)

        formatted = ""
        if stack_traces:
            formatted = "\n\n".join(f"```\n// {name}\n{trace}\n```" for name, trace in stack_traces.items())
            formatted = f"\n{formatted}\n"

        success = self.first_error_message is None and not formatted
        await self.set_final_tracking_issue_body(f"{formatted}\n{'Ran the fuzzer(s) successfully.' if success else ''}")

        if formatted and self.should_link_to_pr_or_branch and self.should_mention_job_initiator and self.pull_request is not None:
            artifacts = {a.file_name: a for a in self.artifacts}
            inputs = [artifacts[f"{name}-input.bin"] for name in stack_traces if f"{name}-input.bin" in artifacts]
            links = "\n".join(f"- [{a.file_name}]({a.url}) ({rough_size(a.size)})" for a in inputs)

            await self.github.create_comment(self.repo_owner, self.repo_name, self.pull_request.number, f"{formatted}\n\n{links}")
            self.should_mention_job_initiator = False

        if success and self.github_comment is not None:
            await self.github.add_comment_reaction(self.repo_owner, self.repo_name, self.github_comment.id, "+1")

    async def intercept_artifact(self, file_name: str, content: BinaryIO) -> bytes | None:
        if file_name.endswith(STACK_SUFFIX):
            fuzzer = file_name[: -len(STACK_SUFFIX)]
            data = await self.read_artifact(content, MB)
            with self._stack_traces_lock:
                self._stack_traces[fuzzer] = truncate_stack_trace(data.decode("utf-8", errors="replace"))
            return data

        if file_name.endswith(INPUTS_SUFFIX):
            data = await self.read_artifact(content, 64 * MB)
            if len(data) > MIN_PERSISTED_INPUTS_BYTES:
                await self._persist_inputs(file_name, data)
            return data

        return None

    async def _persist_inputs(self, file_name: str, data: bytes) -> None:
        storage = self.registry.storage
        key = f"{RUNNER_STATE_PREFIX}{file_name}"
        try:
            info = await storage.get_info(key)
            if info is not None:
                fresh = datetime.now(UTC) - info.last_modified < timedelta(days=1)
                if fresh and info.size > len(data):
                    return
                await storage.delete(key)
            await storage.upload(key, io.BytesIO(data))
        except Exception as exc:  # noqa: BLE001
            message = f"Failed to update inputs blob: {exc}"
            self.log(message)
            logger.warning(message)
