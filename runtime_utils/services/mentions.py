"""Parsing of ``@bot ...`` mentions in issue and pull request comments.

Block detection is a line scanner, not a markdown parser: fenced code blocks
(``` or ~~~) and quote lines (``>``) are recognized, and the last mention
outside of them wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from runtime_utils.jobs.kinds import JobKind

FUZZ_RE = re.compile(r"^fuzz ([^ ]+)", re.IGNORECASE | re.DOTALL)
BENCHMARK_FILTER_RE = re.compile(r"^benchmark ([^ ]+)", re.IGNORECASE | re.DOTALL)
BENCHMARK_COMPARE_RANGE_RE = re.compile(
    r"^benchmark ([^ ]+) https://github\.com/dotnet/runtime/compare/([a-f0-9]{40}\.\.\.[a-f0-9]{40})",
    re.IGNORECASE | re.DOTALL,
)
BACKPORT_RE = re.compile(r"^backport to ([a-zA-Z\d/.\-_]+)", re.IGNORECASE)

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_QUOTE_RE = re.compile(r"^ {0,3}>")

_REBASE_PREFIXES = ("rebase", "merge", "format", "jitformat", "jit-format")


def _blocked_line_spans(body: str) -> list[tuple[int, int]]:
    """Character spans of lines that sit inside a fence or quote."""
    spans: list[tuple[int, int]] = []
    fence: str | None = None
    offset = 0

    for line in body.splitlines(keepends=True):
        start, end = offset, offset + len(line)
        offset = end

        match = _FENCE_RE.match(line)
        if fence is not None:
            spans.append((start, end))
            if match and match.group(1)[0] == fence[0] and len(match.group(1)) >= len(fence):
                fence = None
            continue

        if match:
            fence = match.group(1)
            spans.append((start, end))
        elif _QUOTE_RE.match(line):
            spans.append((start, end))

    return spans


def extract_mention_arguments(body: str, bot_login: str) -> str | None:
    """Text following the last ``@bot_login`` that is not quoted or fenced."""
    needle = f"@{bot_login}".lower()
    lowered = body.lower()
    blocked = _blocked_line_spans(body)

    candidate = -1
    offset = lowered.find(needle)
    while offset >= 0:
        if not any(start <= offset < end for start, end in blocked):
            candidate = offset + len(needle)
        offset = lowered.find(needle, offset + len(needle))

    if candidate < 0:
        return None
    return body[candidate:].strip()


def is_help_request(arguments: str) -> bool:
    lowered = arguments.lower()
    return "-help" in lowered or lowered.startswith("help") or arguments in ("-h", "-H", "?", "-?")


@dataclass(frozen=True)
class MentionIntent:
    """Either a job to start or a reply to post (or neither)."""

    kind: JobKind | None = None
    reply: str | None = None
    requires_push_access: bool = False


def classify_pull_request_mention(arguments: str, bot_login: str) -> MentionIntent:
    """Intent of a mention on a pull request in the default repository."""
    lowered = arguments.lower()

    if FUZZ_RE.match(arguments):
        return MentionIntent(kind=JobKind.FUZZ)
    if lowered.startswith("fuzz"):
        return MentionIntent(reply=f"Usage: `@{bot_login} fuzz <fuzzer name pattern>`")

    benchmark = BENCHMARK_FILTER_RE.match(arguments)
    if benchmark and benchmark.group(1) != "*":
        return MentionIntent(kind=JobKind.BENCHMARK)
    if lowered.startswith("benchmarks"):
        return MentionIntent(reply=f"Usage: `@{bot_login} benchmark <benchmarks filter>`")

    if lowered.startswith(("regexdiff", "diffregex")):
        return MentionIntent(kind=JobKind.REGEX_DIFF)

    if lowered.startswith(_REBASE_PREFIXES):
        return MentionIntent(kind=JobKind.REBASE, requires_push_access=True)

    return MentionIntent(kind=JobKind.JIT_DIFF)


def classify_backport_mention(arguments: str) -> MentionIntent:
    if arguments.lower().startswith("backport to "):
        return MentionIntent(kind=JobKind.BACKPORT)
    return MentionIntent()


def classify_issue_mention(arguments: str) -> MentionIntent:
    """Mentions on plain issues only start compare-range benchmarks."""
    if BENCHMARK_COMPARE_RANGE_RE.match(arguments):
        return MentionIntent(kind=JobKind.BENCHMARK)
    return MentionIntent()


def usage_markdown(bot_login: str) -> str:
    bot = f"@{bot_login}"
    return f"""<details>
<summary>Extra options for most job types</summary>

```
Options:
    -?|-help              Show help information

    -dependsOn <prs>      A comma-separated list of PR numbers to merge into the baseline branch.
    -combineWith <prs>    A comma-separated list of PR numbers to merge into the tested PR branch.

    -arm                  Run on an ARM64 VM instead of X64.
    -intel                Run on an Intel-based VM instead of an AMD-based one.
    -fast                 Run on a more powerful VM to save a few minutes.
    -hetzner              Run on a Hetzner VM instead of Azure.

Example:
    {bot} -arm -hetzner -combineWith #1000,#1001
```

</details>


<details>
<summary>Generate JIT diffs</summary>

```
Usage: {bot} [options]

Options:
    -nocctors             Avoid passing --cctors to jit-diff.
    -tier0                Generate tier0 code.

Example:
    {bot}
    {bot} -arm -tier0
```

</details>


<details>
<summary>Run libraries benchmarks</summary>

```
{bot} benchmark <benchmarks filter> [options]

Options:
    <link to a GitHub commit diff (compare)>
    <link to a custom dotnet/performance branch>
    -medium/long

Example:
    {bot} benchmark Regex
    {bot} benchmark RustLang_Sherlock https://github.com/MihaZupan/performance/tree/compiled-regex-only -intel -medium
```

</details>


<details>
<summary>Run libraries fuzzer</summary>

```
{bot} fuzz <fuzzer name pattern>

Example:
    {bot} fuzz SearchValues
    {bot} fuzz SearchValues -dependsOn #107206

The pattern may match multiple fuzzers (falls back to a Regex match).
```

</details>


<details>
<summary>Generate Regex source generator code and JIT diffs</summary>

```
{bot} regexdiff

Example:
    {bot} regexdiff
    {bot} regexdiff -arm
```

</details>


<details>
<summary>Merge / Rebase / Format JIT changes</summary>

```
{bot} merge/rebase/format    Requires collaborator access on your fork
```

</details>
"""


__all__ = [
    "BACKPORT_RE",
    "MentionIntent",
    "classify_backport_mention",
    "classify_issue_mention",
    "classify_pull_request_mention",
    "extract_mention_arguments",
    "is_help_request",
    "usage_markdown",
]
