from __future__ import annotations

from enum import Enum


class JobKind(str, Enum):
    JIT_DIFF = "jit_diff"
    FUZZ = "fuzz"
    BENCHMARK = "benchmark"
    REGEX_DIFF = "regex_diff"
    REBASE = "rebase"
    BACKPORT = "backport"
    FAKE = "fake"
