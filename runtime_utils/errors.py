from __future__ import annotations


class RuntimeUtilsError(Exception):
    """Base class for errors raised by runtime-utils collaborators."""


class GitHubError(RuntimeUtilsError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class GitHubNotFoundError(GitHubError):
    pass


class AzureRequestError(RuntimeUtilsError):
    def __init__(self, status_code: int, code: str | None, message: str) -> None:
        super().__init__(f"{code or status_code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message


class HetznerError(RuntimeUtilsError):
    pass


class HelixError(RuntimeUtilsError):
    pass


class StorageError(RuntimeUtilsError):
    pass
