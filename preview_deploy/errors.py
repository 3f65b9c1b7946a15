from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

_CREDENTIAL_PATTERN = re.compile(r"(https?://)[^/@\s]+@")


def mask_secrets(text: str) -> str:
    """Hide credentials embedded in remote URLs."""
    return _CREDENTIAL_PATTERN.sub(r"\1***@", text)


class PreviewDeployError(RuntimeError):
    """Base class for every error raised by preview-deploy."""

    fatal = True


class ValidationError(PreviewDeployError):
    """Raised when a required input is missing or malformed."""


class FetchFailed(PreviewDeployError):
    """Raised when the publishing branch cannot be read."""


class PushFailed(PreviewDeployError):
    """Raised when a push fails for a reason other than a stale snapshot."""


class PushConflictExhausted(PreviewDeployError):
    """Raised when every push attempt lost the race against another writer."""

    def __init__(self, branch: str, attempts: int) -> None:
        self.branch = branch
        self.attempts = attempts
        super().__init__(
            f"branch '{branch}' kept moving; gave up after {attempts} push attempts"
        )


class StaleSnapshotError(PreviewDeployError):
    """Raised by a branch store when the compare-and-swap base is no longer current."""

    def __init__(self, branch: str, expected: Optional[str], actual: Optional[str] = None) -> None:
        self.branch = branch
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"branch '{branch}' moved (expected {expected or '<absent>'}, found {actual or 'unknown'})"
        )


class CommentApiError(PreviewDeployError):
    """Raised when the pull-request comment API fails. Never fails a run."""

    fatal = False


class AvailabilityTimeout(PreviewDeployError):
    """Raised when a preview URL never answered with 2xx before the deadline."""

    fatal = False

    def __init__(self, url: str, waited_seconds: float, last_status: Optional[int] = None) -> None:
        self.url = url
        self.waited_seconds = waited_seconds
        self.last_status = last_status
        super().__init__(
            f"{url} not available after {waited_seconds:.0f}s (last status: {last_status or 'no response'})"
        )


class CommandExecutionError(PreviewDeployError):
    """Raised when a subprocess command fails."""

    def __init__(
        self,
        command: list[str],
        cwd: Optional[Path],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = [mask_secrets(part) for part in command]
        self.cwd = cwd
        self.returncode = returncode
        self.stdout = mask_secrets(stdout)
        self.stderr = mask_secrets(stderr)
        message = self.stderr or self.stdout or f"return code {returncode}"
        super().__init__(f"command failed ({' '.join(self.command)}): {message}")


class RunTimedOut(PreviewDeployError):
    """Raised when a run exceeds PREVIEW_RUN_TIMEOUT_SECONDS."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"run exceeded {seconds:g}s and was cancelled")
