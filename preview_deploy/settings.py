from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from preview_deploy.domain import RunMode

_OPTIONAL_FIELDS = (
    "source_dir",
    "base_url",
    "token",
    "repository",
    "event_path",
    "output_path",
    "remote_url",
    "preview_id",
    "comment_author",
    "run_timeout_seconds",
)


class Settings(BaseModel):
    """Runtime configuration resolved from environment variables."""

    mode: RunMode = Field(
        default=RunMode.AUTO,
        alias="PREVIEW_MODE",
        description="deploy, cleanup, or auto (derived from the pull-request event).",
    )
    source_dir: Optional[str] = Field(
        default=None,
        alias="PREVIEW_SOURCE_DIR",
        description="Directory holding the built preview artifact (deploy only).",
    )
    base_url: Optional[str] = Field(
        default=None,
        alias="PREVIEW_BASE_URL",
        description="Base URL the publishing branch is served from. Defaults to the GitHub Pages URL.",
    )
    token: Optional[str] = Field(
        default=None,
        alias="GITHUB_TOKEN",
        description="Write credential used for pushes and comment API calls.",
    )
    repository: Optional[str] = Field(
        default=None,
        alias="GITHUB_REPOSITORY",
        description="owner/name of the repository that holds the publishing branch.",
    )
    api_url: str = Field(
        default="https://api.github.com",
        alias="GITHUB_API_URL",
        description="REST API root used for pull-request comments.",
    )
    server_url: str = Field(
        default="https://github.com",
        alias="GITHUB_SERVER_URL",
        description="Git host used to derive the push remote.",
    )
    event_path: Optional[str] = Field(
        default=None,
        alias="GITHUB_EVENT_PATH",
        description="Pull-request event payload used to derive the preview id and auto mode.",
    )
    output_path: Optional[str] = Field(
        default=None,
        alias="GITHUB_OUTPUT",
        description="File receiving key=value outputs.",
    )
    remote_url: Optional[str] = Field(
        default=None,
        alias="PREVIEW_REMOTE_URL",
        description="Explicit git remote for the publishing branch. Overrides the derived one.",
    )
    preview_branch: str = Field(
        default="gh-pages",
        alias="PREVIEW_BRANCH",
        description="Shared publishing branch holding every live preview.",
    )
    preview_id: Optional[int] = Field(
        default=None,
        alias="PREVIEW_ID",
        description="Pull-request number. Derived from the event payload when omitted.",
    )
    path_prefix: str = Field(
        default="pr",
        alias="PREVIEW_PATH_PREFIX",
        description="Directory on the publishing branch that holds one subtree per preview.",
    )
    comment_enabled: bool = Field(
        default=True,
        alias="PREVIEW_COMMENT",
        description="Keep a status comment on the pull request.",
    )
    comment_marker: str = Field(
        default="pr-preview",
        alias="PREVIEW_COMMENT_MARKER",
        description="Token embedded in the status comment to find it again.",
    )
    comment_author: Optional[str] = Field(
        default="github-actions[bot]",
        alias="PREVIEW_COMMENT_AUTHOR",
        description="Login that owns status comments. Blank matches on the marker only.",
    )
    wait_for_deployment: bool = Field(
        default=False,
        alias="PREVIEW_WAIT_FOR_DEPLOYMENT",
        description="Poll the preview URL after pushing until it serves content.",
    )
    max_wait_seconds: float = Field(
        default=300,
        ge=0,
        alias="PREVIEW_MAX_WAIT_SECONDS",
        description="Upper bound for availability polling.",
    )
    poll_interval_seconds: float = Field(
        default=10,
        gt=0,
        alias="PREVIEW_POLL_INTERVAL_SECONDS",
        description="Pause between availability probes.",
    )
    committer_name: str = Field(
        default="github-actions[bot]",
        alias="PREVIEW_COMMITTER_NAME",
    )
    committer_email: str = Field(
        default="41898282+github-actions[bot]@users.noreply.github.com",
        alias="PREVIEW_COMMITTER_EMAIL",
    )
    push_backoff_base_seconds: float = Field(
        default=1.0,
        ge=0,
        alias="PREVIEW_PUSH_BACKOFF_SECONDS",
        description="First backoff delay after a push conflict; doubles per attempt.",
    )
    push_backoff_max_seconds: float = Field(
        default=30.0,
        ge=0,
        alias="PREVIEW_PUSH_BACKOFF_MAX_SECONDS",
        description="Cap applied to the doubling backoff before jitter.",
    )
    dry_run: bool = Field(
        default=False,
        alias="PREVIEW_DRY_RUN",
        description="When true, pushes and comments are logged but not executed.",
    )
    workdir: str = Field(
        default=".preview-deploy",
        alias="PREVIEW_WORKDIR",
        description="Scratch bare repository used to build commits.",
    )
    display_timezone: str = Field(
        default="UTC",
        alias="PREVIEW_DISPLAY_TIMEZONE",
        description="Timezone used for timestamps in status comments.",
    )
    run_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        alias="PREVIEW_RUN_TIMEOUT_SECONDS",
        description="Overall cap on a single run.",
    )
    log_level: str = Field(default="INFO", alias="PREVIEW_LOG_LEVEL")

    model_config = {"populate_by_name": True}

    @field_validator(*_OPTIONAL_FIELDS, mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            if value in {"remove", "delete", "teardown"}:
                return RunMode.CLEANUP.value
            return value or RunMode.AUTO.value
        return value

    @field_validator("path_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        prefix = value.strip().strip("/")
        if not prefix:
            raise ValueError("path prefix must not be empty")
        if any(part in {"", ".", ".."} for part in prefix.split("/")):
            raise ValueError(f"path prefix '{value}' must be a plain relative path")
        return prefix

    @field_validator("display_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        value = value.strip().rstrip("/")
        scheme, _, host = value.partition("://")
        if scheme.lower() not in {"http", "https"} or not host:
            raise ValueError(f"base URL '{value}' must start with http:// or https://")
        return value

    @property
    def resolved_base_url(self) -> Optional[str]:
        if self.base_url:
            return self.base_url
        if not self.repository or "/" not in self.repository:
            return None
        owner, name = self.repository.split("/", 1)
        pages_host = f"{owner.lower()}.github.io"
        if name.lower() == pages_host:
            return f"https://{pages_host}"
        return f"https://{pages_host}/{name}"

    @property
    def resolved_remote_url(self) -> Optional[str]:
        if self.remote_url:
            return self.remote_url
        if not self.repository:
            return None
        scheme, _, host = self.server_url.rstrip("/").partition("://")
        if self.token:
            return f"{scheme}://x-access-token:{self.token}@{host}/{self.repository}.git"
        return f"{scheme}://{host}/{self.repository}.git"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls.model_validate(os.environ)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance built from environment variables."""
    return Settings.from_env()
