from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PositiveInt

from preview_deploy.domain.preview_states import (
    Availability,
    CommentAction,
    CommentPhase,
    PushOutcome,
    RunMode,
    RunOutcome,
    RunPhase,
)

# path -> opaque blob reference understood by the store that produced it
Tree = Dict[str, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BranchSnapshot(BaseModel):
    """Content of the publishing branch at one revision."""

    model_config = {"frozen": True}

    branch: str = Field(..., description="Name of the publishing branch.")
    revision: Optional[str] = Field(
        default=None, description="Commit the snapshot was read from; None when the branch is absent."
    )
    tree: Tree = Field(default_factory=dict, description="Every file on the branch.")

    @property
    def exists(self) -> bool:
        return self.revision is not None


class PutSubtree(BaseModel):
    kind: Literal["put"] = "put"
    preview_id: PositiveInt
    files: Tree = Field(..., description="Artifact files keyed by path relative to the subtree root.")


class RemoveSubtree(BaseModel):
    kind: Literal["remove"] = "remove"
    preview_id: PositiveInt


TreeEdit = Union[PutSubtree, RemoveSubtree]


class TreeEditResult(BaseModel):
    tree: Tree
    changed: bool


class PushAttempt(BaseModel):
    attempt: int = Field(..., ge=1)
    base_revision: Optional[str] = None
    outcome: PushOutcome
    revision: Optional[str] = Field(
        default=None, description="Commit the branch points to after a successful push."
    )
    delay_seconds: float = Field(default=0.0, description="Backoff slept after a conflict.")


class PushReport(BaseModel):
    branch: str
    changed: bool
    revision: Optional[str] = None
    attempts: List[PushAttempt] = Field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def conflicts(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.outcome is PushOutcome.CONFLICT)


class IssueComment(BaseModel):
    """A comment as returned by the pull-request comment API."""

    comment_id: int
    author: Optional[str] = None
    body: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    url: Optional[str] = None


class StatusComment(BaseModel):
    comment_id: Optional[int] = None
    pull_request: PositiveInt
    marker: str
    phase: CommentPhase
    body: str
    action: CommentAction
    url: Optional[str] = None


class PreviewRequest(BaseModel):
    """Validated inputs for a single run."""

    mode: RunMode
    preview_id: PositiveInt
    preview_url: str
    source_dir: Optional[str] = None


class PreviewResult(BaseModel):
    mode: RunMode
    outcome: RunOutcome
    phase: RunPhase = RunPhase.DONE
    preview_id: Optional[int] = None
    preview_url: Optional[str] = None
    has_changes: bool = False
    availability: Availability = Availability.SKIPPED
    revision: Optional[str] = None
    attempts: int = 0
    comment: Optional[StatusComment] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome.is_success

    def outputs(self) -> Dict[str, str]:
        return {
            "preview-url": self.preview_url or "",
            "has-changes": "true" if self.has_changes else "false",
            "outcome": self.outcome.value,
            "availability": self.availability.value,
            "revision": self.revision or "",
        }
