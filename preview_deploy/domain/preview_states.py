from __future__ import annotations

from enum import Enum


class RunMode(str, Enum):
    DEPLOY = "deploy"
    CLEANUP = "cleanup"
    AUTO = "auto"


class RunPhase(str, Enum):
    START = "start"
    VALIDATING = "validating"
    COMMENT_START = "comment_start"
    PUSHING = "pushing"
    POLLING = "polling"
    COMMENT_FINAL = "comment_final"
    DONE = "done"

    @property
    def is_terminal(self) -> bool:
        return self is RunPhase.DONE


class RunOutcome(str, Enum):
    SUCCESS = "success"
    SUCCESS_NO_CHANGES = "success_no_changes"
    SUCCESS_NOOP = "success_noop"
    FAILURE = "failure"

    @property
    def is_success(self) -> bool:
        return self is not RunOutcome.FAILURE


class Availability(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    SKIPPED = "skipped"


class CommentPhase(str, Enum):
    IN_PROGRESS = "in_progress"
    DEPLOYED = "deployed"
    REMOVED = "removed"
    FAILED = "failed"


class CommentAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class PushOutcome(str, Enum):
    PUSHED = "pushed"
    CONFLICT = "conflict"
    UNCHANGED = "unchanged"


DEPLOY_PHASE_SEQUENCE: tuple[RunPhase, ...] = (
    RunPhase.START,
    RunPhase.VALIDATING,
    RunPhase.COMMENT_START,
    RunPhase.PUSHING,
    RunPhase.POLLING,
    RunPhase.COMMENT_FINAL,
    RunPhase.DONE,
)

CLEANUP_PHASE_SEQUENCE: tuple[RunPhase, ...] = (
    RunPhase.START,
    RunPhase.VALIDATING,
    RunPhase.PUSHING,
    RunPhase.COMMENT_FINAL,
    RunPhase.DONE,
)


def phase_sequence(mode: RunMode) -> tuple[RunPhase, ...]:
    if mode is RunMode.CLEANUP:
        return CLEANUP_PHASE_SEQUENCE
    return DEPLOY_PHASE_SEQUENCE


def is_valid_transition(mode: RunMode, current: RunPhase, new: RunPhase) -> bool:
    """Phases only move forward; any non-terminal phase may jump to the final comment."""
    if current == new:
        return True
    if current.is_terminal:
        return False
    sequence = list(phase_sequence(mode))
    try:
        current_index = sequence.index(current)
        new_index = sequence.index(new)
    except ValueError:
        return False
    if new in (RunPhase.COMMENT_FINAL, RunPhase.DONE):
        return True
    return new_index > current_index
