from .preview_states import (
    CLEANUP_PHASE_SEQUENCE,
    DEPLOY_PHASE_SEQUENCE,
    Availability,
    CommentAction,
    CommentPhase,
    PushOutcome,
    RunMode,
    RunOutcome,
    RunPhase,
    is_valid_transition,
    phase_sequence,
)

__all__ = [
    "CLEANUP_PHASE_SEQUENCE",
    "DEPLOY_PHASE_SEQUENCE",
    "Availability",
    "CommentAction",
    "CommentPhase",
    "PushOutcome",
    "RunMode",
    "RunOutcome",
    "RunPhase",
    "is_valid_transition",
    "phase_sequence",
]
