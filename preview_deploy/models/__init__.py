from .preview import (
    BranchSnapshot,
    IssueComment,
    PreviewRequest,
    PreviewResult,
    PushAttempt,
    PushReport,
    PutSubtree,
    RemoveSubtree,
    StatusComment,
    Tree,
    TreeEdit,
    TreeEditResult,
    utc_now,
)

__all__ = [
    "BranchSnapshot",
    "IssueComment",
    "PreviewRequest",
    "PreviewResult",
    "PushAttempt",
    "PushReport",
    "PutSubtree",
    "RemoveSubtree",
    "StatusComment",
    "Tree",
    "TreeEdit",
    "TreeEditResult",
    "utc_now",
]
