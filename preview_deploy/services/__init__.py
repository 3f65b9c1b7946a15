from .availability import AvailabilityPoller, http_probe
from .comment_service import CommentReconciler, render_body, select_status_comment
from .preview_service import PreviewService, build_preview_service
from .push_coordinator import MAX_PUSH_ATTEMPTS, PushCoordinator
from .subtree_editor import apply_edit

__all__ = [
    "MAX_PUSH_ATTEMPTS",
    "AvailabilityPoller",
    "CommentReconciler",
    "PreviewService",
    "PushCoordinator",
    "apply_edit",
    "build_preview_service",
    "http_probe",
    "render_body",
    "select_status_comment",
]
