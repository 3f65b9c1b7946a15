from .base import BranchStore, CommentStore
from .git_branch import GitBranchRepository
from .github_comments import GitHubCommentRepository
from .in_memory import InMemoryBranchStore, InMemoryCommentStore

__all__ = [
    "BranchStore",
    "CommentStore",
    "GitBranchRepository",
    "GitHubCommentRepository",
    "InMemoryBranchStore",
    "InMemoryCommentStore",
]
