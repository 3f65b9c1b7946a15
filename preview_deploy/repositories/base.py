from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Protocol

from preview_deploy.models import BranchSnapshot, IssueComment, Tree


class BranchStore(Protocol):
    """Version-control host holding the shared publishing branch."""

    async def fetch_snapshot(self, branch: str) -> BranchSnapshot:
        ...

    async def stage_artifact(self, source_dir: Path) -> Tree:
        ...

    async def compare_and_swap(
        self,
        branch: str,
        expected_revision: Optional[str],
        tree: Tree,
        message: str,
    ) -> str:
        ...


class CommentStore(Protocol):
    """Pull-request comment API."""

    async def list_comments(self, pull_request: int) -> List[IssueComment]:
        ...

    async def create_comment(self, pull_request: int, body: str) -> IssueComment:
        ...

    async def update_comment(self, comment_id: int, body: str) -> IssueComment:
        ...
