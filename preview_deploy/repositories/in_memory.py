from __future__ import annotations

import asyncio
import hashlib
import itertools
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from preview_deploy.errors import CommentApiError, StaleSnapshotError, ValidationError
from preview_deploy.models import BranchSnapshot, IssueComment, Tree, utc_now


def _blob_ref(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


class InMemoryBranchStore:
    """Branch store kept in process memory. Used by tests and local sandboxes."""

    def __init__(self) -> None:
        self._branches: Dict[str, Tuple[str, Tree]] = {}
        self._blobs: Dict[str, bytes] = {}
        self._counter = itertools.count(1)
        self.fetch_count = 0
        self.write_count = 0
        self.cas_attempts = 0
        self.before_swap: Optional[Callable[[str], None]] = None

    def seed(self, branch: str, files: Dict[str, bytes]) -> str:
        """Put *files* on *branch* directly, bypassing compare-and-swap."""
        tree = {path: self._store_blob(content) for path, content in files.items()}
        revision = self._next_revision(tree)
        self._branches[branch] = (revision, tree)
        return revision

    def files(self, branch: str) -> Dict[str, bytes]:
        entry = self._branches.get(branch)
        if entry is None:
            return {}
        return {path: self._blobs[ref] for path, ref in entry[1].items()}

    def revision(self, branch: str) -> Optional[str]:
        entry = self._branches.get(branch)
        return entry[0] if entry else None

    def has_branch(self, branch: str) -> bool:
        return branch in self._branches

    def stage_bytes(self, files: Dict[str, bytes]) -> Tree:
        return {path: self._store_blob(content) for path, content in files.items()}

    async def fetch_snapshot(self, branch: str) -> BranchSnapshot:
        self.fetch_count += 1
        await asyncio.sleep(0)
        entry = self._branches.get(branch)
        if entry is None:
            return BranchSnapshot(branch=branch)
        revision, tree = entry
        return BranchSnapshot(branch=branch, revision=revision, tree=dict(tree))

    async def stage_artifact(self, source_dir: Path) -> Tree:
        if not source_dir.is_dir():
            raise ValidationError(f"source directory does not exist: {source_dir}")
        staged: Tree = {}
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                staged[path.relative_to(source_dir).as_posix()] = self._store_blob(path.read_bytes())
        return staged

    async def compare_and_swap(
        self,
        branch: str,
        expected_revision: Optional[str],
        tree: Tree,
        message: str,
    ) -> str:
        self.cas_attempts += 1
        await asyncio.sleep(0)
        if self.before_swap is not None:
            self.before_swap(branch)
        current = self.revision(branch)
        if current != expected_revision:
            raise StaleSnapshotError(branch, expected_revision, current)
        missing = [ref for ref in tree.values() if ref not in self._blobs]
        if missing:
            raise ValueError(f"tree references unknown blobs: {missing[:3]}")
        revision = self._next_revision(tree)
        self._branches[branch] = (revision, dict(tree))
        self.write_count += 1
        return revision

    def _store_blob(self, content: bytes) -> str:
        ref = _blob_ref(content)
        self._blobs[ref] = content
        return ref

    def _next_revision(self, tree: Tree) -> str:
        digest = hashlib.sha1()
        digest.update(str(next(self._counter)).encode())
        for path in sorted(tree):
            digest.update(f"{path}\0{tree[path]}\n".encode())
        return digest.hexdigest()


class InMemoryCommentStore:
    """Comment store kept in process memory."""

    def __init__(self, author: str = "github-actions[bot]") -> None:
        self.author = author
        self.comments: Dict[int, List[IssueComment]] = {}
        self._ids = itertools.count(1)
        self.create_calls = 0
        self.update_calls = 0

    def add(self, pull_request: int, body: str, *, author: Optional[str] = None) -> IssueComment:
        comment = IssueComment(
            comment_id=next(self._ids),
            author=author or self.author,
            body=body,
            created_at=utc_now(),
        )
        self.comments.setdefault(pull_request, []).append(comment)
        return comment

    async def list_comments(self, pull_request: int) -> List[IssueComment]:
        return [comment.model_copy() for comment in self.comments.get(pull_request, [])]

    async def create_comment(self, pull_request: int, body: str) -> IssueComment:
        self.create_calls += 1
        return self.add(pull_request, body).model_copy()

    async def update_comment(self, comment_id: int, body: str) -> IssueComment:
        self.update_calls += 1
        for comments in self.comments.values():
            for comment in comments:
                if comment.comment_id == comment_id:
                    comment.body = body
                    return comment.model_copy()
        raise CommentApiError(f"comment not found: {comment_id}")
