"""Pure tree edits for the publishing branch.

Every function here works on a snapshot and returns a new tree; nothing is
carried over between push attempts.
"""

from __future__ import annotations

from typing import Iterable

from preview_deploy.errors import ValidationError
from preview_deploy.models import (
    BranchSnapshot,
    PutSubtree,
    RemoveSubtree,
    Tree,
    TreeEdit,
    TreeEditResult,
)


def subtree_root(prefix: str, preview_id: int) -> str:
    return f"{prefix.strip('/')}/{preview_id}/"


def validate_artifact_paths(paths: Iterable[str]) -> None:
    seen = False
    for path in paths:
        seen = True
        parts = path.split("/")
        if path.startswith("/") or any(part in {"", ".", ".."} for part in parts):
            raise ValidationError(f"artifact path '{path}' is not a plain relative path")
    if not seen:
        raise ValidationError("artifact is empty; refusing to publish an empty preview")


def has_preview_subtrees(tree: Tree, prefix: str) -> bool:
    root = f"{prefix.strip('/')}/"
    for path in tree:
        if not path.startswith(root):
            continue
        head, sep, _ = path[len(root):].partition("/")
        if sep and head.isdigit():
            return True
    return False


def put_subtree(tree: Tree, prefix: str, preview_id: int, files: Tree) -> Tree:
    validate_artifact_paths(files)
    root = subtree_root(prefix, preview_id)
    updated = {path: ref for path, ref in tree.items() if not path.startswith(root)}
    updated.update({f"{root}{path}": ref for path, ref in files.items()})
    return updated


def remove_subtree(tree: Tree, prefix: str, preview_id: int) -> Tree:
    root = subtree_root(prefix, preview_id)
    updated = {path: ref for path, ref in tree.items() if not path.startswith(root)}
    if len(updated) != len(tree) and not has_preview_subtrees(updated, prefix):
        parent = f"{prefix.strip('/')}/"
        updated = {path: ref for path, ref in updated.items() if not path.startswith(parent)}
    return updated


def apply_edit(snapshot: BranchSnapshot, edit: TreeEdit, prefix: str) -> TreeEditResult:
    """Compute the desired branch tree for *edit* on top of *snapshot*."""
    current = dict(snapshot.tree)
    if isinstance(edit, PutSubtree):
        desired = put_subtree(current, prefix, edit.preview_id, edit.files)
    elif isinstance(edit, RemoveSubtree):
        desired = remove_subtree(current, prefix, edit.preview_id)
    else:  # pragma: no cover - guarded by the TreeEdit union
        raise TypeError(f"unsupported edit: {edit!r}")
    return TreeEditResult(tree=desired, changed=desired != current)
