from __future__ import annotations

import asyncio
import logging
import os
import stat
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from preview_deploy.errors import (
    CommandExecutionError,
    FetchFailed,
    PushFailed,
    StaleSnapshotError,
    ValidationError,
    mask_secrets,
)
from preview_deploy.models import BranchSnapshot, Tree


logger = logging.getLogger("preview-deploy.git")

FETCH_NAMESPACE = "refs/preview-deploy"
DRY_RUN_REVISION = "0" * 40

# Substrings git prints when a push lost a race rather than failing outright.
CONFLICT_MARKERS = (
    "stale info",
    "fetch first",
    "non-fast-forward",
    "[rejected]",
    "failed to update ref",
    "cannot lock ref",
    "reference already exists",
)
MISSING_REF_MARKERS = (
    "couldn't find remote ref",
    "could not find remote ref",
)


class GitBranchRepository:
    """Reads and advances the publishing branch through the git CLI.

    All work happens in a private bare repository under *workdir*; nothing
    touches the caller's checkout. Tree values are ``"<mode> <blob sha>"``.
    """

    def __init__(
        self,
        remote_url: str,
        workdir: Path | str,
        *,
        committer_name: str,
        committer_email: str,
        dry_run: bool = False,
    ) -> None:
        self.remote_url = remote_url
        self.workdir = Path(workdir).resolve()
        self.committer_name = committer_name
        self.committer_email = committer_email
        self.dry_run = dry_run
        self._initialized = False
        logger.info(
            "GitBranchRepository initialized (remote=%s, workdir=%s, dry_run=%s)",
            mask_secrets(remote_url),
            self.workdir,
            dry_run,
        )

    async def fetch_snapshot(self, branch: str) -> BranchSnapshot:
        await self._ensure_repository()
        local_ref = f"{FETCH_NAMESPACE}/{branch}"
        try:
            await self._run_command(
                [
                    "git",
                    "fetch",
                    "--no-tags",
                    "--depth=1",
                    self.remote_url,
                    f"+refs/heads/{branch}:{local_ref}",
                ],
                description="Fetch publishing branch",
            )
        except CommandExecutionError as exc:
            if any(marker in exc.stderr.lower() for marker in MISSING_REF_MARKERS):
                logger.info("Branch %s does not exist on the remote yet.", branch)
                return BranchSnapshot(branch=branch)
            raise FetchFailed(f"unable to fetch branch '{branch}': {exc.stderr or exc}") from exc

        try:
            revision = (await self._run_command(
                ["git", "rev-parse", "--verify", f"{local_ref}^{{commit}}"],
                description="Resolve fetched revision",
            ))["stdout"]
            listing = await self._run_command(
                ["git", "ls-tree", "-r", "-z", "--full-tree", revision],
                description="List publishing branch tree",
            )
        except CommandExecutionError as exc:
            raise FetchFailed(f"unable to read branch '{branch}': {exc}") from exc

        tree = parse_ls_tree(listing["stdout"])
        logger.info("Fetched %s at %s (%d files)", branch, revision[:12], len(tree))
        return BranchSnapshot(branch=branch, revision=revision, tree=tree)

    async def stage_artifact(self, source_dir: Path) -> Tree:
        """Write every file under *source_dir* into the object store."""
        if not source_dir.is_dir():
            raise ValidationError(f"source directory does not exist: {source_dir}")
        await self._ensure_repository()

        files: List[Path] = [path for path in sorted(source_dir.rglob("*")) if path.is_file()]
        if not files:
            return {}
        result = await self._run_command(
            ["git", "hash-object", "-w", "--no-filters", "--stdin-paths"],
            description="Hash artifact files",
            stdin="\n".join(str(path) for path in files) + "\n",
        )
        shas = result["stdout"].split()
        if len(shas) != len(files):
            raise PushFailed(
                f"git hash-object returned {len(shas)} ids for {len(files)} files"
            )

        staged: Tree = {}
        for path, sha in zip(files, shas):
            mode = "100755" if path.stat().st_mode & stat.S_IXUSR else "100644"
            staged[path.relative_to(source_dir).as_posix()] = f"{mode} {sha}"
        logger.info("Staged %d artifact files from %s", len(staged), source_dir)
        return staged

    async def compare_and_swap(
        self,
        branch: str,
        expected_revision: Optional[str],
        tree: Tree,
        message: str,
    ) -> str:
        await self._ensure_repository()
        tree_sha = await self._write_tree(tree)

        commit_command = ["git", "commit-tree", tree_sha, "-m", message]
        if expected_revision:
            commit_command[3:3] = ["-p", expected_revision]
        commit = (await self._run_command(
            commit_command,
            description="Create preview commit",
            env=self._identity_env(),
        ))["stdout"]

        lease = f"--force-with-lease=refs/heads/{branch}:{expected_revision or ''}"
        push_command = [
            "git",
            "push",
            "--porcelain",
            lease,
            self.remote_url,
            f"{commit}:refs/heads/{branch}",
        ]
        if self.dry_run:
            logger.info(
                "[dry-run] would push %s onto %s (base %s)",
                commit[:12],
                branch,
                (expected_revision or "<absent>")[:12],
            )
            return DRY_RUN_REVISION

        try:
            await self._run_command(push_command, description="Push publishing branch")
        except CommandExecutionError as exc:
            output = f"{exc.stdout}\n{exc.stderr}".lower()
            if any(marker in output for marker in CONFLICT_MARKERS):
                raise StaleSnapshotError(branch, expected_revision) from exc
            raise PushFailed(f"push to '{branch}' failed: {exc.stderr or exc}") from exc

        logger.info("Pushed %s onto %s", commit[:12], branch)
        return commit

    async def _write_tree(self, tree: Tree) -> str:
        index_file = self.workdir / f"preview-index-{uuid4().hex}"
        env = {"GIT_INDEX_FILE": str(index_file)}
        lines = []
        for path in sorted(tree):
            mode, _, sha = tree[path].partition(" ")
            lines.append(f"{mode} {sha}\t{path}")
        try:
            await self._run_command(
                ["git", "read-tree", "--empty"],
                description="Reset scratch index",
                env=env,
            )
            if lines:
                await self._run_command(
                    ["git", "update-index", "-z", "--index-info"],
                    description="Populate scratch index",
                    env=env,
                    stdin="\0".join(lines) + "\0",
                )
            result = await self._run_command(
                ["git", "write-tree"],
                description="Write preview tree",
                env=env,
            )
        finally:
            index_file.unlink(missing_ok=True)
        return result["stdout"]

    async def _ensure_repository(self) -> None:
        if self._initialized:
            return
        if not (self.workdir / "HEAD").exists():
            self.workdir.mkdir(parents=True, exist_ok=True)
            await self._run_command(
                ["git", "init", "--bare", "--quiet", "."],
                description="Initialize scratch repository",
            )
        self._initialized = True

    def _identity_env(self) -> Dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.committer_name,
            "GIT_AUTHOR_EMAIL": self.committer_email,
            "GIT_COMMITTER_NAME": self.committer_name,
            "GIT_COMMITTER_EMAIL": self.committer_email,
        }

    async def _run_command(
        self,
        command: list[str],
        *,
        description: str,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> Dict[str, Any]:
        cwd = cwd or self.workdir
        metadata: Dict[str, Any] = {
            "description": description,
            "command": mask_secrets(" ".join(command)),
            "cwd": str(cwd) if cwd else None,
        }
        logger.debug("%s: %s", description, metadata["command"])

        process_env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **(env or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                env=process_env,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("%s could not start: %s", description, exc)
            raise CommandExecutionError(
                command=command,
                cwd=cwd,
                returncode=-1,
                stdout="",
                stderr=str(exc),
            ) from exc
        stdout_bytes, stderr_bytes = await process.communicate(
            stdin.encode() if stdin is not None else None
        )

        metadata["stdout"] = stdout_bytes.decode(errors="replace").strip()
        metadata["stderr"] = stderr_bytes.decode(errors="replace").strip()
        metadata["returncode"] = process.returncode

        if process.returncode != 0:
            raise CommandExecutionError(
                command=command,
                cwd=cwd,
                returncode=process.returncode,
                stdout=metadata["stdout"],
                stderr=metadata["stderr"],
            )

        return metadata


def parse_ls_tree(output: str) -> Tree:
    """Parse ``git ls-tree -r -z`` output into ``{path: "<mode> <sha>"}``."""
    tree: Tree = {}
    for record in output.split("\0"):
        if not record:
            continue
        meta, _, path = record.partition("\t")
        parts = meta.split()
        if len(parts) != 3 or parts[1] != "blob":
            # submodule commits and anything else are not preview content
            continue
        mode, _, sha = parts
        tree[path] = f"{mode} {sha}"
    return tree
