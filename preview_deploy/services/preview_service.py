from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional

from preview_deploy.domain import (
    Availability,
    CommentPhase,
    RunMode,
    RunOutcome,
    RunPhase,
    is_valid_transition,
)
from preview_deploy.env_loader import event_action, load_event_payload, pull_request_number
from preview_deploy.errors import (
    AvailabilityTimeout,
    CommentApiError,
    PreviewDeployError,
    RunTimedOut,
    ValidationError,
)
from preview_deploy.models import (
    PreviewRequest,
    PreviewResult,
    PushReport,
    PutSubtree,
    RemoveSubtree,
    StatusComment,
    Tree,
    utc_now,
)
from preview_deploy.repositories import (
    BranchStore,
    CommentStore,
    GitBranchRepository,
    GitHubCommentRepository,
)
from preview_deploy.services.availability import AvailabilityPoller
from preview_deploy.services.comment_service import CommentReconciler, render_body
from preview_deploy.services.push_coordinator import PushCoordinator
from preview_deploy.services.subtree_editor import validate_artifact_paths
from preview_deploy.settings import Settings


logger = logging.getLogger("preview-deploy.service")


class _Run:
    """Mutable bookkeeping for one invocation."""

    def __init__(self, mode: RunMode) -> None:
        self.mode = mode
        self.phase = RunPhase.START
        self.request: Optional[PreviewRequest] = None
        self.report: Optional[PushReport] = None
        self.availability = Availability.SKIPPED
        self.comment: Optional[StatusComment] = None
        self.started_at = utc_now()


class PreviewService:
    """Sequences validation, comments, the branch push and availability polling."""

    def __init__(
        self,
        settings: Settings,
        branch_store: BranchStore,
        comment_store: Optional[CommentStore] = None,
        *,
        coordinator: Optional[PushCoordinator] = None,
        poller: Optional[AvailabilityPoller] = None,
        event: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.settings = settings
        self.branch_store = branch_store
        self.branch = settings.preview_branch
        self.prefix = settings.path_prefix
        self.coordinator = coordinator or PushCoordinator(
            branch_store,
            prefix=self.prefix,
            backoff_base=settings.push_backoff_base_seconds,
            backoff_max=settings.push_backoff_max_seconds,
        )
        self.poller = poller or AvailabilityPoller()
        comments_enabled = settings.comment_enabled and not settings.dry_run
        if settings.comment_enabled and settings.dry_run:
            logger.info("Dry run: status comments will not be posted.")
        self.comments = CommentReconciler(
            comment_store,
            marker=settings.comment_marker,
            author=settings.comment_author,
            enabled=comments_enabled,
        )
        self._event = event if event is not None else load_event_payload(settings.event_path)
        logger.info(
            "PreviewService initialized (branch=%s, prefix=%s, comments=%s, wait=%s, dry_run=%s)",
            self.branch,
            self.prefix,
            self.comments.enabled,
            settings.wait_for_deployment,
            settings.dry_run,
        )

    # ---- validation -----------------------------------------------------

    def resolve_mode(self, mode: Optional[RunMode] = None) -> RunMode:
        mode = mode or self.settings.mode
        if mode is not RunMode.AUTO:
            return mode
        action = event_action(self._event)
        if action is None:
            raise ValidationError("mode is 'auto' but no pull-request event action is available")
        return RunMode.CLEANUP if action == "closed" else RunMode.DEPLOY

    def resolve_preview_id(self, preview_id: Optional[int] = None) -> Optional[int]:
        for candidate in (preview_id, self.settings.preview_id, pull_request_number(self._event)):
            if candidate is not None:
                return candidate
        return None

    def preview_url(self, preview_id: int) -> str:
        base_url = self.settings.resolved_base_url
        if not base_url:
            raise ValidationError(
                "base URL is unknown; set PREVIEW_BASE_URL or GITHUB_REPOSITORY"
            )
        return f"{base_url}/{self.prefix}/{preview_id}/"

    def build_request(
        self,
        mode: RunMode,
        preview_id: Optional[int],
        source_dir: Optional[str] = None,
    ) -> PreviewRequest:
        if preview_id is None:
            raise ValidationError(
                "preview id is unknown; set PREVIEW_ID or run from a pull-request event"
            )
        if preview_id < 1:
            raise ValidationError(f"preview id must be a positive integer, got {preview_id}")
        source = source_dir or self.settings.source_dir
        if mode is RunMode.DEPLOY:
            if not source:
                raise ValidationError("deploy requires a source directory (PREVIEW_SOURCE_DIR)")
            if not Path(source).is_dir():
                raise ValidationError(f"source directory does not exist: {source}")
        return PreviewRequest(
            mode=mode,
            preview_id=preview_id,
            preview_url=self.preview_url(preview_id),
            source_dir=source if mode is RunMode.DEPLOY else None,
        )

    # ---- entry points ---------------------------------------------------

    async def run(
        self,
        mode: Optional[RunMode] = None,
        *,
        preview_id: Optional[int] = None,
        source_dir: Optional[str] = None,
    ) -> PreviewResult:
        try:
            resolved_mode = self.resolve_mode(mode)
        except ValidationError as exc:
            logger.error("Cannot determine run mode: %s", exc)
            return PreviewResult(
                mode=mode or self.settings.mode,
                outcome=RunOutcome.FAILURE,
                error=str(exc),
                error_type=type(exc).__name__,
                completed_at=utc_now(),
            )
        if resolved_mode is RunMode.CLEANUP:
            return await self.cleanup(preview_id=preview_id)
        return await self.deploy(preview_id=preview_id, source_dir=source_dir)

    async def deploy(
        self,
        *,
        preview_id: Optional[int] = None,
        source_dir: Optional[str] = None,
    ) -> PreviewResult:
        run = _Run(RunMode.DEPLOY)
        resolved_id = self.resolve_preview_id(preview_id)
        logger.info("Starting preview deploy id=%s branch=%s", resolved_id, self.branch)
        failure = await self._guarded(run, self._deploy_steps(run, resolved_id, source_dir))
        if failure is not None:
            return await self._fail(run, resolved_id, failure)

        outcome = RunOutcome.SUCCESS if run.report.changed else RunOutcome.SUCCESS_NO_CHANGES
        self._advance(run, RunPhase.COMMENT_FINAL)
        await self._post_comment(run, CommentPhase.DEPLOYED)
        return self._finish(run, outcome)

    async def cleanup(self, *, preview_id: Optional[int] = None) -> PreviewResult:
        run = _Run(RunMode.CLEANUP)
        resolved_id = self.resolve_preview_id(preview_id)
        logger.info("Starting preview cleanup id=%s branch=%s", resolved_id, self.branch)
        failure = await self._guarded(run, self._cleanup_steps(run, resolved_id))
        if failure is not None:
            return await self._fail(run, resolved_id, failure)

        outcome = RunOutcome.SUCCESS if run.report.changed else RunOutcome.SUCCESS_NOOP
        if not run.report.changed:
            logger.info("Preview %s was not published; cleanup is a no-op.", resolved_id)
        self._advance(run, RunPhase.COMMENT_FINAL)
        await self._post_comment(run, CommentPhase.REMOVED)
        return self._finish(run, outcome)

    # ---- steps ----------------------------------------------------------

    async def _deploy_steps(
        self, run: _Run, preview_id: Optional[int], source_dir: Optional[str]
    ) -> None:
        self._advance(run, RunPhase.VALIDATING)
        run.request = self.build_request(RunMode.DEPLOY, preview_id, source_dir)
        files = await self._stage_artifact(run.request)

        self._advance(run, RunPhase.COMMENT_START)
        await self._post_comment(run, CommentPhase.IN_PROGRESS)

        self._advance(run, RunPhase.PUSHING)
        run.report = await self.coordinator.publish(
            self.branch,
            PutSubtree(preview_id=run.request.preview_id, files=files),
            f"Deploy preview for #{run.request.preview_id}",
        )

        self._advance(run, RunPhase.POLLING)
        run.availability = await self._check_availability(run.request.preview_url)

    async def _cleanup_steps(self, run: _Run, preview_id: Optional[int]) -> None:
        self._advance(run, RunPhase.VALIDATING)
        run.request = self.build_request(RunMode.CLEANUP, preview_id)

        self._advance(run, RunPhase.PUSHING)
        run.report = await self.coordinator.publish(
            self.branch,
            RemoveSubtree(preview_id=run.request.preview_id),
            f"Remove preview for #{run.request.preview_id}",
        )

    async def _guarded(self, run: _Run, steps: Awaitable[None]) -> Optional[Exception]:
        """Run *steps* under the run deadline; return the error that ended them, if any."""
        timeout = self.settings.run_timeout_seconds
        try:
            if timeout:
                try:
                    await asyncio.wait_for(steps, timeout=timeout)
                except asyncio.TimeoutError as exc:
                    raise RunTimedOut(timeout) from exc
            else:
                await steps
        except PreviewDeployError as exc:
            logger.error(
                "Preview %s failed in %s: %s", run.mode.value, run.phase.value, exc
            )
            return exc
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception(
                "Unexpected error during preview %s (%s)", run.mode.value, run.phase.value
            )
            return exc
        return None

    # ---- helpers --------------------------------------------------------

    def _advance(self, run: _Run, new_phase: RunPhase) -> None:
        if not is_valid_transition(run.mode, run.phase, new_phase):
            raise RuntimeError(
                f"invalid phase transition from {run.phase.value} to {new_phase.value}"
            )
        logger.debug("%s: %s -> %s", run.mode.value, run.phase.value, new_phase.value)
        run.phase = new_phase

    async def _stage_artifact(self, request: PreviewRequest) -> Tree:
        assert request.source_dir is not None
        files = await self.branch_store.stage_artifact(Path(request.source_dir))
        validate_artifact_paths(files)
        return files

    async def _check_availability(self, url: str) -> Availability:
        if not self.settings.wait_for_deployment:
            return Availability.SKIPPED
        if self.settings.dry_run:
            logger.info("[dry-run] skipping availability check for %s", url)
            return Availability.SKIPPED
        try:
            await self.poller.wait_until_available(
                url,
                timeout=self.settings.max_wait_seconds,
                interval=self.settings.poll_interval_seconds,
            )
        except AvailabilityTimeout as exc:
            logger.warning("Availability unverified: %s", exc)
            return Availability.UNVERIFIED
        except Exception:  # pylint: disable=broad-except
            logger.exception("Availability check for %s errored; reporting it as unverified", url)
            return Availability.UNVERIFIED
        return Availability.VERIFIED

    async def _post_comment(
        self,
        run: _Run,
        phase: CommentPhase,
        *,
        preview_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        target = preview_id or (run.request.preview_id if run.request else None)
        if target is None or not self.comments.enabled:
            return
        body = render_body(
            phase,
            marker=self.settings.comment_marker,
            preview_id=target,
            preview_url=run.request.preview_url if run.request else None,
            revision=run.report.revision if run.report else None,
            availability=run.availability,
            has_changes=run.report.changed if run.report else None,
            error=error,
            timezone_name=self.settings.display_timezone,
        )
        try:
            run.comment = await self.comments.reconcile(target, phase, body)
        except CommentApiError as exc:
            logger.warning("Status comment for #%s not updated (%s): %s", target, phase.value, exc)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error updating status comment for #%s: %s", target, exc)

    async def _fail(
        self, run: _Run, preview_id: Optional[int], exc: Exception
    ) -> PreviewResult:
        self._advance(run, RunPhase.COMMENT_FINAL)
        await self._post_comment(run, CommentPhase.FAILED, preview_id=preview_id, error=str(exc))
        result = self._finish(run, RunOutcome.FAILURE)
        result.preview_id = result.preview_id or preview_id
        result.error = str(exc)
        result.error_type = type(exc).__name__
        return result

    def _finish(self, run: _Run, outcome: RunOutcome) -> PreviewResult:
        self._advance(run, RunPhase.DONE)
        request, report = run.request, run.report
        result = PreviewResult(
            mode=run.mode,
            outcome=outcome,
            phase=run.phase,
            preview_id=request.preview_id if request else None,
            preview_url=request.preview_url if request else None,
            has_changes=bool(report and report.changed),
            availability=run.availability,
            revision=report.revision if report else None,
            attempts=report.attempt_count if report else 0,
            comment=run.comment,
            started_at=run.started_at,
            completed_at=utc_now(),
        )
        logger.info(
            "Preview %s finished id=%s outcome=%s changed=%s availability=%s",
            run.mode.value,
            result.preview_id,
            outcome.value,
            result.has_changes,
            result.availability.value,
        )
        return result


def build_preview_service(settings: Settings) -> PreviewService:
    """Wire the git and GitHub collaborators from *settings*."""
    remote_url = settings.resolved_remote_url
    if not remote_url:
        raise ValidationError(
            "publishing remote is unknown; set PREVIEW_REMOTE_URL or GITHUB_REPOSITORY"
        )
    branch_store = GitBranchRepository(
        remote_url,
        settings.workdir,
        committer_name=settings.committer_name,
        committer_email=settings.committer_email,
        dry_run=settings.dry_run,
    )

    comment_store: Optional[CommentStore] = None
    if settings.comment_enabled:
        if settings.repository and settings.token:
            comment_store = GitHubCommentRepository(
                settings.repository, settings.token, api_url=settings.api_url
            )
        else:
            logger.warning(
                "Status comments requested but GITHUB_REPOSITORY/GITHUB_TOKEN are missing; "
                "comments are disabled for this run."
            )
    return PreviewService(settings, branch_store, comment_store)
