from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, Iterable, List, Optional, Set, Union
from zoneinfo import ZoneInfo

from preview_deploy.domain import Availability, CommentAction, CommentPhase
from preview_deploy.models import IssueComment, StatusComment, utc_now
from preview_deploy.repositories import CommentStore


logger = logging.getLogger("preview-deploy.comment")

HEADLINES = {
    CommentPhase.IN_PROGRESS: ":hourglass_flowing_sand: Deploying preview…",
    CommentPhase.DEPLOYED: ":rocket: Preview deployed",
    CommentPhase.REMOVED: ":broom: Preview removed",
    CommentPhase.FAILED: ":x: Preview failed",
}

AVAILABILITY_NOTES = {
    Availability.VERIFIED: "Confirmed reachable.",
    Availability.UNVERIFIED: "Pushed, but the site did not respond before the wait limit; it may still be building.",
    Availability.SKIPPED: "Pushed; reachability was not checked.",
}


def marker_tag(marker: str) -> str:
    return f"<!-- {marker} -->"


def render_body(
    phase: CommentPhase,
    *,
    marker: str,
    preview_id: int,
    preview_url: Optional[str] = None,
    revision: Optional[str] = None,
    availability: Optional[Availability] = None,
    has_changes: Optional[bool] = None,
    error: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> str:
    """Markdown body of the status comment for *phase*."""
    moment = (timestamp or utc_now()).astimezone(ZoneInfo(timezone_name))
    lines = [marker_tag(marker), f"### {HEADLINES[phase]}", ""]

    if phase is CommentPhase.IN_PROGRESS:
        lines.append(f"Publishing the preview for #{preview_id}.")
    elif phase is CommentPhase.DEPLOYED:
        if preview_url:
            lines.append(f"**Preview:** {preview_url}")
        lines.append(AVAILABILITY_NOTES[availability or Availability.SKIPPED])
        if has_changes is False:
            lines.append("The published content was already up to date.")
    elif phase is CommentPhase.REMOVED:
        if has_changes is False:
            lines.append(f"No preview was published for #{preview_id}; nothing to remove.")
        else:
            lines.append(f"The preview for #{preview_id} has been taken down.")
    else:
        lines.append("No changes were made to the published previews.")
        if error:
            lines.extend(["", "```", error.strip(), "```"])

    lines.append("")
    details = []
    if revision:
        details.append(f"revision `{revision[:12]}`")
    details.append(f"updated {moment.strftime('%Y-%m-%d %H:%M %Z')}")
    lines.append(f"<sub>{' · '.join(details)}</sub>")
    return "\n".join(lines) + "\n"


def matching_comments(
    comments: Iterable[IssueComment],
    marker: str,
    author: Union[str, Collection[str], None],
) -> List[IssueComment]:
    """Comments carrying the marker, restricted to *author* (a login or a set of logins)."""
    tag = marker_tag(marker)
    authors = {author} if isinstance(author, str) else set(author or ())
    return [
        comment
        for comment in comments
        if tag in comment.body and (not authors or comment.author in authors)
    ]


def select_status_comment(
    comments: Iterable[IssueComment],
    marker: str,
    author: Union[str, Collection[str], None],
) -> Optional[IssueComment]:
    """Most recent comment carrying the marker, optionally restricted to *author*."""
    matches = matching_comments(comments, marker, author)
    if not matches:
        return None
    return max(matches, key=lambda comment: (comment.created_at, comment.comment_id))


class CommentReconciler:
    """Keeps at most one status comment per pull request.

    The remote comment list is the only source of truth: every write is
    preceded by a fresh search, so repeated runs update instead of appending.
    """

    def __init__(
        self,
        store: Optional[CommentStore],
        *,
        marker: str,
        author: Optional[str] = None,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.marker = marker
        self.author = author or None
        # configured author plus logins of comments created here
        self._authors: Set[str] = {self.author} if self.author else set()
        self.enabled = enabled and store is not None

    async def find_existing(self, pull_request: int) -> Optional[IssueComment]:
        assert self.store is not None
        comments = await self.store.list_comments(pull_request)
        matches = matching_comments(comments, self.marker, self._authors)
        match = select_status_comment(matches, self.marker, None)
        total = len(matches)
        if total > 1:
            logger.warning(
                "Found %d status comments on #%s; reconciling the most recent (%s).",
                total,
                pull_request,
                match.comment_id if match else None,
            )
        return match

    async def reconcile(
        self, pull_request: int, phase: CommentPhase, body: str
    ) -> Optional[StatusComment]:
        """Create, update, or leave the status comment. Raises CommentApiError."""
        if not self.enabled:
            logger.debug("Status comments disabled; skipping %s for #%s", phase.value, pull_request)
            return None
        if marker_tag(self.marker) not in body:
            body = f"{marker_tag(self.marker)}\n{body}"

        assert self.store is not None
        existing = await self.find_existing(pull_request)
        if existing is None:
            created = await self.store.create_comment(pull_request, body)
            if self._authors and created.author and created.author not in self._authors:
                logger.warning(
                    "Status comment on #%s was authored by %s, not %s; set PREVIEW_COMMENT_AUTHOR "
                    "to match the token so later runs find it.",
                    pull_request,
                    created.author,
                    self.author,
                )
                self._authors.add(created.author)
            logger.info("Created status comment %s on #%s (%s)", created.comment_id, pull_request, phase.value)
            return self._status(pull_request, phase, created, CommentAction.CREATED)

        if existing.body == body:
            logger.info("Status comment %s on #%s already current", existing.comment_id, pull_request)
            return self._status(pull_request, phase, existing, CommentAction.UNCHANGED)

        updated = await self.store.update_comment(existing.comment_id, body)
        logger.info("Updated status comment %s on #%s (%s)", updated.comment_id, pull_request, phase.value)
        return self._status(pull_request, phase, updated, CommentAction.UPDATED)

    def _status(
        self,
        pull_request: int,
        phase: CommentPhase,
        comment: IssueComment,
        action: CommentAction,
    ) -> StatusComment:
        return StatusComment(
            comment_id=comment.comment_id,
            pull_request=pull_request,
            marker=self.marker,
            phase=phase,
            body=comment.body,
            action=action,
            url=comment.url,
        )
