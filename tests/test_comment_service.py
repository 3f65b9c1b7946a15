from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from preview_deploy.domain import Availability, CommentAction, CommentPhase
from preview_deploy.models import IssueComment
from preview_deploy.repositories import InMemoryCommentStore
from preview_deploy.services import comment_service
from preview_deploy.services.comment_service import (
    CommentReconciler,
    marker_tag,
    render_body,
    select_status_comment,
)

MARKER = "pr-preview"


class RenderBodyTest(unittest.TestCase):
    def test_deployed_body_distinguishes_reachability(self) -> None:
        stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        verified = render_body(
            CommentPhase.DEPLOYED,
            marker=MARKER,
            preview_id=4,
            preview_url="https://example.test/pr/4/",
            revision="a" * 40,
            availability=Availability.VERIFIED,
            timestamp=stamp,
        )
        unverified = render_body(
            CommentPhase.DEPLOYED,
            marker=MARKER,
            preview_id=4,
            preview_url="https://example.test/pr/4/",
            availability=Availability.UNVERIFIED,
            timestamp=stamp,
        )

        self.assertTrue(verified.startswith(marker_tag(MARKER)))
        self.assertIn("https://example.test/pr/4/", verified)
        self.assertIn("Confirmed reachable", verified)
        self.assertIn("`aaaaaaaaaaaa`", verified)
        self.assertIn("2024-05-01 12:00 UTC", verified)
        self.assertIn("did not respond", unverified)

    def test_failed_body_includes_error_and_no_change_note(self) -> None:
        body = render_body(
            CommentPhase.FAILED, marker=MARKER, preview_id=2, error="branch kept moving"
        )
        self.assertIn("No changes were made", body)
        self.assertIn("branch kept moving", body)

    def test_timestamp_uses_display_timezone(self) -> None:
        stamp = datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc)
        body = render_body(
            CommentPhase.REMOVED,
            marker=MARKER,
            preview_id=2,
            timestamp=stamp,
            timezone_name="Asia/Seoul",
        )
        self.assertIn("2024-01-01 09:30 KST", body)


class SelectStatusCommentTest(unittest.TestCase):
    def test_picks_most_recent_marker_comment_by_author(self) -> None:
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        comments = [
            IssueComment(comment_id=1, author="bot", body=f"{marker_tag(MARKER)} old", created_at=base),
            IssueComment(comment_id=2, author="human", body="looks good", created_at=base + timedelta(minutes=1)),
            IssueComment(
                comment_id=3,
                author="bot",
                body=f"{marker_tag(MARKER)} new",
                created_at=base + timedelta(minutes=2),
            ),
            IssueComment(
                comment_id=4,
                author="human",
                body=f"quoting {marker_tag(MARKER)}",
                created_at=base + timedelta(minutes=3),
            ),
        ]
        match = select_status_comment(comments, MARKER, "bot")
        self.assertIsNotNone(match)
        assert match is not None
        self.assertEqual(match.comment_id, 3)

        self.assertEqual(select_status_comment(comments, MARKER, None).comment_id, 4)
        self.assertIsNone(select_status_comment(comments, "other-marker", "bot"))


class CommentReconcilerTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:  # noqa: N802
        self.store = InMemoryCommentStore(author="bot")
        self.reconciler = CommentReconciler(self.store, marker=MARKER, author="bot")

    async def test_creates_then_updates_in_place(self) -> None:
        first = await self.reconciler.reconcile(7, CommentPhase.IN_PROGRESS, f"{marker_tag(MARKER)}\nstarting")
        second = await self.reconciler.reconcile(7, CommentPhase.DEPLOYED, f"{marker_tag(MARKER)}\ndone")

        assert first is not None and second is not None
        self.assertEqual(first.action, CommentAction.CREATED)
        self.assertEqual(second.action, CommentAction.UPDATED)
        self.assertEqual(first.comment_id, second.comment_id)
        self.assertEqual(len(self.store.comments[7]), 1)
        self.assertIn("done", self.store.comments[7][0].body)

    async def test_identical_body_is_left_alone(self) -> None:
        body = f"{marker_tag(MARKER)}\nsame"
        await self.reconciler.reconcile(7, CommentPhase.DEPLOYED, body)
        result = await self.reconciler.reconcile(7, CommentPhase.DEPLOYED, body)

        assert result is not None
        self.assertEqual(result.action, CommentAction.UNCHANGED)
        self.assertEqual(self.store.update_calls, 0)

    async def test_marker_is_added_when_missing(self) -> None:
        result = await self.reconciler.reconcile(3, CommentPhase.REMOVED, "gone")
        assert result is not None
        self.assertTrue(result.body.startswith(marker_tag(MARKER)))

    async def test_updates_latest_of_preexisting_duplicates(self) -> None:
        self.store.add(5, f"{marker_tag(MARKER)} first")
        latest = self.store.add(5, f"{marker_tag(MARKER)} second")

        result = await self.reconciler.reconcile(5, CommentPhase.DEPLOYED, f"{marker_tag(MARKER)} third")

        assert result is not None
        self.assertEqual(result.comment_id, latest.comment_id)
        self.assertEqual(self.store.create_calls, 0)
        self.assertEqual(len(self.store.comments[5]), 2)

    async def test_ignores_marker_comments_from_other_authors(self) -> None:
        self.store.add(5, f"{marker_tag(MARKER)} pasted by a human", author="someone")
        result = await self.reconciler.reconcile(5, CommentPhase.IN_PROGRESS, f"{marker_tag(MARKER)} mine")

        assert result is not None
        self.assertEqual(result.action, CommentAction.CREATED)

    async def test_duplicate_warning_counts_only_own_comments(self) -> None:
        self.store.add(5, f"{marker_tag(MARKER)} mine")
        self.store.add(5, f"{marker_tag(MARKER)} quoted by a reviewer", author="someone")

        with mock.patch.object(comment_service.logger, "warning") as warning:
            await self.reconciler.find_existing(5)
        warning.assert_not_called()

        self.store.add(5, f"{marker_tag(MARKER)} mine again")
        with mock.patch.object(comment_service.logger, "warning") as warning:
            await self.reconciler.find_existing(5)
        warning.assert_called_once()
        self.assertEqual(warning.call_args.args[1], 2)

    async def test_token_user_comment_is_found_again(self) -> None:
        store = InMemoryCommentStore(author="octocat")
        reconciler = CommentReconciler(store, marker=MARKER, author="github-actions[bot]")

        first = await reconciler.reconcile(8, CommentPhase.IN_PROGRESS, "starting")
        second = await reconciler.reconcile(8, CommentPhase.DEPLOYED, "done")

        assert first is not None and second is not None
        self.assertEqual(second.action, CommentAction.UPDATED)
        self.assertEqual(second.comment_id, first.comment_id)
        self.assertEqual(store.create_calls, 1)
        self.assertEqual(len(store.comments[8]), 1)

    async def test_disabled_reconciler_is_a_noop(self) -> None:
        reconciler = CommentReconciler(self.store, marker=MARKER, enabled=False)
        self.assertIsNone(await reconciler.reconcile(1, CommentPhase.DEPLOYED, "x"))
        self.assertEqual(self.store.comments, {})

    async def test_missing_store_disables_reconciler(self) -> None:
        reconciler = CommentReconciler(None, marker=MARKER)
        self.assertFalse(reconciler.enabled)
        self.assertIsNone(await reconciler.reconcile(1, CommentPhase.DEPLOYED, "x"))


if __name__ == "__main__":
    unittest.main()
