from __future__ import annotations

import asyncio
import unittest
from typing import Optional

from preview_deploy.domain import PushOutcome
from preview_deploy.errors import PushConflictExhausted, StaleSnapshotError
from preview_deploy.models import PutSubtree, RemoveSubtree, Tree
from preview_deploy.repositories import InMemoryBranchStore
from preview_deploy.services.push_coordinator import MAX_PUSH_ATTEMPTS, PushCoordinator

BRANCH = "gh-pages"


class AlwaysConflictingStore(InMemoryBranchStore):
    async def compare_and_swap(
        self,
        branch: str,
        expected_revision: Optional[str],
        tree: Tree,
        message: str,
    ) -> str:
        self.cas_attempts += 1
        raise StaleSnapshotError(branch, expected_revision, "someone-else")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class PushCoordinatorTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:  # noqa: N802
        self.store = InMemoryBranchStore()
        self.sleep = RecordingSleep()
        self.coordinator = PushCoordinator(
            self.store,
            prefix="pr",
            backoff_base=1.0,
            backoff_max=4.0,
            sleep=self.sleep,
            jitter=lambda: 0.5,
        )

    async def test_bootstrap_creates_missing_branch(self) -> None:
        files = self.store.stage_bytes({"index.html": b"<h1>one</h1>"})
        report = await self.coordinator.publish(
            BRANCH, PutSubtree(preview_id=1, files=files), "Deploy preview for #1"
        )

        self.assertTrue(report.changed)
        self.assertTrue(self.store.has_branch(BRANCH))
        self.assertEqual(report.revision, self.store.revision(BRANCH))
        self.assertEqual(self.store.files(BRANCH), {"pr/1/index.html": b"<h1>one</h1>"})
        self.assertEqual([attempt.outcome for attempt in report.attempts], [PushOutcome.PUSHED])
        self.assertIsNone(report.attempts[0].base_revision)

    async def test_unchanged_tree_skips_the_write(self) -> None:
        self.store.seed(BRANCH, {"pr/3/index.html": b"same"})
        files = self.store.stage_bytes({"index.html": b"same"})

        report = await self.coordinator.publish(
            BRANCH, PutSubtree(preview_id=3, files=files), "Deploy preview for #3"
        )

        self.assertFalse(report.changed)
        self.assertEqual(self.store.write_count, 0)
        self.assertEqual(self.store.cas_attempts, 0)

    async def test_conflict_refetches_and_recomputes(self) -> None:
        self.store.seed(BRANCH, {"pr/1/index.html": b"one"})
        files = self.store.stage_bytes({"index.html": b"two"})
        raced = []

        def intrude(branch: str) -> None:
            if raced:
                return
            raced.append(branch)
            # another writer lands between our fetch and our swap
            current = self.store.files(branch)
            self.store.seed(branch, {**current, "pr/9/index.html": b"nine"})

        self.store.before_swap = intrude
        report = await self.coordinator.publish(
            BRANCH, PutSubtree(preview_id=2, files=files), "Deploy preview for #2"
        )

        self.assertEqual(
            [attempt.outcome for attempt in report.attempts],
            [PushOutcome.CONFLICT, PushOutcome.PUSHED],
        )
        self.assertEqual(self.store.fetch_count, 2)
        self.assertEqual(self.sleep.delays, [1.5])
        self.assertEqual(
            self.store.files(BRANCH),
            {
                "pr/1/index.html": b"one",
                "pr/2/index.html": b"two",
                "pr/9/index.html": b"nine",
            },
        )

    async def test_exhaustion_after_exactly_five_attempts(self) -> None:
        store = AlwaysConflictingStore()
        coordinator = PushCoordinator(
            store,
            prefix="pr",
            backoff_base=1.0,
            backoff_max=4.0,
            sleep=self.sleep,
            jitter=lambda: 0.5,
        )
        files = store.stage_bytes({"index.html": b"x"})

        with self.assertRaises(PushConflictExhausted) as ctx:
            await coordinator.publish(BRANCH, PutSubtree(preview_id=1, files=files), "msg")

        self.assertEqual(MAX_PUSH_ATTEMPTS, 5)
        self.assertEqual(ctx.exception.attempts, 5)
        self.assertEqual(store.cas_attempts, 5)
        self.assertEqual(store.fetch_count, 5)
        self.assertEqual(self.sleep.delays, [1.5, 2.5, 4.5, 4.5])
        self.assertEqual(self.sleep.delays, sorted(self.sleep.delays))

    async def test_backoff_never_shrinks_under_the_cap(self) -> None:
        jitters = iter([0.9, 0.0])
        coordinator = PushCoordinator(
            self.store,
            prefix="pr",
            backoff_base=1.0,
            backoff_max=4.0,
            jitter=lambda: next(jitters),
        )
        first = coordinator.backoff_delay(3)
        second = coordinator.backoff_delay(4, previous=first)
        self.assertAlmostEqual(first, 4.9)
        self.assertAlmostEqual(second, 4.9)

    async def test_concurrent_writers_converge(self) -> None:
        self.store.seed(BRANCH, {"index.html": b"root", "pr/9/index.html": b"nine"})
        edits = [
            PutSubtree(preview_id=pid, files=self.store.stage_bytes({"index.html": f"pr {pid}".encode()}))
            for pid in (1, 2, 3, 4)
        ]
        edits.append(RemoveSubtree(preview_id=9))

        reports = await asyncio.gather(
            *(self.coordinator.publish(BRANCH, edit, f"edit {index}") for index, edit in enumerate(edits))
        )

        for report in reports:
            self.assertTrue(report.changed)
            self.assertLessEqual(report.conflicts, MAX_PUSH_ATTEMPTS - 1)
        self.assertEqual(self.store.write_count, len(edits))
        self.assertEqual(
            self.store.files(BRANCH),
            {
                "index.html": b"root",
                "pr/1/index.html": b"pr 1",
                "pr/2/index.html": b"pr 2",
                "pr/3/index.html": b"pr 3",
                "pr/4/index.html": b"pr 4",
            },
        )

    async def test_cleanup_of_absent_preview_performs_no_writes(self) -> None:
        for preview_id in range(1, 25):
            report = await self.coordinator.publish(
                BRANCH, RemoveSubtree(preview_id=preview_id), "cleanup"
            )
            self.assertFalse(report.changed)
        self.assertEqual(self.store.write_count, 0)
        self.assertFalse(self.store.has_branch(BRANCH))


if __name__ == "__main__":
    unittest.main()
