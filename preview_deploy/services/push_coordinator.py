from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional

from preview_deploy.domain import PushOutcome
from preview_deploy.errors import PushConflictExhausted, StaleSnapshotError
from preview_deploy.models import PushAttempt, PushReport, TreeEdit
from preview_deploy.repositories import BranchStore
from preview_deploy.services.subtree_editor import apply_edit


logger = logging.getLogger("preview-deploy.push")

MAX_PUSH_ATTEMPTS = 5

Sleeper = Callable[[float], Awaitable[None]]


class PushCoordinator:
    """Advances the shared branch with compare-and-swap pushes and bounded retries.

    Each attempt fetches a fresh snapshot and recomputes the desired tree from
    it, so a lost race never leaks state into the next attempt.
    """

    def __init__(
        self,
        store: BranchStore,
        *,
        prefix: str,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        max_attempts: int = MAX_PUSH_ATTEMPTS,
        sleep: Sleeper = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.prefix = prefix
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._jitter = jitter

    def backoff_delay(self, attempt: int, previous: float = 0.0) -> float:
        """Delay after the *attempt*-th conflict: doubling, capped, jittered, never shrinking."""
        base_delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        delay = base_delay + self._jitter() * self.backoff_base
        return max(previous, delay)

    async def publish(self, branch: str, edit: TreeEdit, message: str) -> PushReport:
        attempts: List[PushAttempt] = []
        previous_delay = 0.0

        for attempt in range(1, self.max_attempts + 1):
            snapshot = await self.store.fetch_snapshot(branch)
            result = apply_edit(snapshot, edit, self.prefix)

            if not result.changed:
                logger.info(
                    "Branch %s already matches the desired tree (attempt %d); nothing to push.",
                    branch,
                    attempt,
                )
                attempts.append(
                    PushAttempt(
                        attempt=attempt,
                        base_revision=snapshot.revision,
                        outcome=PushOutcome.UNCHANGED,
                        revision=snapshot.revision,
                    )
                )
                return PushReport(
                    branch=branch,
                    changed=False,
                    revision=snapshot.revision,
                    attempts=attempts,
                )

            try:
                revision = await self.store.compare_and_swap(
                    branch, snapshot.revision, result.tree, message
                )
            except StaleSnapshotError as exc:
                delay: Optional[float] = None
                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt, previous_delay)
                    previous_delay = delay
                attempts.append(
                    PushAttempt(
                        attempt=attempt,
                        base_revision=snapshot.revision,
                        outcome=PushOutcome.CONFLICT,
                        delay_seconds=delay or 0.0,
                    )
                )
                logger.warning(
                    "Push conflict on %s (attempt %d/%d): %s",
                    branch,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if delay is None:
                    break
                await self._sleep(delay)
                continue

            attempts.append(
                PushAttempt(
                    attempt=attempt,
                    base_revision=snapshot.revision,
                    outcome=PushOutcome.PUSHED,
                    revision=revision,
                )
            )
            logger.info(
                "Advanced %s from %s to %s on attempt %d",
                branch,
                (snapshot.revision or "<absent>")[:12],
                revision[:12],
                attempt,
            )
            return PushReport(branch=branch, changed=True, revision=revision, attempts=attempts)

        raise PushConflictExhausted(branch, len(attempts))
