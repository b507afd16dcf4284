"""Optimistic local mutations with rollback and per-target serialization."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from threadrank.core.exceptions import DuplicateMutationRejected, PersistenceFailure
from threadrank.core.types import MutationResult, PendingMutation

logger = logging.getLogger("threadrank")

MIN_COOLDOWN_MS = 200

FailureHandler = Callable[[str, str, PersistenceFailure], None]


class OptimisticMutationCoordinator:
    """Applies a change locally, confirms it remotely, rolls back on failure.

    One mutation per target id at a time. After it resolves, the target
    stays locked for the cooldown window, whatever the outcome.

    Usage:
        coordinator = OptimisticMutationCoordinator(cooldown_ms=500)

        result = await coordinator.run(
            "post-1", "save",
            capture=lambda: post.saved,
            apply=lambda: setattr(post, "saved", True),
            restore=lambda prior: setattr(post, "saved", prior),
            persist=lambda: store.set_saved(user_id, "post-1", True),
        )
        # result.status: "applied" | "rolled_back" | "rejected"
    """

    def __init__(self, cooldown_ms: int = 500,
                 clock: Callable[[], float] = time.monotonic,
                 on_failure: Optional[FailureHandler] = None):
        if cooldown_ms < MIN_COOLDOWN_MS:
            raise ValueError(f"cooldown_ms must be at least {MIN_COOLDOWN_MS}, got {cooldown_ms}")
        self._cooldown = cooldown_ms / 1000
        self._clock = clock
        self._on_failure = on_failure
        self._pending: dict[str, PendingMutation] = {}
        self._cooldown_until: dict[str, float] = {}

    @property
    def cooldown_ms(self) -> int:
        return int(self._cooldown * 1000)

    def pending(self, target_id: str) -> Optional[PendingMutation]:
        """The in-flight mutation for target_id, if any."""
        return self._pending.get(target_id)

    def has_pending(self, target_id: str) -> bool:
        return target_id in self._pending

    def is_locked(self, target_id: str) -> bool:
        """True while a mutation is in flight or cooling down."""
        if target_id in self._pending:
            return True
        until = self._cooldown_until.get(target_id)
        if until is None:
            return False
        if self._clock() >= until:
            del self._cooldown_until[target_id]
            return False
        return True

    def _begin(self, target_id: str, kind: str, capture: Callable[[], Any]) -> PendingMutation:
        if self.is_locked(target_id):
            raise DuplicateMutationRejected(target_id)
        mutation = PendingMutation(
            target_id=target_id,
            kind=kind,
            prior_state=capture(),
            applied_at=self._clock(),
        )
        self._pending[target_id] = mutation
        return mutation

    def _finish(self, target_id: str) -> None:
        self._pending.pop(target_id, None)
        self._cooldown_until[target_id] = self._clock() + self._cooldown

    async def run(
        self,
        target_id: str,
        kind: str,
        capture: Callable[[], Any],
        apply: Callable[[], None],
        restore: Callable[[Any], None],
        persist: Callable[[], Awaitable[Any]],
        on_confirmed: Optional[Callable[[], None]] = None,
    ) -> MutationResult:
        """Run one optimistic mutation.

        Args:
            target_id: Serialization key (post or comment id)
            kind: Mutation kind, used for notices ("vote", "save", "hide")
            capture: Returns the prior state to restore on failure
            apply: Applies the new local state synchronously
            restore: Puts the captured prior state back
            persist: Issues the remote call. A result of False counts as failure.
            on_confirmed: Called once the remote call succeeded

        Returns:
            MutationResult. Rejected duplicates and store failures are
            reported here, not raised.
        """
        try:
            mutation = self._begin(target_id, kind, capture)
        except DuplicateMutationRejected as e:
            logger.debug(f"{kind} on {target_id} dropped: {e.message}")
            return MutationResult(target_id=target_id, status="rejected")

        try:
            apply()
            confirmed = await persist()
            if confirmed is False:
                raise PersistenceFailure(f"Store refused {kind} on {target_id}")
        except PersistenceFailure as e:
            restore(mutation.prior_state)
            logger.warning(f"{kind} on {target_id} rolled back: {e.message}")
            if self._on_failure is not None:
                self._on_failure(kind, target_id, e)
            return MutationResult(target_id=target_id, status="rolled_back", error=e.message)
        except (Exception, asyncio.CancelledError):
            restore(mutation.prior_state)
            logger.error(f"{kind} on {target_id} aborted; local state restored")
            raise
        finally:
            self._finish(target_id)

        if on_confirmed is not None:
            on_confirmed()
        logger.debug(f"{kind} on {target_id} confirmed")
        return MutationResult(target_id=target_id, status="applied")
