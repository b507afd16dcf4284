"""Tests for OptimisticMutationCoordinator."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from threadrank.core.exceptions import StoreUnavailableError
from threadrank.engine.mutation_coordinator import OptimisticMutationCoordinator


class Box:
    def __init__(self, value):
        self.value = value


def run_kwargs(box, new_value, persist):
    return dict(
        capture=lambda: box.value,
        apply=lambda: setattr(box, "value", new_value),
        restore=lambda prior: setattr(box, "value", prior),
        persist=persist,
    )


class TestInit:
    def test_cooldown_below_minimum_rejected(self):
        with pytest.raises(ValueError):
            OptimisticMutationCoordinator(cooldown_ms=100)

    def test_minimum_cooldown_accepted(self):
        assert OptimisticMutationCoordinator(cooldown_ms=200).cooldown_ms == 200


class TestRun:
    @pytest.mark.asyncio
    async def test_success_applies_and_confirms(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        box = Box(False)
        confirmed = MagicMock()

        result = await coordinator.run(
            "p1", "save", on_confirmed=confirmed,
            **run_kwargs(box, True, AsyncMock(return_value=None)),
        )

        assert result.ok
        assert box.value is True
        confirmed.assert_called_once()
        assert not coordinator.has_pending("p1")

    @pytest.mark.asyncio
    async def test_failure_restores_prior_state(self, clock):
        on_failure = MagicMock()
        coordinator = OptimisticMutationCoordinator(clock=clock, on_failure=on_failure)
        box = Box(False)
        confirmed = MagicMock()
        persist = AsyncMock(side_effect=StoreUnavailableError("down"))

        result = await coordinator.run("p1", "save", on_confirmed=confirmed,
                                       **run_kwargs(box, True, persist))

        assert result.status == "rolled_back"
        assert result.error == "down"
        assert box.value is False
        confirmed.assert_not_called()
        kind, target_id, error = on_failure.call_args.args
        assert (kind, target_id) == ("save", "p1")
        assert isinstance(error, StoreUnavailableError)

    @pytest.mark.asyncio
    async def test_false_result_counts_as_failure(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        box = Box(0)

        result = await coordinator.run("p1", "vote", **run_kwargs(box, 1, AsyncMock(return_value=False)))

        assert result.status == "rolled_back"
        assert box.value == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_restores_and_propagates(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        box = Box(0)

        with pytest.raises(RuntimeError):
            await coordinator.run("p1", "vote", **run_kwargs(box, 1, AsyncMock(side_effect=RuntimeError("bug"))))

        assert box.value == 0
        assert not coordinator.has_pending("p1")

    @pytest.mark.asyncio
    async def test_state_visible_while_pending(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        box = Box(0)
        seen = {}

        async def persist():
            seen["value"] = box.value
            seen["pending"] = coordinator.pending("p1")
            return True

        await coordinator.run("p1", "vote", **run_kwargs(box, 1, persist))

        assert seen["value"] == 1
        assert seen["pending"].prior_state == 0
        assert seen["pending"].kind == "vote"


class TestSerialization:
    @pytest.mark.asyncio
    async def test_second_action_rejected_while_in_flight(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        box = Box(0)
        gate = asyncio.Event()
        second_persist = AsyncMock(return_value=True)

        async def slow_persist():
            await gate.wait()
            return True

        first = asyncio.create_task(coordinator.run("p1", "vote", **run_kwargs(box, 1, slow_persist)))
        await asyncio.sleep(0)
        second = await coordinator.run("p1", "vote", **run_kwargs(box, -1, second_persist))
        gate.set()
        first_result = await first

        assert second.status == "rejected"
        second_persist.assert_not_called()
        assert first_result.ok
        assert box.value == 1

    @pytest.mark.asyncio
    async def test_rejected_during_cooldown_then_allowed(self, clock):
        coordinator = OptimisticMutationCoordinator(cooldown_ms=500, clock=clock)
        box = Box(0)

        await coordinator.run("p1", "vote", **run_kwargs(box, 1, AsyncMock(return_value=True)))

        clock.advance(0.3)
        result = await coordinator.run("p1", "vote", **run_kwargs(box, -1, AsyncMock(return_value=True)))
        assert result.status == "rejected"
        assert box.value == 1

        clock.advance(0.25)
        result = await coordinator.run("p1", "vote", **run_kwargs(box, -1, AsyncMock(return_value=True)))
        assert result.ok
        assert box.value == -1

    @pytest.mark.asyncio
    async def test_cooldown_applies_after_failure(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        box = Box(0)

        await coordinator.run("p1", "vote", **run_kwargs(box, 1, AsyncMock(side_effect=StoreUnavailableError())))

        assert coordinator.is_locked("p1")
        clock.advance(1)
        assert not coordinator.is_locked("p1")

    @pytest.mark.asyncio
    async def test_targets_are_independent(self, clock):
        coordinator = OptimisticMutationCoordinator(clock=clock)
        a, b = Box(0), Box(0)

        first = await coordinator.run("p1", "vote", **run_kwargs(a, 1, AsyncMock(return_value=True)))
        second = await coordinator.run("p2", "vote", **run_kwargs(b, 1, AsyncMock(return_value=True)))

        assert first.ok and second.ok
