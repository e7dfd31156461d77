"""Tests for Task and settle_all: named async work and sibling-group settling."""

from __future__ import annotations

import asyncio

import pytest

from stackrun.errors import TaskAlreadyRunError, TaskGroupError
from stackrun.tasks import SettledGroup, Task, settle_all


# ── Helpers ──────────────────────────────────────────────────────────────


class Echo(Task[str]):
    def __init__(self, name: str, delay: float = 0.0) -> None:
        super().__init__(name)
        self.delay = delay
        self.finished = False

    async def _do(self) -> str:
        self.update("working")
        await asyncio.sleep(self.delay)
        self.finished = True
        return self.name.upper()


class Boom(Task[str]):
    async def _do(self) -> str:
        await asyncio.sleep(0)
        raise ValueError(f"boom: {self.name}")


# ── Task ─────────────────────────────────────────────────────────────────


class TestTask:
    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        assert await Echo("a").run() == "A"

    @pytest.mark.asyncio
    async def test_progress_is_delivered_with_task_name(self, progress):
        await Echo("a").run(progress)
        assert progress == [("a", "working")]

    @pytest.mark.asyncio
    async def test_progress_optional(self):
        task = Echo("a")
        await task.run()
        assert task.finished

    @pytest.mark.asyncio
    async def test_second_run_raises(self):
        task = Echo("a")
        await task.run()
        with pytest.raises(TaskAlreadyRunError, match="'a'"):
            await task.run()

    @pytest.mark.asyncio
    async def test_failure_propagates(self):
        with pytest.raises(ValueError, match="boom: x"):
            await Boom("x").run()

    @pytest.mark.asyncio
    async def test_failed_task_cannot_rerun(self):
        task = Boom("x")
        with pytest.raises(ValueError):
            await task.run()
        with pytest.raises(TaskAlreadyRunError):
            await task.run()

    @pytest.mark.asyncio
    async def test_base_do_not_implemented(self):
        with pytest.raises(NotImplementedError):
            await Task("plain").run()


# ── settle_all ───────────────────────────────────────────────────────────


class TestSettleAll:
    @pytest.mark.asyncio
    async def test_all_succeed_in_input_order(self):
        group = await settle_all([Echo("b", 0.02), Echo("a"), Echo("c", 0.01)])
        assert list(group.results) == ["b", "a", "c"]
        assert group.results["b"] == "B"
        assert group.ok
        assert group.total == 3

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        slow = Echo("slow", delay=0.05)
        group = await settle_all([Boom("fast"), slow])
        assert slow.finished
        assert group.results == {"slow": "SLOW"}
        assert list(group.errors) == ["fast"]
        assert isinstance(group.errors["fast"], ValueError)

    @pytest.mark.asyncio
    async def test_every_error_collected(self):
        group = await settle_all([Boom("x"), Echo("ok"), Boom("y")])
        assert list(group.errors) == ["x", "y"]
        assert not group.ok

    @pytest.mark.asyncio
    async def test_raise_for_errors_enumerates_all(self):
        group = await settle_all([Boom("x"), Echo("ok"), Boom("y")])
        with pytest.raises(TaskGroupError) as exc_info:
            group.raise_for_errors("builds")
        error = exc_info.value
        assert set(error.errors) == {"x", "y"}
        assert "2 of 3 builds failed (x, y)" in str(error)

    @pytest.mark.asyncio
    async def test_raise_for_errors_noop_when_ok(self):
        group = await settle_all([Echo("a")])
        group.raise_for_errors("builds")

    @pytest.mark.asyncio
    async def test_empty_group(self):
        group = await settle_all([])
        assert group.total == 0
        assert group.ok

    @pytest.mark.asyncio
    async def test_progress_shared_by_members(self, progress):
        await settle_all([Echo("a"), Echo("b")], progress)
        assert sorted(progress) == [("a", "working"), ("b", "working")]

    @pytest.mark.asyncio
    async def test_members_run_concurrently(self):
        started = asyncio.get_running_loop().time()
        await settle_all([Echo(str(i), delay=0.05) for i in range(5)])
        assert asyncio.get_running_loop().time() - started < 0.2


# ── SettledGroup ─────────────────────────────────────────────────────────


class TestSettledGroup:
    def test_duration_none_when_incomplete(self):
        assert SettledGroup().duration_seconds is None

    @pytest.mark.asyncio
    async def test_to_dict(self):
        group = await settle_all([Boom("x"), Echo("ok")])
        data = group.to_dict()
        assert data["total"] == 2
        assert data["succeeded"] == 1
        assert data["failed"] == 1
        assert data["errors"] == {"x": "boom: x"}
        assert data["duration_seconds"] >= 0
