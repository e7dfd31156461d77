"""Tests for Session: build/run cycles, refresh, teardown and the key loop."""

from __future__ import annotations

import asyncio
import re

import pytest
import yaml

from stackrun.errors import DaemonError, TaskGroupError, TeardownError
from stackrun.models import Stack
from stackrun.session import Session, SessionState, new_run_id
from tests._support.helpers import keys, other_tasks


@pytest.fixture
def session(stack, runtime, templates, settings, progress):
    return Session(stack, runtime=runtime, templates=templates, settings=settings, progress=progress)


def handles(context):
    return {name: handle.id for name, handle in context.containers.items()}


# ── Start ────────────────────────────────────────────────────────────────


class TestStart:
    @pytest.mark.asyncio
    async def test_runs_every_function(self, session, runtime, settings):
        result = await session.start()

        assert result.ok
        assert session.state == SessionState.WAITING_FOR_INPUT
        context = result.context
        assert context is session.context
        assert set(context.ports) == {"a", "b", "c"}
        assert all(settings.min_port <= port <= settings.max_port for port in context.ports.values())
        assert len(set(context.ports.values())) == 3
        assert sorted(runtime.running) == sorted(f"{name}-{result.run_id}" for name in "abc")
        assert context.network.name == "demo-net"
        assert context.volume.name == "demo-vol"

        await session.quit()

    @pytest.mark.asyncio
    async def test_ports_allocated_in_name_order(self, session):
        result = await session.start()
        ports = result.context.ports
        assert sorted(ports, key=ports.get) == ["a", "b", "c"]
        await session.quit()

    @pytest.mark.asyncio
    async def test_subscriptions_injected(self, session, runtime):
        await session.start()
        spec = next(spec for spec in runtime.started if spec.name.startswith("a-"))
        env = spec.environment
        assert env["LOCAL_SUBSCRIPTIONS"] == '{"orders": ["http://a:9001"], "audit": []}'
        await session.quit()

    def test_run_id_format(self):
        assert re.fullmatch(r"[0-9a-f]{8}", new_run_id())


# ── Refresh ──────────────────────────────────────────────────────────────


class TestRefresh:
    @pytest.mark.asyncio
    async def test_two_refreshes_replace_every_container(self, session, runtime):
        first = await session.start()
        first_handles = handles(first.context)
        first_ports = dict(first.context.ports)

        second = await session.refresh()
        third = await session.refresh()

        assert second.ok and third.ok
        assert len({first.run_id, second.run_id, third.run_id}) == 3
        for later in (second, third):
            assert set(later.context.ports) == set(first_ports)
            assert set(handles(later.context).values()).isdisjoint(first_handles.values())
        assert set(handles(second.context).values()).isdisjoint(handles(third.context).values())

        await session.quit()

    @pytest.mark.asyncio
    async def test_previous_ports_preferred(self, session):
        first = await session.start()
        ports = dict(first.context.ports)
        second = await session.refresh()
        assert second.context.ports == ports
        await session.quit()

    @pytest.mark.asyncio
    async def test_previous_cycle_torn_down(self, session, runtime):
        first = await session.start()
        old_names = {handle.name for handle in first.context.containers.values()}

        await session.refresh()

        assert old_names <= set(runtime.removed)
        assert runtime.removed.count("demo-net") == 1
        assert runtime.removed.count("demo-vol") == 1
        assert len(runtime.running) == 3
        await session.quit()

    @pytest.mark.asyncio
    async def test_images_are_rebuilt(self, session, runtime):
        await session.start()
        await session.refresh()
        assert len(runtime.builds) == 6
        await session.quit()


# ── Failures ─────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_build_failure_stops_cycle(self, session, runtime):
        runtime.fail_builds["demo-b-local"] = "COPY failed"

        result = await session.start()

        assert isinstance(result.error, TaskGroupError)
        assert list(result.failures) == ["b"]
        assert "1 of 3 builds failed (b)" in result.error.message
        assert result.context is None
        assert runtime.started == []
        assert runtime.networks == {}
        assert session.state == SessionState.WAITING_FOR_INPUT

    @pytest.mark.asyncio
    async def test_refresh_after_build_failure(self, session, runtime):
        runtime.fail_builds["demo-b-local"] = "COPY failed"
        await session.start()
        runtime.fail_builds.clear()

        result = await session.refresh()

        assert result.ok
        assert len(runtime.running) == 3
        await session.quit()

    @pytest.mark.asyncio
    async def test_run_failure_leaves_partial_cluster(self, session, runtime, monkeypatch):
        start = runtime.start_container

        async def refuse_c(spec):
            if spec.name.startswith("c-"):
                raise DaemonError("port is already allocated")
            return await start(spec)

        monkeypatch.setattr(runtime, "start_container", refuse_c)

        result = await session.start()

        assert isinstance(result.error, TaskGroupError)
        assert set(result.context.ports) == {"a", "b"}
        assert list(result.context.failures) == ["c"]
        assert list(result.failures) == ["c"]
        assert len(runtime.running) == 2

        await session.quit()
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_start_timeout_reported(self, session, runtime, monkeypatch):
        async def never(spec):
            await asyncio.Event().wait()

        monkeypatch.setattr(runtime, "start_container", never)
        result = await session.start()
        assert set(result.context.failures) == {"a", "b", "c"}
        assert "not started after 0.2 seconds" in str(result.context.failures["a"])
        await session.quit()


# ── Teardown & quit ──────────────────────────────────────────────────────


class TestTeardown:
    @pytest.mark.asyncio
    async def test_quit_releases_everything(self, session, runtime):
        await session.start()
        await session.quit()

        assert session.state == SessionState.TORN_DOWN
        assert session.context is None
        assert runtime.running == []
        assert runtime.networks == {}
        assert runtime.volumes == {}
        assert other_tasks() == set()

    @pytest.mark.asyncio
    async def test_quit_without_start(self, session):
        await session.quit()
        assert session.state == SessionState.TORN_DOWN

    @pytest.mark.asyncio
    async def test_teardown_error_after_attempting_everything(self, session, runtime):
        await session.start()
        runtime.fail_remove.add("demo-net")

        with pytest.raises(TeardownError) as exc_info:
            await session.quit()

        assert list(exc_info.value.errors) == ["demo-net"]
        assert runtime.running == []
        assert runtime.volumes == {}
        assert session.state == SessionState.TORN_DOWN

    @pytest.mark.asyncio
    async def test_container_teardown_failure_reported(self, session, runtime):
        result = await session.start()
        stuck = result.context.containers["b"].name
        runtime.fail_remove.add(stuck)

        with pytest.raises(TeardownError) as exc_info:
            await session.quit()

        assert list(exc_info.value.errors) == [stuck]
        assert runtime.networks == {}

    @pytest.mark.asyncio
    async def test_refresh_raises_teardown_error(self, session, runtime):
        await session.start()
        runtime.fail_remove.add("demo-vol")
        with pytest.raises(TeardownError):
            await session.refresh()


# ── Key loop ─────────────────────────────────────────────────────────────


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_refresh_then_quit(self, session, runtime):
        cycles = []
        await session.run(keys("x", "r", "q", "r"), cycles.append)

        assert len(cycles) == 2
        assert all(cycle.ok for cycle in cycles)
        assert session.state == SessionState.TORN_DOWN
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_ctrl_c_quits(self, session, runtime):
        cycles = []
        await session.run(keys("\x03", "r"), cycles.append)
        assert len(cycles) == 1
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_end_of_input_quits(self, session, runtime):
        await session.run(keys())
        assert session.state == SessionState.TORN_DOWN
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_cancelled_session_is_torn_down(self, session, runtime):
        started = asyncio.Event()

        async def wait_forever():
            started.set()
            await asyncio.Event().wait()
            yield "q"

        task = asyncio.create_task(session.run(wait_forever()))
        await started.wait()
        assert len(runtime.running) == 3

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert runtime.running == []
        assert session.state == SessionState.TORN_DOWN


# ── Services ─────────────────────────────────────────────────────────────


@pytest.fixture
def services_session(stack_dir, runtime, templates, settings, progress):
    (stack_dir / "main.yaml").write_text("openapi: 3.0.0\npaths: {}\n")
    descriptor = yaml.safe_load((stack_dir / "stack.yaml").read_text())
    descriptor["buckets"] = ["images"]
    descriptor["apis"] = {"main": "main.yaml"}
    (stack_dir / "stack.yaml").write_text(yaml.safe_dump(descriptor, sort_keys=False))
    stack = Stack.from_file(stack_dir / "stack.yaml")
    return Session(stack, runtime=runtime, templates=templates, settings=settings, progress=progress)


class TestServices:
    @pytest.mark.asyncio
    async def test_storage_first_then_functions_then_gateways(self, services_session, runtime):
        result = await services_session.start()

        assert result.ok
        run_id = result.run_id
        names = [spec.name for spec in runtime.started]
        assert names[0] == f"minio-{run_id}"
        assert sorted(names[1:4]) == [f"{name}-{run_id}" for name in "abc"]
        assert names[4] == f"api-main-{run_id}"
        assert set(result.context.services) == {"storage", "api-main"}
        assert set(result.context.ports) == {"a", "b", "c"}

        await services_session.quit()
        assert runtime.running == []
        assert other_tasks() == set()

    @pytest.mark.asyncio
    async def test_functions_get_storage_endpoint(self, services_session, runtime):
        result = await services_session.start()
        env = next(spec for spec in runtime.started if spec.name.startswith("a-")).environment
        assert env["MINIO_ENDPOINT"] == f"http://minio-{result.run_id}:9000"
        assert env["MINIO_ACCESS_KEY"] == "minioadmin"
        await services_session.quit()

    @pytest.mark.asyncio
    async def test_storage_failure_stops_cycle(self, services_session, runtime, settings):
        runtime.fail_pulls.add(settings.storage_image)

        result = await services_session.start()

        assert isinstance(result.error, TaskGroupError)
        assert "1 of 1 services failed (storage)" in result.error.message
        assert list(result.failures) == ["storage"]
        assert runtime.started == []
        await services_session.quit()
        assert runtime.networks == {}

    @pytest.mark.asyncio
    async def test_gateway_failure_keeps_functions(self, services_session, runtime, settings):
        runtime.fail_pulls.add(settings.api_gateway_image)

        result = await services_session.start()

        assert isinstance(result.error, TaskGroupError)
        assert "1 of 1 gateways failed (api-main)" in result.error.message
        assert set(result.context.ports) == {"a", "b", "c"}
        assert list(result.context.service_failures) == ["api-main"]
        await services_session.quit()
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_refresh_replaces_services(self, services_session, runtime):
        first = await services_session.start()
        storage_port = first.context.services["storage"].port

        second = await services_session.refresh()

        assert f"minio-{first.run_id}" in runtime.removed
        assert f"api-main-{first.run_id}" in runtime.removed
        assert second.context.services["storage"].port == storage_port
        await services_session.quit()
