"""Tests for the hook ordering engine."""

import asyncio

import pytest

from specwright.runner.errors import SchedulerError
from specwright.runner.hooks import HookCoordinator, after_each_chain, before_each_chain
from specwright.runner.models import ErrorKind, HookKind, SpecContext, SpecDefinition


def _nested() -> tuple[SpecContext, SpecContext, list[str]]:
    calls: list[str] = []

    def hook(label: str):
        return lambda: calls.append(label)

    root = SpecContext("root")
    root.before_each.extend([hook("root.b1"), hook("root.b2")])
    root.after_each.extend([hook("root.a1"), hook("root.a2")])
    child = root.add_child(SpecContext("child"))
    child.before_each.append(hook("child.b"))
    child.after_each.append(hook("child.a"))
    child.add_spec(SpecDefinition("spec", lambda: None))
    return root, child, calls


class TestChains:
    def test_before_each_root_first(self) -> None:
        root, child, _ = _nested()
        nodes = [node.description for node, _ in before_each_chain(child)]
        assert nodes == ["root", "root", "child"]

    def test_after_each_is_mirror_image(self) -> None:
        _, child, _ = _nested()
        before = before_each_chain(child)
        after = after_each_chain(child)
        assert [n.description for n, _ in after] == ["child", "root", "root"]
        assert len(after) == len(before)

    async def test_chain_execution_order(self) -> None:
        root, child, calls = _nested()
        hooks = HookCoordinator(root)

        await hooks.run_before_each(child)
        await hooks.run_after_each(child)

        assert calls == ["root.b1", "root.b2", "child.b", "child.a", "root.a2", "root.a1"]


class TestOneTimeHooks:
    async def test_before_all_runs_once(self) -> None:
        calls: list[str] = []
        root = SpecContext("root")
        root.before_all.append(lambda: calls.append("before_all"))
        root.add_spec(SpecDefinition("a"))
        root.add_spec(SpecDefinition("b"))
        hooks = HookCoordinator(root)

        assert await hooks.enter(root) is None
        assert await hooks.enter(root) is None
        assert calls == ["before_all"]

    async def test_concurrent_enter_runs_before_all_once(self) -> None:
        calls: list[str] = []

        async def slow_setup() -> None:
            await asyncio.sleep(0.01)
            calls.append("before_all")

        root = SpecContext("root")
        root.before_all.append(slow_setup)
        for i in range(5):
            root.add_spec(SpecDefinition(f"spec {i}"))
        hooks = HookCoordinator(root)

        results = await asyncio.gather(*(hooks.enter(root) for _ in range(5)))

        assert results == [None] * 5
        assert calls == ["before_all"]

    async def test_before_all_failure_is_shared(self) -> None:
        def broken() -> None:
            raise RuntimeError("no database")

        root = SpecContext("root")
        child = root.add_child(SpecContext("child"))
        child.before_all.append(broken)
        child.add_spec(SpecDefinition("a"))
        child.add_spec(SpecDefinition("b"))
        hooks = HookCoordinator(root)

        first = await hooks.enter(child)
        second = await hooks.enter(child)

        assert first is second
        assert first.kind is ErrorKind.HOOK
        assert "before_all hook failed in 'child': no database" == first.message
        assert hooks.state(child).before_all_error is first

    async def test_after_all_waits_for_last_spec(self) -> None:
        calls: list[str] = []
        root = SpecContext("root")
        root.after_all.append(lambda: calls.append("after_all"))
        root.add_spec(SpecDefinition("a"))
        root.add_spec(SpecDefinition("b"))
        hooks = HookCoordinator(root)

        await hooks.enter(root)
        await hooks.finish(root)
        assert calls == []
        await hooks.finish(root)
        assert calls == ["after_all"]
        assert hooks.state(root).finished

    async def test_after_all_leaf_before_root(self) -> None:
        calls: list[str] = []
        root = SpecContext("root")
        root.after_all.append(lambda: calls.append("root"))
        child = root.add_child(SpecContext("child"))
        child.after_all.append(lambda: calls.append("child"))
        child.add_spec(SpecDefinition("a"))
        hooks = HookCoordinator(root)

        await hooks.enter(child)
        await hooks.finish(child)

        assert calls == ["child", "root"]

    async def test_after_all_skipped_when_never_entered(self) -> None:
        calls: list[str] = []
        root = SpecContext("root")
        root.after_all.append(lambda: calls.append("after_all"))
        root.add_spec(SpecDefinition("skipped"))
        hooks = HookCoordinator(root)

        await hooks.finish(root)

        assert calls == []
        assert hooks.state(root).finished

    async def test_after_all_failure_recorded(self) -> None:
        def broken() -> None:
            raise RuntimeError("teardown")

        root = SpecContext("root")
        root.after_all.append(broken)
        root.add_spec(SpecDefinition("a"))
        hooks = HookCoordinator(root)

        await hooks.enter(root)
        await hooks.finish(root)

        assert list(hooks.after_all_failures) == [root]
        assert "teardown" in hooks.after_all_failures[root].message

    async def test_over_finish_is_an_error(self) -> None:
        root = SpecContext("root")
        root.add_spec(SpecDefinition("a"))
        hooks = HookCoordinator(root)

        await hooks.finish(root)
        with pytest.raises(SchedulerError):
            await hooks.finish(root)


class TestFailureCallback:
    async def test_callback_receives_each_failure(self) -> None:
        seen: list[tuple[HookKind, str]] = []

        async def on_failure(kind, context, error) -> None:
            seen.append((kind, context.description))

        def broken() -> None:
            raise RuntimeError("x")

        root = SpecContext("root")
        root.after_each.extend([broken, broken])
        root.add_spec(SpecDefinition("a"))
        hooks = HookCoordinator(root, on_failure=on_failure)

        error = await hooks.run_after_each(root)

        assert error is not None
        assert seen == [(HookKind.AFTER_EACH, "root"), (HookKind.AFTER_EACH, "root")]
