"""Tests for amux_core.context — the engine wiring and its command handlers."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

from amux_core.agents import LifecycleState
from amux_core.config import Settings
from amux_core.context import AgentContext
from amux_core.launcher import LaunchPlan
from amux_core.state_store import StateSnapshot
from amux_core.tmux import TmuxQueryError


def _run_async(coro):
    """Run an async coroutine in a fresh event loop (safe across tests)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeObserver:
    def schedule(self, handler, path, recursive=False):
        self.handler = handler

    def start(self):
        pass

    def stop(self):
        pass

    def join(self, timeout=None):
        pass


def _settings(tmp_path):
    return Settings(
        workspace=tmp_path,
        state_file=tmp_path / "_featstate" / "agent_states.json",
        command_dir=tmp_path / "commands",
        hooks_dir=tmp_path / "hooks",
        launch_script=tmp_path / "launch.sh",
        debounce_ms=10,
        poll_interval=0.05,
        command_poll_interval=0.01,
        monitor_interval=60,
        tmux_timeout=0.5,
    )


def _write_state(settings, sessions):
    settings.state_file.parent.mkdir(parents=True, exist_ok=True)
    settings.state_file.write_text(json.dumps({"sessions": sessions}))


def _context(tmp_path, presentation, alive=(), list_alive=None):
    settings = _settings(tmp_path)
    ctx = AgentContext(
        settings, presentation,
        list_alive=list_alive or AsyncMock(return_value=set(alive)),
        has_session=AsyncMock(return_value=True),
        observer_factory=FakeObserver,
    )
    return ctx, settings


async def _shutdown(ctx):
    ctx.close()
    await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# startup
# ---------------------------------------------------------------------------

class TestStart:
    def test_initial_reconcile(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A", "B"})
        _write_state(settings, {"A": "idle", "B": "busy", "C": "idle"})

        async def scenario():
            result = await ctx.start(bridge=False)
            ids = ctx.registry.identifiers()
            await _shutdown(ctx)
            return result, ids

        result, ids = _run_async(scenario())
        assert ids == ["A", "B"]
        assert result.summary() == "kept 0, created 2, removed 0"

    def test_malformed_state_file_warns(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A"})
        settings.state_file.parent.mkdir(parents=True)
        settings.state_file.write_text("{broken")

        async def scenario():
            await ctx.start(bridge=False)
            assert len(ctx.registry) == 0
            await _shutdown(ctx)

        _run_async(scenario())
        assert presentation.notifications[0][0] == "warning"
        assert presentation.notifications[0][1].startswith("State file unreadable")

    def test_tmux_failure_warns_and_keeps_watching(self, tmp_path, presentation):
        failing = AsyncMock(side_effect=TmuxQueryError("timed out"))
        ctx, settings = _context(tmp_path, presentation, list_alive=failing)
        _write_state(settings, {"A": "idle"})

        async def scenario():
            result = await ctx.start(bridge=False)
            assert result is None
            assert ctx.watcher.running
            await _shutdown(ctx)

        _run_async(scenario())
        assert presentation.notifications == [("warning", "tmux unavailable: timed out")]

    def test_close_idempotent_and_clears(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A"})
        _write_state(settings, {"A": "idle"})

        async def scenario():
            await ctx.start(bridge=False)
            ctx.close()
            ctx.close()
            await ctx.wait_closed()
            await asyncio.sleep(0)

        _run_async(scenario())
        assert len(ctx.registry) == 0
        assert presentation.names("dispose") == ["A"]
        assert not ctx.watcher.running


# ---------------------------------------------------------------------------
# steady state
# ---------------------------------------------------------------------------

class TestSteadyState:
    def test_file_change_flows_to_registry(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A"})
        _write_state(settings, {"A": "idle"})

        async def scenario():
            await ctx.start(bridge=False)
            _write_state(settings, {"A": "done", "B": "busy"})
            ctx.watcher.notify_raw_event()
            await asyncio.sleep(0.1)
            states = {r.identifier: r.lifecycle_state for r in ctx.registry.records()}
            await _shutdown(ctx)
            return states

        states = _run_async(scenario())
        assert states == {"A": LifecycleState.DONE, "B": LifecycleState.BUSY}
        assert ("info", "Agent session 'A' is done") in presentation.notifications

    def test_malformed_update_keeps_registry(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A"})
        _write_state(settings, {"A": "busy"})

        async def scenario():
            await ctx.start(bridge=False)
            settings.state_file.write_text("{half written")
            ctx.watcher.notify_raw_event()
            await asyncio.sleep(0.1)
            state = ctx.registry.get("A").lifecycle_state
            await _shutdown(ctx)
            return state

        assert _run_async(scenario()) is LifecycleState.BUSY

    def test_apply_waits_for_reconcile(self, tmp_path, presentation):
        gate = asyncio.Event()

        async def slow_alive():
            await gate.wait()
            return {"A"}

        ctx, settings = _context(tmp_path, presentation, list_alive=slow_alive)
        _write_state(settings, {"A": "idle"})

        async def scenario():
            ctx.store.refresh()
            reconcile = asyncio.ensure_future(ctx.reconcile())
            await asyncio.sleep(0)
            apply = asyncio.ensure_future(ctx.apply_snapshot(StateSnapshot(sessions={"A": "busy"})))
            await asyncio.sleep(0.02)
            blocked = not apply.done()
            gate.set()
            await asyncio.gather(reconcile, apply)
            return blocked

        assert _run_async(scenario()) is True
        assert ctx.registry.get("A").lifecycle_state is LifecycleState.BUSY

    def test_monitors_only_local_or_terminal_records(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A", "B"})
        _write_state(settings, {"A": "idle", "B": "idle"})

        async def scenario():
            await ctx.start(bridge=False)
            assert ctx.monitor.monitored() == []
            assert await ctx.attach("B")
            monitored = ctx.monitor.monitored()
            await _shutdown(ctx)
            return monitored

        assert _run_async(scenario()) == ["B"]
        assert ctx.monitor.monitored() == []


# ---------------------------------------------------------------------------
# user operations and command handlers
# ---------------------------------------------------------------------------

class TestCommands:
    @patch("amux_core.context.tmux.kill_session")
    def test_kill(self, mock_kill, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"factory-TC-001"})
        _write_state(settings, {"factory-TC-001": "busy"})

        async def scenario():
            await ctx.start(bridge=False)
            missing = await ctx.bridge.dispatch("kill", {"identifier": "nobody"})
            reply = await ctx.bridge.dispatch("kill", {"identifier": "TC-001"})
            state = ctx.registry.get("factory-TC-001").lifecycle_state
            await _shutdown(ctx)
            return missing, reply, state

        missing, reply, state = _run_async(scenario())
        assert missing == "Agent nobody not found"
        assert reply == "Agent TC-001 terminated successfully"
        assert state is LifecycleState.STOPPED
        mock_kill.assert_called_once_with("factory-TC-001")

    @patch("amux_core.context.tmux.kill_session")
    def test_kill_refuses_ambiguous_name(self, mock_kill, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"factory-TC-001", "qa-TC-001"})
        _write_state(settings, {"factory-TC-001": "busy", "qa-TC-001": "busy"})

        async def scenario():
            await ctx.start(bridge=False)
            empty = await ctx.bridge.dispatch("kill", {"identifier": ""})
            reply = await ctx.bridge.dispatch("kill", {"identifier": "TC-001"})
            await _shutdown(ctx)
            return empty, reply

        empty, reply = _run_async(scenario())
        assert empty == "Agent  not found"
        assert reply == "Agent TC-001 not found"
        mock_kill.assert_not_called()

    @patch("amux_core.context.run_launch", new_callable=AsyncMock)
    def test_spawn(self, mock_launch, tmp_path, presentation):
        ctx, _settings_ = _context(tmp_path, presentation, alive={"factory-alpha"})

        async def scenario():
            await ctx.start(bridge=False)
            reply = await ctx.bridge.dispatch(
                "spawn", {"command": "spawn", "agentType": "factory", "model": "opus"})
            monitored = ctx.monitor.is_monitoring("factory-bravo")
            await _shutdown(ctx)
            return reply, monitored

        reply, monitored = _run_async(scenario())
        assert reply == "Agent spawned: FA-O-bravo (factory-bravo)"
        assert monitored
        plan = mock_launch.call_args[0][0]
        assert isinstance(plan, LaunchPlan)
        assert plan.argv[1:] == ["factory", "--model", "opus", "--no-attach"]
        assert ("create", "factory-bravo", True) in presentation.calls

    def test_spawn_invalid_type(self, tmp_path, presentation):
        ctx, _ = _context(tmp_path, presentation)
        reply = _run_async(ctx.bridge.dispatch("spawn", {"agentType": "wizard"}))
        assert reply == "Failed to spawn: Invalid agent type: wizard"

    def test_register_current_terminal(self, tmp_path, presentation):
        ctx, _ = _context(tmp_path, presentation)
        command = {"sessionName": "factory-TC-009", "agentType": "factory",
                   "taskId": "TC-009", "model": "opus"}

        async def scenario():
            first = await ctx.bridge.dispatch("register_current_terminal", command)
            second = await ctx.bridge.dispatch("register_current_terminal", command)
            ctx.monitor.close()
            await asyncio.sleep(0)
            return first, second

        first, second = _run_async(scenario())
        assert first == "Registered current terminal as agent: factory-TC-009 (FA-O-009)"
        assert second == "Terminal already registered as agent: factory-TC-009"
        record = ctx.registry.get("factory-TC-009")
        assert record.local and record.handle is None

    def test_create_terminal(self, tmp_path, presentation):
        ctx, _ = _context(tmp_path, presentation)

        async def scenario():
            named = await ctx.bridge.dispatch("create_terminal",
                                              {"sessionName": "qa-TC-001", "name": "QA one"})
            default = await ctx.bridge.dispatch("create_terminal", {"sessionName": "planner-alpha"})
            bad = await ctx.bridge.dispatch("create_terminal", {"sessionName": "bad name"})
            ctx.monitor.close()
            await asyncio.sleep(0)
            return named, default, bad

        named, default, bad = _run_async(scenario())
        assert named == "Terminal created and attached: QA one (qa-TC-001)"
        assert default == "Terminal created and attached: 📋 ⚪ PL-S-alpha (planner-alpha)"
        assert bad.startswith("Failed to create terminal: unsafe session identifier")
        assert ctx.registry.get("qa-TC-001").handle == "term:qa-TC-001"

    def test_update_state_writes_file(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation)
        reply = _run_async(ctx.bridge.dispatch(
            "update_state", {"identifier": "factory-TC-001", "state": "Done"}))
        assert reply == "State of factory-TC-001 set to done"
        data = json.loads(settings.state_file.read_text())
        assert data["sessions"]["factory-TC-001"]["state"] == "done"

    def test_update_state_rejects_bad_state(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation)
        reply = _run_async(ctx.bridge.dispatch(
            "update_state", {"identifier": "factory-TC-001", "state": "napping"}))
        assert reply == "Failed to update state: invalid state 'napping'"
        assert not settings.state_file.exists()

    def test_refresh_through_command_directory(self, tmp_path, presentation):
        ctx, settings = _context(tmp_path, presentation, alive={"A"})
        _write_state(settings, {"A": "idle"})

        async def scenario():
            await ctx.start()
            ctx.registry.remove("A")
            (settings.command_dir / "cmd-1.json").write_text(json.dumps({"command": "refresh"}))
            await asyncio.sleep(0.1)
            await _shutdown(ctx)

        _run_async(scenario())
        response = settings.command_dir / "cmd-1.json.response"
        assert response.read_text() == "Reconciled: kept 0, created 1, removed 0"
