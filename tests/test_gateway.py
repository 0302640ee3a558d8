"""Session gateway behaviour with a fake shell and fake transports."""

import asyncio
import time

from terminal_gateway.events import EventType
from terminal_gateway.hooks import SessionLifecycleHooks
from terminal_gateway.gateway import SessionGateway
from terminal_gateway.markers import SENTINEL, ShellKind, build_init_script


async def run_command(gateway, transport, line):
    for ch in line:
        await gateway.input(transport.id, ch)
    await gateway.input(transport.id, "\r")


class TestAttach:
    async def test_new_session_handshake(self, gateway, shells, make_transport):
        t = make_transport()
        session = await gateway.attach(t)

        assert session is not None
        assert t.messages[0] == {"type": "terminal-session", "session_id": session.id}
        assert t.messages[1] == {"type": "terminal-pid", "pid": shells.spawned[0].pid}
        # Marker printed before the first prompt is not shown to the client.
        assert SENTINEL not in t.output()
        assert t.output() == "$ "
        assert session.transport is t

    async def test_init_script_written_once_before_input(self, gateway, shells, make_transport):
        t = make_transport()
        await gateway.attach(t)
        await gateway.input(t.id, "l")
        shell = shells.spawned[0]
        assert shell.written[0] == build_init_script(ShellKind.BASH)
        assert sum(isinstance(w, bytes) for w in shell.written) == 1

    async def test_spawn_failure_reports_error(self, gateway, shells, make_transport, bus):
        events = bus.subscribe()
        shells.fail_next = True
        t = make_transport()
        assert await gateway.attach(t) is None
        assert t.messages == [{"type": "terminal-error", "error": "Failed to initialize terminal"}]
        assert len(gateway.registry) == 0
        assert (await events.get()).type is EventType.SPAWN_FAILED

        # The same connection may retry.
        assert await gateway.attach(t) is not None

    async def test_reattach_never_spawns_twice(self, gateway, shells, make_transport):
        t1, t2 = make_transport(), make_transport()
        session = await gateway.attach(t1)
        await gateway.detach(t1.id, "transport close")
        again = await gateway.attach(t2, session.id)

        assert again is session
        assert len(shells.spawned) == 1
        assert gateway.registry.by_transport(t2.id) is session
        assert t2.messages[0] == {"type": "terminal-session", "session_id": session.id}

    async def test_same_transport_reinit(self, gateway, shells, make_transport):
        t = make_transport()
        first = await gateway.attach(t)
        second = await gateway.attach(t)
        assert first is second
        assert len(shells.spawned) == 1


class TestCommands:
    async def test_echo_hi(self, gateway, make_transport):
        t = make_transport()
        await gateway.attach(t)
        t.clear()

        await run_command(gateway, t, "echo hi")

        status = t.of_type("command-status")
        assert status == [{"type": "command-status", "success": True, "exit_code": 0, "command": "echo hi"}]
        assert "hi" in t.output()

    async def test_failing_command(self, gateway, make_transport):
        t = make_transport()
        await gateway.attach(t)
        await run_command(gateway, t, "(exit 7)")
        (status,) = t.of_type("command-status")
        assert status["success"] is False
        assert status["exit_code"] == 7

    async def test_failed_command_output_reaches_client(self, gateway, make_transport):
        t = make_transport()
        await gateway.attach(t)
        await run_command(gateway, t, "nosuchcmd")
        (status,) = t.of_type("command-status")
        assert status["exit_code"] == 127
        assert "command not found" in t.output()

    async def test_status_precedes_output_and_prompt(self, gateway, make_transport):
        t = make_transport()
        await gateway.attach(t)
        t.clear()
        await run_command(gateway, t, "echo hi")
        kinds = [m["type"] for m in t.messages]
        status_at = kinds.index("command-status")
        after = t.messages[status_at + 1:]
        assert after[0]["type"] == "terminal-output" and "hi" in after[0]["data"]
        assert after[-1] == {"type": "terminal-output", "data": "$ "}
        # Only the echoed keystrokes were forwarded before the status.
        assert "".join(m["data"] for m in t.messages[:status_at]) == "echo hi"

    async def test_input_updates_activity(self, gateway, make_transport):
        t = make_transport()
        session = await gateway.attach(t)
        session.touch(0.0)
        await gateway.input(t.id, "x")
        assert session.last_activity > 0.0

    async def test_write_failure_is_swallowed(self, gateway, shells, make_transport):
        t = make_transport()
        session = await gateway.attach(t)
        shells.spawned[0].fail_writes = True
        await gateway.input(t.id, "x")
        assert gateway.registry.get(session.id) is session

    async def test_resize(self, gateway, shells, make_transport):
        t = make_transport()
        await gateway.attach(t)
        await gateway.resize(t.id, 120, 40)
        assert (shells.spawned[0].cols, shells.spawned[0].rows) == (120, 40)

    async def test_resize_failure_is_swallowed(self, gateway, shells, make_transport):
        t = make_transport()
        await gateway.attach(t)
        shells.spawned[0].alive = False
        await gateway.resize(t.id, 120, 40)
        await gateway.resize(t.id, "wide", None)

    async def test_input_without_session_is_ignored(self, gateway):
        await gateway.input("nobody", "ls\r")


class TestReconnection:
    async def test_completion_delivered_to_new_transport(self, gateway, shells, make_transport):
        t1, t2 = make_transport(), make_transport()
        session = await gateway.attach(t1)
        await run_command(gateway, t1, "sleep 5")
        assert t1.of_type("command-status") == []

        await gateway.detach(t1.id, "transport close")
        await shells.spawned[0].emit(f"done\r\n{SENTINEL}0\r\n$ ")
        assert t1.of_type("command-status") == []
        assert len(session.backlog) == 3

        await gateway.attach(t2, session.id)
        assert [m["type"] for m in t2.messages[:3]] == ["terminal-session", "terminal-pid", "command-status"]
        assert t2.of_type("command-status")[0]["command"] == "sleep 5"
        assert "done" in t2.output()
        assert len(session.backlog) == 0

    async def test_grace_window_expiry_kills_process(self, gateway, shells, make_transport, bus):
        events = bus.subscribe()
        t = make_transport()
        session = await gateway.attach(t)
        await gateway.detach(t.id, "transport close")

        await asyncio.sleep(0.2)
        assert gateway.registry.get(session.id) is None
        assert shells.spawned[0].killed
        seen = []
        while not events.empty():
            seen.append(events.get_nowait().type)
        assert EventType.SESSION_EXPIRED in seen

    async def test_reconnect_inside_grace_window_keeps_process(self, gateway, shells, make_transport):
        t1, t2 = make_transport(), make_transport()
        session = await gateway.attach(t1)
        await gateway.detach(t1.id, "transport close")
        await gateway.attach(t2, session.id)
        await asyncio.sleep(0.2)
        assert gateway.registry.get(session.id) is session
        assert not shells.spawned[0].killed

    async def test_clean_disconnect_has_no_grace_timer(self, gateway, shells, make_transport):
        t = make_transport()
        session = await gateway.attach(t)
        await gateway.detach(t.id, "client logout")
        await asyncio.sleep(0.2)
        assert gateway.registry.get(session.id) is session
        assert session.disconnect_reason == "client logout"

    async def test_broken_transport_detaches_and_buffers(self, gateway, shells, make_transport):
        t = make_transport()
        session = await gateway.attach(t)
        t.broken = True
        await shells.spawned[0].emit("late output")
        assert session.transport is None
        assert gateway.registry.by_transport(t.id) is None
        assert session.backlog[-1] == {"type": "terminal-output", "data": "late output"}
        assert session.disconnect_reason == "transport error"

    async def test_old_transport_disconnect_after_takeover(self, gateway, make_transport):
        t1, t2 = make_transport(), make_transport()
        session = await gateway.attach(t1)
        await gateway.attach(t2, session.id)
        assert await gateway.detach(t1.id, "transport close") is None
        assert session.transport is t2


class TestTeardown:
    async def test_idle_reaper_removes_session(self, gateway, shells, make_transport):
        t = make_transport()
        session = await gateway.attach(t)
        session.touch(time.time() - gateway.config.idle_timeout - 1)

        assert await gateway.reaper.sweep() == [session.id]
        assert gateway.registry.get(session.id) is None
        assert gateway.registry.by_transport(t.id) is None
        assert shells.spawned[0].killed

    async def test_process_exit_cleans_up(self, gateway, shells, make_transport, bus):
        events = bus.subscribe()
        t = make_transport()
        session = await gateway.attach(t)
        await shells.spawned[0].exit(0)
        assert gateway.registry.get(session.id) is None
        assert gateway.registry.by_transport(t.id) is None
        seen = []
        while not events.empty():
            seen.append(events.get_nowait())
        exited = [e for e in seen if e.type is EventType.SESSION_EXITED]
        assert exited and exited[0].data["exit_code"] == 0

    async def test_remove_session(self, gateway, shells, make_transport):
        t = make_transport()
        session = await gateway.attach(t)
        await gateway.remove_session(session.id)
        assert len(gateway.registry) == 0
        assert shells.spawned[0].killed

    async def test_shutdown_kills_everything(self, gateway, shells, make_transport):
        for _ in range(3):
            await gateway.attach(make_transport())
        await gateway.shutdown()
        assert len(gateway.registry) == 0
        assert all(s.killed for s in shells.spawned)


class TestHooks:
    async def test_hooks_fire(self, config, shells, bus, make_transport):
        created, closed, completed = [], [], []

        async def on_completed(session, status):
            completed.append(status.exit_code)

        hooks = SessionLifecycleHooks(
            on_session_created=lambda s: created.append(s.id),
            on_session_closed=lambda s, reason: closed.append(reason),
            on_command_completed=on_completed,
        )
        gw = SessionGateway(config, hooks=hooks, event_bus=bus, spawner=shells.spawn)
        t = make_transport()
        session = await gw.attach(t)
        await run_command(gw, t, "(exit 3)")
        await asyncio.sleep(0)
        await gw.remove_session(session.id)

        assert created == [session.id]
        assert completed == [3]
        assert closed == ["removed"]

    async def test_hook_errors_are_contained(self, config, shells, bus, make_transport):
        def explode(session):
            raise RuntimeError("hook bug")

        gw = SessionGateway(config, hooks=SessionLifecycleHooks(on_session_created=explode),
                            event_bus=bus, spawner=shells.spawn)
        assert await gw.attach(make_transport()) is not None
        await gw.shutdown()


async def test_describe_includes_stats(gateway, make_transport):
    session = await gateway.attach(make_transport())
    info = await gateway.describe(session)
    assert info["id"] == session.id
    assert info["stats"]["alive"] is True
    assert info["shell_kind"] == "bash"


class TestCloseOnce:
    async def test_shell_dying_during_startup_is_not_left_registered(self, config, shells, bus, make_transport):
        events = bus.subscribe()

        async def dying_spawn(kind, **kwargs):
            shell = await shells.spawn(kind, **kwargs)
            await shell.exit(1)
            return shell

        gw = SessionGateway(config, event_bus=bus, spawner=dying_spawn)
        t = make_transport()
        assert await gw.attach(t) is None
        assert t.messages == [{"type": "terminal-error", "error": "Failed to initialize terminal"}]
        assert len(gw.registry) == 0
        assert gw.registry.by_transport(t.id) is None
        assert shells.spawned[0].killed
        seen = []
        while not events.empty():
            seen.append(events.get_nowait())
        exited = [e for e in seen if e.type is EventType.SESSION_EXITED]
        assert len(exited) == 1 and exited[0].data["exit_code"] == 1
        await gw.shutdown()

    async def test_concurrent_teardown_reports_once(self, config, shells, bus, make_transport):
        closed = []
        hooks = SessionLifecycleHooks(on_session_closed=lambda s, reason: closed.append(reason))
        gw = SessionGateway(config, hooks=hooks, event_bus=bus, spawner=shells.spawn)
        session = await gw.attach(make_transport())
        events = bus.subscribe()

        # Reaper and grace timer racing for the same session.
        await asyncio.gather(
            gw._close_session(session, reason="reaped"),
            gw._close_session(session, reason="expired"),
        )
        assert closed == ["reaped"]
        seen = []
        while not events.empty():
            seen.append(events.get_nowait().type)
        assert seen == [EventType.SESSION_REAPED]
        assert len(gw.registry) == 0
        await gw.shutdown()

    async def test_exit_after_removal_is_ignored(self, gateway, shells, make_transport, bus):
        session = await gateway.attach(make_transport())
        await gateway.remove_session(session.id)
        events = bus.subscribe()
        await shells.spawned[0].exit(0)
        assert events.empty()
