"""Tests for stdio MCP process management against a real FastMCP echo server."""

from __future__ import annotations

import asyncio
import sys

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, ImageContent, TextContent

from relay_manager.config import MCPSettings
from relay_manager.errors import SessionNotFoundError, SessionNotRunningError, ToolNotFoundError
from relay_manager.process_manager import (
    MCPProcessManager,
    MCPStatus,
    RestartPolicy,
    StdioConfig,
    describe_error,
    format_tool_result,
)
from tests.conftest import ECHO_SERVER


def echo_config() -> StdioConfig:
    return StdioConfig(command=sys.executable, args=[str(ECHO_SERVER)])


@pytest.fixture
async def manager():
    manager = MCPProcessManager(
        MCPSettings(startup_timeout=30, call_timeout=10),
        policy=RestartPolicy(max_restarts=1, backoff=0),
    )
    yield manager
    await manager.close_all()


async def wait_for_status(manager, session_id, status, timeout=30.0):
    async def poll():
        while manager.get_session(session_id).status != status:
            await asyncio.sleep(0.1)
    await asyncio.wait_for(poll(), timeout)


def test_restart_policy_backoff_doubles():
    policy = RestartPolicy(max_restarts=3, backoff=1.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert policy.allows(2)
    assert not policy.allows(3)


def test_blank_command_rejected():
    with pytest.raises(ValueError):
        StdioConfig(command="  ")


def test_describe_error_unwraps_groups():
    class Group(Exception):
        def __init__(self, *errors):
            super().__init__("group")
            self.exceptions = errors

    assert describe_error(Group(FileNotFoundError("no such file"))) == "FileNotFoundError: no such file"
    assert describe_error(TimeoutError()) == "TimeoutError"


def test_format_tool_result():
    result = CallToolResult(
        content=[
            TextContent(type="text", text="hello"),
            ImageContent(type="image", data="aGk=", mimeType="image/png"),
        ],
        structuredContent={"result": "hello"},
        isError=False,
    )

    formatted = format_tool_result(result)
    assert formatted["content"][0] == {"type": "text", "text": "hello"}
    assert formatted["content"][1] == {"type": "image", "data": "aGk=", "mimeType": "image/png"}
    assert formatted["structuredContent"] == {"result": "hello"}
    assert formatted["isError"] is False


async def test_spawn_lists_tools_and_executes(manager):
    info = await manager.spawn("echo", echo_config())

    assert info.status == MCPStatus.RUNNING
    assert info.error is None
    assert set(info.tools) == {"echo", "add", "crash"}
    assert info.tools["echo"]["inputSchema"]["properties"]["text"]["type"] == "string"

    result = await manager.execute(info.session_id, "echo", {"text": "hello"})
    assert result["isError"] is False
    assert result["content"][0]["text"] == "hello"

    result = await manager.execute(info.session_id, "add", {"a": 2, "b": 3})
    assert result["content"][0]["text"] == "5"
    assert manager.active_session_count() == 1


async def test_spawn_reuses_running_session(manager):
    first = await manager.spawn("echo", echo_config())
    second = await manager.spawn("echo", echo_config())

    assert second.session_id == first.session_id
    assert len(manager.list_sessions()) == 1
    assert manager.get_session_by_server_name("echo").session_id == first.session_id


async def test_spawn_failure_reported_in_status(manager):
    info = await manager.spawn("broken", StdioConfig(command="relay-test-no-such-command"))

    assert info.status == MCPStatus.ERROR
    assert info.error
    with pytest.raises(SessionNotRunningError):
        await manager.execute(info.session_id, "echo", {"text": "hi"})
    with pytest.raises(SessionNotRunningError):
        manager.get_tools(info.session_id)


async def test_failed_session_is_replaced_on_respawn(manager):
    failed = await manager.spawn("echo", StdioConfig(command="relay-test-no-such-command"))
    info = await manager.spawn("echo", echo_config())

    assert info.session_id != failed.session_id
    assert info.status == MCPStatus.RUNNING
    assert manager.get_session(failed.session_id) is None


async def test_unknown_session_and_tool(manager):
    with pytest.raises(SessionNotFoundError):
        await manager.execute("missing", "echo")

    info = await manager.spawn("echo", echo_config())
    with pytest.raises(ToolNotFoundError):
        await manager.execute(info.session_id, "does_not_exist")


async def test_close_session(manager):
    info = await manager.spawn("echo", echo_config())

    assert await manager.close(info.session_id) is True
    assert manager.get_session(info.session_id) is None
    assert await manager.close(info.session_id) is False


async def test_idle_sessions_are_closed():
    manager = MCPProcessManager(MCPSettings(startup_timeout=30, idle_timeout=-1))
    try:
        info = await manager.spawn("echo", echo_config())
        assert await manager.check_sessions() == {"closed": 1, "restarted": 0}
        assert manager.get_session(info.session_id) is None
    finally:
        await manager.close_all()


async def test_healthy_sessions_pass_check(manager):
    info = await manager.spawn("echo", echo_config())

    assert await manager.check_sessions() == {"closed": 0, "restarted": 0}
    assert manager.get_session(info.session_id).status == MCPStatus.RUNNING


async def test_crashed_session_is_restarted(manager):
    info = await manager.spawn("echo", echo_config())
    manager._sessions[info.session_id].mark_error("simulated crash")

    assert await manager.check_sessions() == {"closed": 0, "restarted": 1}
    await wait_for_status(manager, info.session_id, MCPStatus.RUNNING)

    restarted = manager.get_session(info.session_id)
    assert restarted.restarts == 1
    assert restarted.error is None
    result = await manager.execute(info.session_id, "echo", {"text": "back"})
    assert result["content"][0]["text"] == "back"


async def test_restart_budget_is_respected(manager):
    info = await manager.spawn("echo", echo_config())
    proc = manager._sessions[info.session_id]
    proc.restarts = 1
    proc.mark_error("simulated crash")

    assert await manager.check_sessions() == {"closed": 0, "restarted": 0}
    assert manager.get_session(info.session_id).status == MCPStatus.ERROR


async def test_server_exit_during_call_triggers_restart(manager):
    info = await manager.spawn("echo", echo_config())

    with pytest.raises(SessionNotRunningError):
        await manager.execute(info.session_id, "crash")

    await wait_for_status(manager, info.session_id, MCPStatus.RUNNING)
    restarted = manager.get_session(info.session_id)
    assert restarted.restarts == 1
    result = await manager.execute(info.session_id, "echo", {"text": "back"})
    assert result["content"][0]["text"] == "back"


async def test_server_exit_is_noticed_without_a_call():
    manager = MCPProcessManager(
        MCPSettings(startup_timeout=30, call_timeout=10),
        policy=RestartPolicy(max_restarts=0),
    )
    try:
        info = await manager.spawn("echo", echo_config())
        proc = manager._sessions[info.session_id]
        # fire the crash without awaiting the reply; the runner has to notice the exit itself
        call = asyncio.create_task(proc.session.call_tool("crash", {}))

        await wait_for_status(manager, info.session_id, MCPStatus.ERROR)
        assert manager.get_session(info.session_id).error
        assert manager.active_session_count() == 0
        with pytest.raises(McpError):
            await call
        with pytest.raises(SessionNotRunningError):
            await manager.execute(info.session_id, "echo", {"text": "hi"})
    finally:
        await manager.close_all()
