#!/usr/bin/env python3
"""
MCP Process Manager
Spawns stdio MCP servers through the MCP Python SDK and keeps one live
ClientSession per process so REST callers can list and execute tools.

Lifecycle: starting -> running -> (error | closed); error -> starting on a
supervised restart. Each process is owned by a single runner task, which
enters and exits the SDK's stdio/session contexts.
"""

import asyncio
import logging
import os
import time
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED
from pydantic import Field, field_validator

from .config import MCPSettings
from .errors import (
    SessionNotFoundError,
    SessionNotRunningError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from .oauth_sessions import RelayModel

logger = logging.getLogger(__name__)


class MCPStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    CLOSED = "closed"


class StdioConfig(RelayModel):
    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value


class SpawnRequest(RelayModel):
    server_name: str = Field(min_length=1)
    config: StdioConfig


class ExecuteRequest(RelayModel):
    tool_name: str = Field(min_length=1)
    args: Dict[str, Any] = Field(default_factory=dict)


class MCPSessionInfo(RelayModel):
    session_id: str
    server_name: str
    status: MCPStatus
    error: Optional[str] = None
    tools: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    started_at: int
    last_activity: int
    restarts: int = 0


@dataclass
class RestartPolicy:
    max_restarts: int = 3
    backoff: float = 1.0

    def allows(self, restarts: int) -> bool:
        return restarts < self.max_restarts

    def delay(self, attempt: int) -> float:
        """Delay before restart number `attempt` (1-based), doubling each time"""
        return self.backoff * (2 ** max(attempt - 1, 0))


def _now_ms() -> int:
    return int(time.time() * 1000)


def describe_error(error: BaseException) -> str:
    """Readable message, unwrapping task-group exception groups to the first leaf"""
    while getattr(error, "exceptions", None):
        error = error.exceptions[0]
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


def tool_to_dict(tool) -> Dict[str, Any]:
    tool_dict = {
        "name": tool.name,
        "description": tool.description,
        "inputSchema": tool.inputSchema,
    }
    if getattr(tool, "title", None):
        tool_dict["title"] = tool.title
    if getattr(tool, "annotations", None):
        tool_dict["annotations"] = tool.annotations.model_dump(exclude_none=True)
    return tool_dict


def format_tool_result(result) -> Dict[str, Any]:
    """Convert a CallToolResult into plain JSON, keeping structured output"""
    response: Dict[str, Any] = {
        "content": [],
        "isError": bool(getattr(result, "isError", False)),
    }

    for content in result.content:
        if hasattr(content, "text"):
            response["content"].append({"type": "text", "text": content.text})
        elif hasattr(content, "data"):
            response["content"].append({
                "type": getattr(content, "type", "image"),
                "data": content.data,
                "mimeType": getattr(content, "mimeType", "image/png"),
            })
        elif hasattr(content, "resource"):
            response["content"].append({
                "type": "resource",
                "resource": {
                    "uri": str(content.resource.uri),
                    "text": getattr(content.resource, "text", None),
                    "blob": getattr(content.resource, "blob", None),
                },
            })
        elif hasattr(content, "uri"):
            response["content"].append({"type": "resource_link", "uri": str(content.uri)})

    if getattr(result, "structuredContent", None):
        response["structuredContent"] = result.structuredContent

    return response


async def _forward(source, sink):
    """Relay server messages to the client session until the server's stdout closes"""
    async with sink:
        async for message in source:
            await sink.send(message)


async def _cancel_forwarder(task: asyncio.Task):
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, anyio.BrokenResourceError, anyio.ClosedResourceError):
        pass


class ManagedProcess:
    """One stdio MCP server and the runner task that owns its session"""

    def __init__(self, session_id: str, server_name: str, config: StdioConfig,
                 on_crash: Optional[Callable[["ManagedProcess"], None]] = None):
        self.session_id = session_id
        self.server_name = server_name
        self.config = config
        self.status = MCPStatus.STARTING
        self.error: Optional[str] = None
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.started_at = _now_ms()
        self.last_activity = self.started_at
        self.restarts = 0
        self.crashed = False
        self.restarting = False
        self.session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._on_crash = on_crash

    def touch(self):
        self.last_activity = _now_ms()

    def idle_seconds(self) -> float:
        return (_now_ms() - self.last_activity) / 1000

    async def wait_ready(self):
        await self._ready.wait()

    @property
    def runner_done(self) -> bool:
        return self._task is None or self._task.done()

    def server_parameters(self) -> StdioServerParameters:
        return StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env={**os.environ, **self.config.env},
            cwd=self.config.cwd,
        )

    def info(self) -> MCPSessionInfo:
        return MCPSessionInfo(
            session_id=self.session_id,
            server_name=self.server_name,
            status=self.status,
            error=self.error,
            tools=self.tools,
            started_at=self.started_at,
            last_activity=self.last_activity,
            restarts=self.restarts,
        )

    def mark_error(self, message: str, crashed: bool = True):
        self.status = MCPStatus.ERROR
        self.error = message
        self.crashed = crashed
        self.session = None
        logger.error(f"MCP session {self.session_id} ({self.server_name}): {message}")

    async def start(self, timeout: float):
        """Launch the runner and wait until the server is initialized or has failed"""
        self.status = MCPStatus.STARTING
        self.error = None
        self.crashed = False
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._task = asyncio.create_task(self._run(timeout), name=f"mcp-{self.server_name}")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout + 5)
        except asyncio.TimeoutError:
            await self.stop()
            self.mark_error(f"Startup timed out after {timeout}s", crashed=False)

    async def _run(self, timeout: float):
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(stdio_client(self.server_parameters()))
                forward_send, session_read = anyio.create_memory_object_stream(0)
                forwarder = asyncio.create_task(_forward(read_stream, forward_send))
                stack.push_async_callback(_cancel_forwarder, forwarder)
                session = await stack.enter_async_context(ClientSession(session_read, write_stream))

                try:
                    await asyncio.wait_for(session.initialize(), timeout=timeout)
                    tools_result = await asyncio.wait_for(session.list_tools(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise TimeoutError(f"Session initialization timeout for {self.server_name}")

                self.tools = {tool.name: tool_to_dict(tool) for tool in tools_result.tools}
                self.session = session
                self.status = MCPStatus.RUNNING
                self.touch()
                logger.info(f"MCP server {self.server_name} running with {len(self.tools)} tools "
                            f"(session {self.session_id})")
                self._ready.set()

                closing = asyncio.create_task(self._closing.wait())
                try:
                    done, _ = await asyncio.wait({closing, forwarder}, return_when=asyncio.FIRST_COMPLETED)
                    if forwarder in done and not self._closing.is_set():
                        self._output_closed(session)
                        # contexts stay open until stop() so in-flight calls get their error
                        await closing
                finally:
                    closing.cancel()
        except Exception as e:
            if not self._closing.is_set():
                was_running = self.status == MCPStatus.RUNNING
                self.mark_error(describe_error(e), crashed=was_running)
        finally:
            self.session = None
            if self._closing.is_set():
                self.status = MCPStatus.CLOSED
            else:
                if self.status == MCPStatus.RUNNING:
                    self.mark_error("Server process exited")
                if self.crashed and self._on_crash is not None:
                    self._on_crash(self)
            self._ready.set()

    def _output_closed(self, session: ClientSession):
        logger.warning(f"MCP server {self.server_name} closed its output (session {self.session_id})")
        if self.session is not session:
            return
        self.mark_error("Server process exited")
        if self._on_crash is not None:
            self._on_crash(self)

    async def stop(self, timeout: float = 5.0):
        self._closing.set()
        if self._task is None:
            self.status = MCPStatus.CLOSED
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"MCP session {self.session_id} did not shut down in {timeout}s, cancelling")
            self._task.cancel()
            try:
                await self._task
            except (asyncio.CancelledError, Exception):
                pass
        self.status = MCPStatus.CLOSED


class MCPProcessManager:
    """Registry of managed MCP processes keyed by session id"""

    def __init__(self, settings: MCPSettings, policy: Optional[RestartPolicy] = None):
        self.settings = settings
        self.policy = policy or RestartPolicy(settings.max_restarts, settings.restart_backoff)
        self._sessions: Dict[str, ManagedProcess] = {}
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    def _by_name(self, server_name: str) -> Optional[ManagedProcess]:
        for proc in self._sessions.values():
            if proc.server_name == server_name:
                return proc
        return None

    def _require(self, session_id: str) -> ManagedProcess:
        proc = self._sessions.get(session_id)
        if proc is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return proc

    async def spawn(self, server_name: str, config: StdioConfig) -> MCPSessionInfo:
        """
        Start a server, or reuse the running one registered under `server_name`.
        Startup failures are reported in the returned status, not raised.
        """
        async with self._lock:
            existing = self._by_name(server_name)
            if existing is not None and existing.status in (MCPStatus.STARTING, MCPStatus.RUNNING):
                pending = existing
            else:
                pending = None
                if existing is not None:
                    logger.info(f"Replacing stale MCP session {existing.session_id} for {server_name}")
                    self._sessions.pop(existing.session_id, None)
                    await existing.stop()
                proc = ManagedProcess(str(uuid.uuid4()), server_name, config, on_crash=self._schedule_restart)
                self._sessions[proc.session_id] = proc

        if pending is not None:
            await pending.wait_ready()
            pending.touch()
            logger.info(f"Reusing MCP session {pending.session_id} for {server_name}")
            return pending.info()

        logger.info(f"Spawning MCP server {server_name}: {config.command} {' '.join(config.args)}")
        await proc.start(self.settings.startup_timeout)
        return proc.info()

    def get_session(self, session_id: str) -> Optional[MCPSessionInfo]:
        proc = self._sessions.get(session_id)
        if proc is None:
            return None
        proc.touch()
        return proc.info()

    def get_session_by_server_name(self, server_name: str) -> Optional[MCPSessionInfo]:
        proc = self._by_name(server_name)
        if proc is None:
            return None
        proc.touch()
        return proc.info()

    def get_tools(self, session_id: str) -> List[Dict[str, Any]]:
        proc = self._require(session_id)
        if proc.status != MCPStatus.RUNNING:
            raise SessionNotRunningError(f"Session not running: {proc.status.value}")
        proc.touch()
        return list(proc.tools.values())

    async def execute(self, session_id: str, tool_name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        proc = self._require(session_id)
        if proc.status != MCPStatus.RUNNING or proc.session is None:
            raise SessionNotRunningError(f"Session not running: {proc.status.value}")
        if tool_name not in proc.tools:
            raise ToolNotFoundError(f"Tool not found: {tool_name}")

        session = proc.session
        proc.touch()
        try:
            result = await asyncio.wait_for(
                session.call_tool(tool_name, args or {}),
                timeout=self.settings.call_timeout,
            )
        except asyncio.TimeoutError:
            raise ToolTimeoutError(f"Tool {tool_name} timed out after {self.settings.call_timeout}s")
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as e:
            self._connection_lost(proc, session, describe_error(e))
            raise SessionNotRunningError(f"Session not running: {proc.status.value}") from e
        except McpError as e:
            if proc.runner_done or e.error.code == CONNECTION_CLOSED:
                self._connection_lost(proc, session, describe_error(e))
                raise SessionNotRunningError(f"Session not running: {proc.status.value}") from e
            raise ToolExecutionError(f"Tool {tool_name} failed: {e}") from e

        proc.touch()
        return format_tool_result(result)

    def _connection_lost(self, proc: ManagedProcess, session: ClientSession, message: str):
        # the runner may have noticed first, or a restart may already own a new session
        if proc.session is not session:
            return
        proc.mark_error(f"Connection lost: {message}")
        self._schedule_restart(proc)

    def _schedule_restart(self, proc: ManagedProcess):
        if proc.restarting:
            return
        if not self.policy.allows(proc.restarts):
            logger.error(f"MCP server {proc.server_name} exceeded {self.policy.max_restarts} restarts, giving up")
            return
        proc.restarting = True
        task = asyncio.create_task(self._restart(proc))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _restart(self, proc: ManagedProcess):
        try:
            proc.restarts += 1
            delay = self.policy.delay(proc.restarts)
            logger.info(f"Restarting MCP server {proc.server_name} in {delay}s "
                        f"(attempt {proc.restarts}/{self.policy.max_restarts})")
            await asyncio.sleep(delay)
            if self._sessions.get(proc.session_id) is not proc:
                return
            await proc.stop()
            await proc.start(self.settings.startup_timeout)
        finally:
            proc.restarting = False

    async def _ping(self, proc: ManagedProcess) -> bool:
        session = proc.session
        if session is None:
            return False
        try:
            await asyncio.wait_for(session.send_ping(), timeout=self.settings.ping_timeout)
            return True
        except Exception as e:
            logger.warning(f"Ping failed for MCP session {proc.session_id}: {describe_error(e)}")
            return False

    async def check_sessions(self) -> Dict[str, int]:
        """Close idle sessions, ping running ones and restart crashed ones"""
        closed = restarted = 0
        for proc in list(self._sessions.values()):
            if proc.idle_seconds() > self.settings.idle_timeout:
                logger.info(f"Closing idle MCP session {proc.session_id} ({proc.server_name})")
                await self.close(proc.session_id)
                closed += 1
                continue
            if proc.restarting:
                continue
            if proc.status == MCPStatus.RUNNING and not await self._ping(proc):
                proc.mark_error("Health check failed")
            if proc.status == MCPStatus.ERROR and proc.crashed and self.policy.allows(proc.restarts):
                self._schedule_restart(proc)
                restarted += 1
        return {"closed": closed, "restarted": restarted}

    async def close(self, session_id: str) -> bool:
        proc = self._sessions.pop(session_id, None)
        if proc is None:
            return False
        await proc.stop()
        logger.info(f"Closed MCP session {session_id} ({proc.server_name})")
        return True

    async def close_all(self):
        for task in list(self._background):
            task.cancel()
        for session_id in list(self._sessions):
            await self.close(session_id)

    def active_session_count(self) -> int:
        return sum(1 for proc in self._sessions.values() if proc.status == MCPStatus.RUNNING)

    def list_sessions(self) -> List[MCPSessionInfo]:
        return [proc.info() for proc in self._sessions.values()]
