"""HTTP tests for the MCP process endpoints."""

from __future__ import annotations

import sys

import httpx
import pytest

from relay_manager.api_handlers import create_app
from relay_manager.kv_store import MemoryKeyValueStore
from tests.conftest import ECHO_SERVER


@pytest.fixture
async def client(aiohttp_client, relay_config):
    app = create_app(relay_config, store=MemoryKeyValueStore(), http=httpx.AsyncClient())
    return await aiohttp_client(app)


async def spawn_echo(client, name="echo"):
    resp = await client.post("/api/spawn", json={
        "serverName": name,
        "config": {"command": sys.executable, "args": [str(ECHO_SERVER)], "env": {"ECHO_MODE": "test"}},
    })
    assert resp.status == 200
    return await resp.json()


async def test_health(client):
    data = await (await client.get("/health")).json()
    assert data["status"] == "ok"
    assert data["activeSessions"] == 0
    assert data["uptime"] >= 0


async def test_cors_preflight(client):
    resp = await client.options("/api/sessions", headers={
        "Origin": "https://app.example.com",
        "Access-Control-Request-Method": "GET",
    })
    assert resp.status == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "https://app.example.com"


async def test_spawn_list_execute_close(client):
    spawned = await spawn_echo(client)
    assert spawned["status"] == "running"
    assert spawned["error"] is None
    session_id = spawned["sessionId"]

    sessions = (await (await client.get("/api/sessions")).json())["sessions"]
    assert [s["sessionId"] for s in sessions] == [session_id]
    assert sessions[0]["serverName"] == "echo"

    tools = await (await client.get(f"/api/tools/{session_id}")).json()
    assert set(tools["tools"]) == {"echo", "add", "crash"}
    assert tools["status"] == "running"

    resp = await client.post(f"/api/execute/{session_id}", json={"toolName": "echo", "args": {"text": "hi"}})
    data = await resp.json()
    assert data["toolName"] == "echo"
    assert data["result"]["content"][0]["text"] == "hi"

    assert (await (await client.get("/health")).json())["activeSessions"] == 1

    resp = await client.delete(f"/api/close/{session_id}")
    assert await resp.json() == {"sessionId": session_id, "status": "closed"}
    assert (await client.delete(f"/api/close/{session_id}")).status == 404
    assert (await client.get(f"/api/tools/{session_id}")).status == 404


async def test_spawn_reuses_session_by_name(client):
    first = await spawn_echo(client)
    second = await spawn_echo(client)
    assert second["sessionId"] == first["sessionId"]


async def test_by_server_name_routes(client):
    spawned = await spawn_echo(client, name="calc")

    tools = await (await client.get("/api/tools/server/calc")).json()
    assert tools["sessionId"] == spawned["sessionId"]

    resp = await client.post("/api/execute/server/calc", json={"toolName": "add", "args": {"a": 20, "b": 22}})
    assert (await resp.json())["result"]["content"][0]["text"] == "42"

    resp = await client.delete("/api/close/server/calc")
    assert (await resp.json())["sessionId"] == spawned["sessionId"]

    assert (await client.get("/api/tools/server/calc")).status == 404
    assert (await client.post("/api/execute/server/calc", json={"toolName": "add"})).status == 404
    assert (await client.delete("/api/close/server/calc")).status == 404


async def test_spawn_validation(client):
    resp = await client.post("/api/spawn", json={"serverName": "x"})
    assert resp.status == 400
    assert (await resp.json())["error"] == "Invalid request"

    resp = await client.post("/api/spawn", json={"serverName": "x", "config": {"command": ""}})
    assert resp.status == 400

    resp = await client.post("/api/spawn", json={"serverName": "", "config": {"command": "python"}})
    assert resp.status == 400


async def test_failed_spawn_reports_error_status(client):
    resp = await client.post("/api/spawn", json={
        "serverName": "broken", "config": {"command": "relay-test-no-such-command"},
    })
    data = await resp.json()
    assert data["status"] == "error"
    assert data["error"]

    tools = await (await client.get(f"/api/tools/{data['sessionId']}")).json()
    assert tools["tools"] == {}
    assert tools["status"] == "error"

    resp = await client.post(f"/api/execute/{data['sessionId']}", json={"toolName": "echo"})
    assert resp.status == 409
    assert (await resp.json())["error"] == "Failed to execute tool"


async def test_execute_errors(client):
    resp = await client.post("/api/execute/missing", json={"toolName": "echo"})
    assert resp.status == 404

    session_id = (await spawn_echo(client))["sessionId"]
    resp = await client.post(f"/api/execute/{session_id}", json={"toolName": "nope"})
    assert resp.status == 404
    assert "nope" in (await resp.json())["details"]

    resp = await client.post(f"/api/execute/{session_id}", json={"args": {}})
    assert resp.status == 400
