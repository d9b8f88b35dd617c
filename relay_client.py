#!/usr/bin/env python3
"""
Relay Manager HTTP Client
Command line access to a running relay: health, MCP sessions, webhooks, providers
"""

import argparse
import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

DEFAULT_URL = "http://localhost:3100"


async def request_json(base_url: str, method: str, path: str,
                       body: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
    """Send a request and print failures; returns the decoded body on success"""
    url = f"{base_url.rstrip('/')}{path}"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.request(method, url, json=body, params=params) as response:
                data = await response.json(content_type=None)
                if response.status >= 400:
                    detail = data.get("details") or data.get("error") if isinstance(data, dict) else data
                    print(f"❌ {method} {path} failed: HTTP {response.status} - {detail}")
                    return None
                return data
    except aiohttp.ClientError as e:
        print(f"❌ Failed to connect to relay at {base_url}: {e}")
    except json.JSONDecodeError:
        print(f"❌ {method} {path} returned a non-JSON response")
    return None


def print_json(data: Optional[Dict[str, Any]]):
    if data is not None:
        print(json.dumps(data, indent=2))


async def cli_health(url: str):
    data = await request_json(url, "GET", "/health")
    if data:
        print(f"✅ Relay is up ({data['activeSessions']} active MCP sessions, uptime {data['uptime']}s)")


async def cli_sessions(url: str):
    data = await request_json(url, "GET", "/api/sessions")
    if data is None:
        return
    sessions = data.get("sessions", [])
    if not sessions:
        print("No MCP sessions")
    for session in sessions:
        icon = "✅" if session["status"] == "running" else "❌"
        error = f" - {session['error']}" if session.get("error") else ""
        print(f"{icon} {session['serverName']} [{session['sessionId']}] {session['status']}"
              f" ({len(session.get('tools', {}))} tools){error}")


async def cli_spawn(url: str, server_name: str, command: str, args, env_pairs, cwd: Optional[str]):
    env = {}
    for pair in env_pairs or []:
        key, _, value = pair.partition("=")
        env[key] = value
    config = {"command": command, "args": list(args or []), "env": env}
    if cwd:
        config["cwd"] = cwd
    print_json(await request_json(url, "POST", "/api/spawn", {"serverName": server_name, "config": config}))


async def cli_tools(url: str, target: str, by_server: bool):
    path = f"/api/tools/server/{target}" if by_server else f"/api/tools/{target}"
    data = await request_json(url, "GET", path)
    if data is None:
        return
    print(f"Tools for {data['serverName']} ({data['status']}):")
    for tool in data.get("tools", {}).values():
        print(f"  - {tool['name']}: {tool.get('description') or 'No description'}")


async def cli_execute(url: str, target: str, tool: str, raw_args: Optional[str], by_server: bool):
    try:
        args = json.loads(raw_args) if raw_args else {}
    except json.JSONDecodeError as e:
        print(f"❌ --args must be a JSON object: {e}")
        return
    path = f"/api/execute/server/{target}" if by_server else f"/api/execute/{target}"
    print_json(await request_json(url, "POST", path, {"toolName": tool, "args": args}))


async def cli_close(url: str, target: str, by_server: bool):
    path = f"/api/close/server/{target}" if by_server else f"/api/close/{target}"
    data = await request_json(url, "DELETE", path)
    if data:
        print(f"✅ Closed session {data['sessionId']}")


async def cli_webhook_create(url: str, description: Optional[str]):
    data = await request_json(url, "POST", "/api/webhook/session", {"description": description})
    if data:
        session = data["session"]
        print(f"✅ Webhook session {session['id']}")
        print(f"   webhook URL: {session['webhookUrl']}")
        print(f"   poll URL:    {session['pollUrl']}")


async def cli_webhook_poll(url: str, session_id: str, limit: Optional[int]):
    params = {"limit": str(limit)} if limit else None
    print_json(await request_json(url, "GET", f"/api/webhook/poll/{session_id}", params=params))


async def cli_providers(url: str):
    data = await request_json(url, "GET", "/api/oauth/providers")
    if data is None:
        return
    for provider in data.get("providers", []):
        icon = "✅" if provider["configured"] else "❌"
        print(f"{icon} {provider['name']}: {' '.join(provider['scopes'])}")


def main():
    """Main entry point for CLI HTTP client"""
    parser = argparse.ArgumentParser(description='Relay Manager HTTP Client')
    parser.add_argument('--url', default=DEFAULT_URL, help=f'Relay base URL (default: {DEFAULT_URL})')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('health', help='Check relay health')
    subparsers.add_parser('sessions', help='List MCP sessions')
    subparsers.add_parser('providers', help='List OAuth providers')

    spawn_parser = subparsers.add_parser('spawn', help='Spawn a stdio MCP server')
    spawn_parser.add_argument('server', help='Server name')
    spawn_parser.add_argument('server_command', metavar='command', help='Executable to launch')
    spawn_parser.add_argument('args', nargs=argparse.REMAINDER, help='Arguments for the executable')
    spawn_parser.add_argument('--env', action='append', metavar='KEY=VALUE', help='Extra environment variable')
    spawn_parser.add_argument('--cwd', help='Working directory for the server')

    for name, help_text in (('tools', 'List tools'), ('close', 'Close a session')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('target', help='Session id, or server name with --server')
        sub.add_argument('--server', action='store_true', help='Treat target as a server name')

    execute_parser = subparsers.add_parser('execute', help='Execute a tool')
    execute_parser.add_argument('target', help='Session id, or server name with --server')
    execute_parser.add_argument('tool', help='Tool name')
    execute_parser.add_argument('--args', help='Tool arguments as a JSON object')
    execute_parser.add_argument('--server', action='store_true', help='Treat target as a server name')

    webhook_create = subparsers.add_parser('webhook-create', help='Create a webhook session')
    webhook_create.add_argument('--description', help='Free-form description')

    webhook_poll = subparsers.add_parser('webhook-poll', help='Poll queued webhooks')
    webhook_poll.add_argument('session', help='Webhook session id')
    webhook_poll.add_argument('--limit', type=int, help='Maximum events to return')

    args = parser.parse_args()

    if args.command == 'health':
        asyncio.run(cli_health(args.url))
    elif args.command == 'sessions':
        asyncio.run(cli_sessions(args.url))
    elif args.command == 'providers':
        asyncio.run(cli_providers(args.url))
    elif args.command == 'spawn':
        asyncio.run(cli_spawn(args.url, args.server, args.server_command, args.args, args.env, args.cwd))
    elif args.command == 'tools':
        asyncio.run(cli_tools(args.url, args.target, args.server))
    elif args.command == 'execute':
        asyncio.run(cli_execute(args.url, args.target, args.tool, args.args, args.server))
    elif args.command == 'close':
        asyncio.run(cli_close(args.url, args.target, args.server))
    elif args.command == 'webhook-create':
        asyncio.run(cli_webhook_create(args.url, args.description))
    elif args.command == 'webhook-poll':
        asyncio.run(cli_webhook_poll(args.url, args.session, args.limit))
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
