#!/usr/bin/env python3
"""
HTTP API Handlers for the OAuth/Webhook/MCP relay
Services live on the aiohttp application; handlers translate their errors
into JSON responses.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Union

import aiohttp_cors
import httpx
from aiohttp import web
from pydantic import BaseModel, ValidationError, field_validator

from .config import RelayConfig
from .errors import (
    MissingCredentialsError,
    OAuthCallbackError,
    RelayError,
    UnsupportedProviderError,
)
from .kv_store import KeyValueStore, Sweeper, create_store
from .oauth_proxy import OAuthProxy
from .oauth_sessions import OAuthFlowState, OAuthSessionStore, OAuthTokenStore, RelayModel
from .pages import error_page, project_success_page, success_page
from .process_manager import ExecuteRequest, MCPProcessManager, MCPStatus, SpawnRequest
from .project_store import ProjectStore
from .providers import get_supported_providers
from .webhook_relay import WebhookRelay, build_poll_url, build_webhook_url, filter_headers

logger = logging.getLogger(__name__)

CONFIG = web.AppKey("config", RelayConfig)
STORE = web.AppKey("store", KeyValueStore)
OAUTH_PROXY = web.AppKey("oauth_proxy", OAuthProxy)
PROJECTS = web.AppKey("projects", ProjectStore)
WEBHOOKS = web.AppKey("webhooks", WebhookRelay)
PROCESSES = web.AppKey("processes", MCPProcessManager)
SWEEPERS = web.AppKey("sweepers", list)
STARTED_AT = web.AppKey("started_at", float)

NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}


# ===== REQUEST BODIES =====

def _split_scopes(value):
    if isinstance(value, str):
        return [scope.strip() for scope in value.split(",") if scope.strip()]
    return value


class DynamicFlowRequest(RelayModel):
    provider: str
    client_id: str
    client_secret: str
    scopes: Optional[List[str]] = None
    app_id: Optional[str] = None
    app_name: Optional[str] = None
    webcontainer_id: Optional[str] = None
    redirect_after_auth: bool = False

    @field_validator("scopes", mode="before")
    @classmethod
    def split_scopes(cls, value):
        return _split_scopes(value)


class RefreshRequest(RelayModel):
    provider: str
    refresh_token: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class ProjectRegistration(RelayModel):
    client_id: str
    client_secret: str
    app_id: str = ""
    app_name: str = ""
    provider: str = "zoom"


class WebhookSessionRequest(RelayModel):
    webcontainer_id: Optional[str] = None
    description: Optional[str] = None


# ===== HELPERS =====

def public_url(request: web.Request) -> str:
    """Configured public base URL, else the origin the request came in on"""
    configured = request.app[CONFIG].server.public_url
    if configured:
        return configured.rstrip("/")
    return f"{request.scheme}://{request.host}"


async def read_json(request: web.Request, optional: bool = False) -> Dict[str, Any]:
    if not request.body_exists:
        if optional:
            return {}
        raise ValueError("Request body is required")
    try:
        data = await request.json()
    except json.JSONDecodeError as e:
        if optional:
            return {}
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def invalid_request(details: Union[str, Exception]) -> web.Response:
    return web.json_response({"error": "Invalid request", "details": str(details)}, status=400)


def error_response(error: RelayError, **extra) -> web.Response:
    return web.json_response({"error": str(error), **extra}, status=error.status)


# ===== OAUTH PROXY =====

async def oauth_start_handler(request):
    """GET /api/oauth/proxy/start?provider=&scopes=&webcontainerId= - redirect to the provider"""
    provider = request.query.get("provider")
    if not provider:
        return web.json_response({
            "error": "Missing provider parameter",
            "supportedProviders": get_supported_providers(),
        }, status=400)

    scopes = _split_scopes(request.query.get("scopes") or "") or None
    try:
        session, url = await request.app[OAUTH_PROXY].start_flow(
            provider, scopes, public_url(request), webcontainer_id=request.query.get("webcontainerId")
        )
    except UnsupportedProviderError as e:
        return error_response(e, supportedProviders=get_supported_providers())
    except MissingCredentialsError as e:
        logger.error(f"OAuth start failed: {e}")
        return error_response(e, hint=e.hint)

    raise web.HTTPFound(url)


async def oauth_callback_handler(request):
    """GET /api/oauth/proxy/callback - provider redirect target, renders an HTML page"""
    query = request.query
    try:
        session, tokens = await request.app[OAUTH_PROXY].handle_callback(
            query.get("code"), query.get("state"), query.get("error"), query.get("error_description")
        )
    except OAuthCallbackError as e:
        return error_page(e.code, e.description)
    except RelayError as e:
        logger.error(f"OAuth callback error: {e}")
        return error_page("server_error", str(e))

    return success_page(session.provider, session.id, session.webcontainer_id, tokens)


DYNAMIC_ENDPOINT_INFO = {
    "endpoint": "/api/oauth/proxy/dynamic",
    "methods": ["GET", "POST"],
    "description": "Start OAuth flow with dynamic credentials for newly created apps",
    "usage": {
        "GET": "Add query params: ?provider=zoom&clientId=XXX&clientSecret=YYY&scopes=...",
        "POST": "Send JSON body with same fields",
    },
    "requestSchema": {
        "provider": {"type": "string", "required": True, "description": "OAuth provider (zoom, github, gitlab, google)"},
        "clientId": {"type": "string", "required": True, "description": "OAuth client ID"},
        "clientSecret": {"type": "string", "required": True, "description": "OAuth client secret"},
        "scopes": {"type": "string or comma-separated string", "required": False, "description": "OAuth scopes"},
        "appId": {"type": "string", "required": False, "description": "App ID for reference"},
        "appName": {"type": "string", "required": False, "description": "App name for reference"},
        "webcontainerId": {"type": "string", "required": False, "description": "WebContainer ID"},
    },
}


async def _start_dynamic(request, body: DynamicFlowRequest):
    return await request.app[OAUTH_PROXY].start_dynamic_flow(
        body.provider, body.client_id, body.client_secret, body.scopes, public_url(request),
        app_id=body.app_id, app_name=body.app_name, webcontainer_id=body.webcontainer_id,
    )


async def oauth_dynamic_get_handler(request):
    """GET /api/oauth/proxy/dynamic - endpoint description, or redirect when params are given"""
    if not request.query.get("provider"):
        return web.json_response({**DYNAMIC_ENDPOINT_INFO, "supportedProviders": get_supported_providers()})

    try:
        body = DynamicFlowRequest.model_validate(dict(request.query))
        session, url = await _start_dynamic(request, body)
    except ValidationError as e:
        return invalid_request(e)
    except UnsupportedProviderError as e:
        return error_response(e, supportedProviders=get_supported_providers())

    raise web.HTTPFound(url)


async def oauth_dynamic_post_handler(request):
    """POST /api/oauth/proxy/dynamic - start a flow with caller-supplied credentials"""
    try:
        body = DynamicFlowRequest.model_validate(await read_json(request))
        session, url = await _start_dynamic(request, body)
    except (ValueError, ValidationError) as e:
        return web.json_response({"success": False, "error": "Invalid request", "details": str(e)}, status=400)
    except UnsupportedProviderError as e:
        return web.json_response({
            "success": False,
            "error": str(e),
            "supportedProviders": get_supported_providers(),
        }, status=e.status)
    except Exception as e:
        logger.error(f"Dynamic OAuth error: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=500)

    if body.redirect_after_auth:
        raise web.HTTPFound(url)

    return web.json_response({
        "success": True,
        "authorizationUrl": url,
        "sessionId": session.id,
        "state": session.state,
    })


async def oauth_session_handler(request):
    """GET /api/oauth/proxy/session/{sessionId} - flow status"""
    session = await request.app[OAUTH_PROXY].get_session(request.match_info["session_id"])
    if session is None:
        return web.json_response({"error": "Session not found or expired"}, status=404)
    return web.json_response({"success": True, "session": session.summary()})


async def oauth_tokens_handler(request):
    """GET /api/oauth/proxy/tokens/{sessionId} - one-time token pickup"""
    proxy = request.app[OAUTH_PROXY]
    session_id = request.match_info["session_id"]
    session = await proxy.get_session(session_id)
    if session is None:
        return web.json_response({"error": "Session not found or expired"}, status=404)

    if session.status in (OAuthFlowState.FAILED, OAuthFlowState.EXPIRED):
        return web.json_response({"success": False, "status": session.status.value, "error": session.error})

    if session.status != OAuthFlowState.COMPLETED:
        return web.json_response({
            "success": False,
            "pending": True,
            "status": session.status.value,
            "message": "Authorization not yet completed",
        })

    tokens = await proxy.take_tokens(session_id)
    if tokens is None:
        return web.json_response({
            "success": False,
            "pending": False,
            "status": session.status.value,
            "message": "Tokens were already retrieved. Please authorize again if needed.",
        })

    return web.json_response({
        "success": True,
        "provider": session.provider,
        "tokens": tokens.model_dump(mode="json"),
    }, headers=NO_CACHE)


async def oauth_refresh_handler(request):
    """POST /api/oauth/proxy/refresh - trade a refresh token"""
    try:
        body = RefreshRequest.model_validate(await read_json(request))
    except (ValueError, ValidationError) as e:
        return invalid_request(e)

    try:
        tokens = await request.app[OAUTH_PROXY].refresh_tokens(
            body.provider, body.refresh_token, body.client_id, body.client_secret
        )
    except MissingCredentialsError as e:
        return error_response(e, hint=e.hint)
    except RelayError as e:
        logger.error(f"Token refresh failed for {body.provider}: {e}")
        return error_response(e)

    return web.json_response({"success": True, "tokens": tokens.model_dump(mode="json")}, headers=NO_CACHE)


async def providers_handler(request):
    """GET /api/oauth/providers - supported providers and whether each is configured"""
    return web.json_response({"success": True, "providers": request.app[OAUTH_PROXY].provider_overview()})


# ===== PROJECTS =====

async def project_register_handler(request):
    """POST /api/oauth/projects - store an app's credentials for marketplace installs"""
    try:
        body = ProjectRegistration.model_validate(await read_json(request))
    except (ValueError, ValidationError) as e:
        return invalid_request(e)

    projects = request.app[PROJECTS]
    project = await projects.register(
        body.client_id, body.client_secret, app_id=body.app_id, app_name=body.app_name, provider=body.provider
    )
    base = public_url(request)
    return web.json_response({
        "success": True,
        "projectId": project.project_id,
        "redirectUri": projects.redirect_uri(project.project_id, base),
        "tokensUrl": f"{base}/api/oauth/tokens/{project.project_id}",
        "expiresAt": project.expires_at,
    }, status=201)


async def project_list_handler(request):
    """GET /api/oauth/projects"""
    projects = await request.app[PROJECTS].list_projects()
    return web.json_response({
        "success": True,
        "count": len(projects),
        "projects": projects,
        "note": "To retrieve tokens for a project, use GET /api/oauth/tokens/{projectId}",
    })


async def project_delete_handler(request):
    """DELETE /api/oauth/projects/{projectId}"""
    project_id = request.match_info["project_id"]
    if not await request.app[PROJECTS].delete(project_id):
        return web.json_response({"error": "Project not found"}, status=404)
    return web.json_response({"success": True, "projectId": project_id})


async def project_callback_handler(request):
    """GET /api/oauth/proxy/callback/{projectId} - marketplace install redirect target"""
    project_id = request.match_info["project_id"]
    query = request.query
    try:
        project = await request.app[OAUTH_PROXY].handle_project_callback(
            project_id, query.get("code"), public_url(request),
            error=query.get("error"), error_description=query.get("error_description"),
        )
    except OAuthCallbackError as e:
        return error_page(e.code, e.description)
    except RelayError as e:
        logger.error(f"Project callback error for {project_id}: {e}")
        return error_page("server_error", str(e))

    return project_success_page(project.app_name, project.project_id, project.provider)


async def project_tokens_handler(request):
    """GET /api/oauth/tokens/{projectId} - one-time token pickup for a project"""
    projects = request.app[PROJECTS]
    project_id = request.match_info["project_id"]

    credentials = await projects.get_credentials(project_id)
    if credentials is None:
        return web.json_response({
            "success": False,
            "error": "Project not found or expired",
            "hint": "The project may have expired. Please register the app again.",
        }, status=404)

    project = {"projectId": project_id, "appId": credentials.app_id, "appName": credentials.app_name}

    tokens = await projects.take_tokens(project_id)
    if tokens is None:
        return web.json_response({
            "success": False,
            "pending": True,
            "message": "Authorization not yet completed. Please authorize the app in the provider's marketplace.",
            "project": project,
        })

    return web.json_response({
        "success": True,
        "tokens": {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "token_type": tokens.token_type,
            "expires_in": tokens.expires_in,
            "scope": tokens.scope,
        },
        "project": project,
        "note": "Tokens have been cleared from the server. Store them securely in your application.",
    }, headers=NO_CACHE)


# ===== WEBHOOKS =====

def _session_view(request, session, **extra) -> Dict[str, Any]:
    view = session.to_public(exclude={"total_received"})
    view["webhookUrl"] = build_webhook_url(public_url(request), session.id)
    view.update(extra)
    return view


async def webhook_session_create_handler(request):
    """POST /api/webhook/session - create a relay session"""
    try:
        body = WebhookSessionRequest.model_validate(await read_json(request, optional=True))
    except (ValueError, ValidationError) as e:
        return invalid_request(e)

    session = await request.app[WEBHOOKS].create_session(body.webcontainer_id, body.description)
    view = _session_view(request, session, pollUrl=build_poll_url(public_url(request), session.id))
    return web.json_response({"success": True, "session": view}, status=201)


async def webhook_session_get_handler(request):
    """GET /api/webhook/session?sessionId= or ?list=true"""
    relay = request.app[WEBHOOKS]

    if request.query.get("list") == "true":
        sessions = await relay.list_sessions()
        return web.json_response({
            "success": True,
            "sessions": [s.to_public(exclude={"total_received"}) for s in sessions],
            "count": len(sessions),
        })

    session_id = request.query.get("sessionId")
    if not session_id:
        return web.json_response({"error": "Missing sessionId parameter"}, status=400)

    session = await relay.get_session(session_id)
    if session is None:
        return web.json_response({"error": "Session not found or expired"}, status=404)

    return web.json_response({
        "success": True,
        "session": _session_view(request, session, queue=await relay.queue_status(session_id)),
    })


async def webhook_session_delete_handler(request):
    """DELETE /api/webhook/session?sessionId= (or JSON body {sessionId})"""
    session_id = request.query.get("sessionId")
    if not session_id:
        try:
            session_id = (await read_json(request, optional=True)).get("sessionId")
        except ValueError:
            session_id = None
    if not session_id:
        return web.json_response({"error": "Missing sessionId"}, status=400)

    await request.app[WEBHOOKS].delete_session(session_id)
    return web.json_response({"success": True, "message": "Session deleted"})


async def _read_text(request) -> str:
    """Request body as text; undecodable bytes and unknown charsets never fail the delivery"""
    raw = await request.read()
    try:
        return raw.decode(request.charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


async def webhook_ingress_handler(request):
    """* /api/webhook/proxy/{sessionId}[/{tail}] - queue whatever the sender posts"""
    session_id = request.match_info["session_id"]
    tail = request.match_info.get("tail", "")
    body = None
    if request.method not in ("GET", "HEAD"):
        body = await _read_text(request) or None

    event = await request.app[WEBHOOKS].add_event(
        session_id,
        request.method,
        "/" + tail if tail else "/",
        filter_headers(request.headers),
        dict(request.query),
        body,
        request.headers.get("Content-Type"),
    )
    if event is None:
        return web.json_response({"error": "Invalid or expired session"}, status=404)

    logger.info(f"Webhook {event.id} queued for session {session_id}")
    return web.json_response({
        "success": True,
        "eventId": event.id,
        "message": "Webhook received and queued",
    })


def _limit(request) -> Optional[int]:
    raw = request.query.get("limit")
    if not raw:
        return None
    limit = int(raw)
    if limit < 1:
        raise ValueError("limit must be a positive integer")
    return limit


async def webhook_poll_handler(request):
    """GET /api/webhook/poll/{sessionId}?limit= - remove and return pending events"""
    relay = request.app[WEBHOOKS]
    session_id = request.match_info["session_id"]
    if await relay.get_session(session_id) is None:
        return web.json_response({"error": "Invalid or expired session"}, status=404)

    try:
        limit = _limit(request)
    except ValueError as e:
        return invalid_request(e)

    events = await relay.poll(session_id, limit)
    session = await relay.get_session(session_id)
    return web.json_response({
        "success": True,
        "events": [event.to_public() for event in events],
        "count": len(events),
        "remaining": await relay.pending_count(session_id),
        "totalReceived": session.total_received if session else len(events),
    }, headers=NO_CACHE)


async def webhook_peek_handler(request):
    """GET /api/webhook/peek/{sessionId}?limit= - pending events without removing them"""
    relay = request.app[WEBHOOKS]
    session_id = request.match_info["session_id"]
    if await relay.get_session(session_id) is None:
        return web.json_response({"error": "Invalid or expired session"}, status=404)

    try:
        limit = _limit(request)
    except ValueError as e:
        return invalid_request(e)

    events = await relay.peek(session_id, limit)
    return web.json_response({
        "success": True,
        "events": [event.to_public() for event in events],
        "count": len(events),
    }, headers=NO_CACHE)


# ===== MCP PROCESSES =====

async def health_handler(request):
    """GET /health"""
    return web.json_response({
        "status": "ok",
        "activeSessions": request.app[PROCESSES].active_session_count(),
        "uptime": int(time.time() - request.app[STARTED_AT]),
    })


async def sessions_handler(request):
    """GET /api/sessions"""
    sessions = request.app[PROCESSES].list_sessions()
    return web.json_response({"sessions": [s.to_public() for s in sessions]})


async def spawn_handler(request):
    """POST /api/spawn {serverName, config{command, args, cwd, env}}"""
    try:
        body = SpawnRequest.model_validate(await read_json(request))
    except (ValueError, ValidationError) as e:
        return invalid_request(e)

    try:
        info = await request.app[PROCESSES].spawn(body.server_name, body.config)
    except Exception as e:
        logger.error(f"Spawn error: {e}")
        return web.json_response({"error": "Failed to spawn server", "details": str(e)}, status=500)

    return web.json_response({
        "sessionId": info.session_id,
        "serverName": info.server_name,
        "status": info.status.value,
        "error": info.error,
    })


def _tools_view(manager: MCPProcessManager, info) -> Dict[str, Any]:
    tools = {}
    if info.status == MCPStatus.RUNNING:
        tools = {tool["name"]: tool for tool in manager.get_tools(info.session_id)}
    return {
        "sessionId": info.session_id,
        "serverName": info.server_name,
        "status": info.status.value,
        "tools": tools,
        "error": info.error,
    }


async def tools_handler(request):
    """GET /api/tools/{sessionId}"""
    manager = request.app[PROCESSES]
    info = manager.get_session(request.match_info["session_id"])
    if info is None:
        return web.json_response({"error": "Session not found"}, status=404)
    return web.json_response(_tools_view(manager, info))


async def tools_by_server_handler(request):
    """GET /api/tools/server/{serverName}"""
    manager = request.app[PROCESSES]
    info = manager.get_session_by_server_name(request.match_info["server_name"])
    if info is None:
        return web.json_response({"error": "Server not found or not running"}, status=404)
    return web.json_response(_tools_view(manager, info))


async def _execute(request, session_id: str):
    try:
        body = ExecuteRequest.model_validate(await read_json(request))
    except (ValueError, ValidationError) as e:
        return invalid_request(e)

    try:
        result = await request.app[PROCESSES].execute(session_id, body.tool_name, body.args)
    except RelayError as e:
        logger.error(f"Execute error for {session_id}/{body.tool_name}: {e}")
        return web.json_response({"error": "Failed to execute tool", "details": str(e)}, status=e.status)

    return web.json_response({"sessionId": session_id, "toolName": body.tool_name, "result": result})


async def execute_handler(request):
    """POST /api/execute/{sessionId} {toolName, args}"""
    return await _execute(request, request.match_info["session_id"])


async def execute_by_server_handler(request):
    """POST /api/execute/server/{serverName} {toolName, args}"""
    info = request.app[PROCESSES].get_session_by_server_name(request.match_info["server_name"])
    if info is None:
        return web.json_response({"error": "Server not found or not running"}, status=404)
    return await _execute(request, info.session_id)


async def close_handler(request):
    """DELETE /api/close/{sessionId}"""
    session_id = request.match_info["session_id"]
    if not await request.app[PROCESSES].close(session_id):
        return web.json_response({"error": "Session not found"}, status=404)
    return web.json_response({"sessionId": session_id, "status": "closed"})


async def close_by_server_handler(request):
    """DELETE /api/close/server/{serverName}"""
    manager = request.app[PROCESSES]
    info = manager.get_session_by_server_name(request.match_info["server_name"])
    if info is None:
        return web.json_response({"error": "Server not found"}, status=404)
    await manager.close(info.session_id)
    return web.json_response({"sessionId": info.session_id, "status": "closed"})


# ===== APPLICATION =====

@web.middleware
async def logging_middleware(request, handler):
    start_time = asyncio.get_running_loop().time()
    try:
        response = await handler(request)
    except web.HTTPException as e:
        process_time = asyncio.get_running_loop().time() - start_time
        logger.info(f"{request.method} {request.path} - {e.status} - {process_time:.3f}s")
        raise
    except Exception as e:
        process_time = asyncio.get_running_loop().time() - start_time
        logger.error(f"{request.method} {request.path} - ERROR: {e} - {process_time:.3f}s")
        raise
    process_time = asyncio.get_running_loop().time() - start_time
    logger.info(f"{request.method} {request.path} - {response.status} - {process_time:.3f}s")
    return response


def setup_routes(app):
    """Setup all API routes with CORS support"""
    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*",
        )
    })

    # OAuth proxy
    cors.add(app.router.add_get("/api/oauth/proxy/start", oauth_start_handler))
    cors.add(app.router.add_get("/api/oauth/proxy/callback", oauth_callback_handler))
    cors.add(app.router.add_get("/api/oauth/proxy/callback/{project_id}", project_callback_handler))
    cors.add(app.router.add_get("/api/oauth/proxy/dynamic", oauth_dynamic_get_handler))
    cors.add(app.router.add_post("/api/oauth/proxy/dynamic", oauth_dynamic_post_handler))
    cors.add(app.router.add_get("/api/oauth/proxy/session/{session_id}", oauth_session_handler))
    cors.add(app.router.add_get("/api/oauth/proxy/tokens/{session_id}", oauth_tokens_handler))
    cors.add(app.router.add_post("/api/oauth/proxy/refresh", oauth_refresh_handler))
    cors.add(app.router.add_get("/api/oauth/providers", providers_handler))

    # Projects
    cors.add(app.router.add_post("/api/oauth/projects", project_register_handler))
    cors.add(app.router.add_get("/api/oauth/projects", project_list_handler))
    cors.add(app.router.add_delete("/api/oauth/projects/{project_id}", project_delete_handler))
    cors.add(app.router.add_get("/api/oauth/tokens/{project_id}", project_tokens_handler))

    # Webhooks
    cors.add(app.router.add_post("/api/webhook/session", webhook_session_create_handler))
    cors.add(app.router.add_get("/api/webhook/session", webhook_session_get_handler))
    cors.add(app.router.add_delete("/api/webhook/session", webhook_session_delete_handler))
    cors.add(app.router.add_get("/api/webhook/poll/{session_id}", webhook_poll_handler))
    cors.add(app.router.add_get("/api/webhook/peek/{session_id}", webhook_peek_handler))
    # ingress accepts any method from the sender, so it stays outside CORS
    app.router.add_route("*", "/api/webhook/proxy/{session_id}", webhook_ingress_handler)
    app.router.add_route("*", "/api/webhook/proxy/{session_id}/{tail:.*}", webhook_ingress_handler)

    # MCP processes
    cors.add(app.router.add_get("/health", health_handler))
    cors.add(app.router.add_get("/api/sessions", sessions_handler))
    cors.add(app.router.add_post("/api/spawn", spawn_handler))
    cors.add(app.router.add_get("/api/tools/server/{server_name}", tools_by_server_handler))
    cors.add(app.router.add_get("/api/tools/{session_id}", tools_handler))
    cors.add(app.router.add_post("/api/execute/server/{server_name}", execute_by_server_handler))
    cors.add(app.router.add_post("/api/execute/{session_id}", execute_handler))
    cors.add(app.router.add_delete("/api/close/server/{server_name}", close_by_server_handler))
    cors.add(app.router.add_delete("/api/close/{session_id}", close_handler))


async def _start_background(app):
    for sweeper in app[SWEEPERS]:
        sweeper.start()


async def _shutdown_services(app):
    for sweeper in app[SWEEPERS]:
        await sweeper.stop()
    await app[PROCESSES].close_all()
    await app[OAUTH_PROXY].close()
    await app[STORE].close()
    logger.info("Relay services shut down")


def create_app(config: RelayConfig, store: Optional[KeyValueStore] = None,
               http: Optional[httpx.AsyncClient] = None,
               processes: Optional[MCPProcessManager] = None) -> web.Application:
    """Create the aiohttp application with every relay service attached"""
    app = web.Application(middlewares=[logging_middleware])

    store = store or create_store(config.store)
    sessions = OAuthSessionStore(store, config.oauth)
    projects = ProjectStore(store, config.projects)
    webhooks = WebhookRelay(store, config.webhooks)
    processes = processes or MCPProcessManager(config.mcp)

    app[CONFIG] = config
    app[STORE] = store
    app[PROJECTS] = projects
    app[WEBHOOKS] = webhooks
    app[PROCESSES] = processes
    app[OAUTH_PROXY] = OAuthProxy(config, sessions, OAuthTokenStore(store, config.oauth), projects, http=http)
    app[STARTED_AT] = time.time()

    store_sweeper = Sweeper(config.store.sweep_interval)
    store_sweeper.register("store", store.sweep)
    store_sweeper.register("oauth_sessions", sessions.sweep)
    store_sweeper.register("webhooks", webhooks.sweep)
    store_sweeper.register("projects", projects.sweep)
    mcp_sweeper = Sweeper(config.mcp.sweep_interval)
    mcp_sweeper.register("mcp", processes.check_sessions)
    app[SWEEPERS] = [store_sweeper, mcp_sweeper]

    setup_routes(app)
    app.on_startup.append(_start_background)
    app.on_cleanup.append(_shutdown_services)
    return app
