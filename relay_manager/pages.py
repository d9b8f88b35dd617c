#!/usr/bin/env python3
"""
OAuth callback pages
The browser lands on these after the provider redirect. They notify the app
that opened the flow via postMessage (popup or iframe) or a BroadcastChannel.
"""

import html
import json
from typing import Any, Dict, Optional

from aiohttp import web

from .oauth_sessions import OAuthTokens

BROADCAST_CHANNEL = "oauth-proxy"

_STYLE = """
        body { font-family: Arial, sans-serif; text-align: center; margin-top: 50px; }
        .success { color: #4CAF50; }
        .error { color: #f44336; }
        .container { max-width: 560px; margin: 0 auto; padding: 20px; }
        .description { white-space: pre-wrap; text-align: left; background: #f5f5f5; padding: 12px; }
        code { background: #f5f5f5; padding: 2px 4px; }
"""


def script_json(payload: Dict[str, Any]) -> str:
    """JSON that is safe to embed inside a <script> element"""
    return (
        json.dumps(payload)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def _notify_script(message: Dict[str, Any], auto_close: bool) -> str:
    close = "setTimeout(function () { window.close(); }, 2000);" if auto_close else ""
    return f"""
    <script>
      (function () {{
        var message = {script_json(message)};
        if (window.opener) {{
          window.opener.postMessage(message, '*');
          {close}
        }} else if (window.parent !== window) {{
          window.parent.postMessage(message, '*');
        }} else if (typeof BroadcastChannel !== 'undefined') {{
          var channel = new BroadcastChannel({json.dumps(BROADCAST_CHANNEL)});
          channel.postMessage(message);
          channel.close();
          {close}
        }}
      }})();
    </script>"""


def _page(title: str, body: str, script: str) -> web.Response:
    text = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>{html.escape(title)}</title>
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
{body}
    </div>{script}
</body>
</html>
"""
    return web.Response(text=text, content_type="text/html")


def success_page(provider: str, session_id: str, webcontainer_id: Optional[str],
                 tokens: OAuthTokens) -> web.Response:
    message = {
        "type": "oauth-response",
        "success": True,
        "provider": provider,
        "sessionId": session_id,
        "webcontainerId": webcontainer_id,
        "tokens": {
            "access_token": tokens.access_token,
            "token_type": tokens.token_type,
            "expires_in": tokens.expires_in,
            "scope": tokens.scope,
        },
    }
    body = f"""        <h2 class="success">Authorization Successful!</h2>
        <p>You have successfully authorized with <strong>{html.escape(provider)}</strong>.</p>
        <p>This window will close automatically...</p>"""
    return _page("Authorization Successful", body, _notify_script(message, auto_close=True))


def error_page(error: str, description: str) -> web.Response:
    message = {
        "type": "oauth-response",
        "success": False,
        "error": error,
        "errorDescription": description,
    }
    body = f"""        <h2 class="error">Authorization Failed</h2>
        <p>Error: <code>{html.escape(error)}</code></p>
        <div class="description">{html.escape(description)}</div>
        <p><button onclick="window.close()">Close Window</button></p>"""
    return _page("Authorization Failed", body, _notify_script(message, auto_close=False))


def project_success_page(app_name: str, project_id: str, provider: str = "zoom") -> web.Response:
    # tokens stay server-side until picked up via /api/oauth/tokens/{project_id}
    message = {
        "type": "oauth-response",
        "success": True,
        "provider": provider,
        "projectId": project_id,
        "appName": app_name,
        "tokenStored": True,
    }
    body = f"""        <h2 class="success">App Authorized!</h2>
        <p><strong>{html.escape(app_name or project_id)}</strong> has been authorized.</p>
        <p>Return to your app to continue. The tokens will be retrieved by your application.</p>
        <p><button onclick="window.close()">Close Window</button></p>"""
    return _page("App Authorized", body, _notify_script(message, auto_close=False))
