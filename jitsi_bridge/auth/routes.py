"""
Authentication routes for OIDC login and callback handling.

This module implements the OAuth 2.0 / OIDC authorization code flow and
hands the user over to Jitsi Meet with a signed session token.
"""

import html
import logging
import re
import secrets
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from jitsi_bridge.auth.exceptions import BridgeError, InvalidState
from jitsi_bridge.auth.flow import FlowController

logger = logging.getLogger(__name__)

HANDSHAKE_COOKIE = "jitsi_bridge_handshake"
ROOM_NAME_PATTERN = re.compile(r"^[^/?#\s]{1,128}$")


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)

room_router = APIRouter(
    tags=["rooms"],
)


def _get_flow(request: Request) -> FlowController:
    return request.app.state.flow


# =============================================================================
# Login Endpoints
# =============================================================================

async def _start_login(request: Request, room: Optional[str]) -> HTMLResponse:
    """
    Start a handshake and redirect the browser to the identity provider.

    The state token is also set as an HttpOnly cookie so the callback can
    be tied to the browser that started the login.
    """
    if room is not None and not ROOM_NAME_PATTERN.match(room):
        return _render_error_page(
            title="Invalid Request",
            message="Invalid meeting room name.",
            show_retry=False,
        )

    flow = _get_flow(request)
    settings = request.app.state.settings

    try:
        authorization_url, handshake = await flow.initiate(room=room)
    except BridgeError as e:
        logger.error(f"Unable to start login: {e.message}")
        return _render_error_page(
            title=e.title,
            message="The login service is not available right now.",
            show_retry=False,
            status_code=e.status_code,
        )

    response = RedirectResponse(url=authorization_url, status_code=302)
    response.set_cookie(
        HANDSHAKE_COOKIE,
        handshake.state_token,
        max_age=settings.HANDSHAKE_TTL_SECONDS,
        path="/auth",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    return response


@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    room: Optional[str] = Query(None, description="Meeting room to join after login"),
):
    """
    Initiate OIDC login flow.

    Query Parameters:
        room: Optional meeting room; without it the user lands on the Jitsi
              start page

    Returns:
        RedirectResponse to the provider authorization endpoint
    """
    return await _start_login(request, room)


@room_router.get("/room/{name}", response_class=RedirectResponse)
async def room(request: Request, name: str):
    """Initiate OIDC login for a specific meeting room."""
    return await _start_login(request, name)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback", response_class=HTMLResponse)
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
):
    """
    Handle the OAuth callback from the identity provider.

    On success the browser is redirected to the Jitsi meeting with
    ``?jwt=<token>``. Every failure renders an error page; the handshake
    is discarded and the user has to log in again.
    """
    flow = _get_flow(request)
    settings = request.app.state.settings

    # Handle authentication errors reported by the provider
    if error:
        await flow.abandon(state)
        logger.warning("Provider returned an error", extra={"provider_error": error})
        return _render_error_page(
            title="Authentication Failed",
            message=f"Unable to authenticate: {error_description or error}",
        )

    if not code or not state:
        await flow.abandon(state)
        return _render_error_page(
            title="Invalid Request",
            message="Missing required parameters (code or state)",
        )

    if settings.BIND_HANDSHAKE_COOKIE and not _cookie_matches_state(request, state):
        await flow.abandon(state)
        e = InvalidState("Login was started in a different browser or the session expired.")
        logger.warning("Handshake cookie does not match state")
        return _render_bridge_error(e)

    try:
        result = await flow.complete(code=code, state=state)
    except BridgeError as e:
        return _render_bridge_error(e)

    response = RedirectResponse(url=result.redirect_url, status_code=302)
    response.delete_cookie(HANDSHAKE_COOKIE, path="/auth")
    return response


def _cookie_matches_state(request: Request, state: str) -> bool:
    cookie = request.cookies.get(HANDSHAKE_COOKIE)
    if cookie is None:
        return False
    return secrets.compare_digest(cookie.encode("utf-8"), state.encode("utf-8"))


# =============================================================================
# HTML Response Templates
# =============================================================================

def _render_bridge_error(e: BridgeError) -> HTMLResponse:
    response = _render_error_page(
        title=e.title,
        message=e.message,
        status_code=e.status_code,
    )
    response.delete_cookie(HANDSHAKE_COOKIE, path="/auth")
    return response


def _render_error_page(
    title: str,
    message: str,
    show_retry: bool = True,
    status_code: int = 400
) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no tokens or PII)
        show_retry: Whether to show retry button
        status_code: HTTP status code

    Returns:
        HTMLResponse with error information
    """
    title = html.escape(title)
    message = html.escape(message)

    retry_button = """
        <a href="/auth/login" class="button">
            Try Again
        </a>
    """ if show_retry else ""

    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{title}</title>
        <style>
            * {{ margin: 0; padding: 0; box-sizing: border-box; }}
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: #1f2937;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                padding: 20px;
            }}
            .container {{
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 500px;
                width: 100%;
                text-align: center;
            }}
            h1 {{
                color: #1f2937;
                font-size: 24px;
                margin-bottom: 16px;
            }}
            .message {{
                color: #6b7280;
                font-size: 16px;
                line-height: 1.6;
                margin-bottom: 32px;
            }}
            .button {{
                display: inline-block;
                background: #1d76ba;
                color: white;
                padding: 14px 32px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>{title}</h1>
            <p class="message">{message}</p>

            {retry_button}
        </div>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=status_code)
