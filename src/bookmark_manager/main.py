# src/bookmark_manager/main.py

import asyncio
import json
import time
import typing
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .auth_utils import AuthExchangeError, SupabaseAuth
from .bookmark_store import SupabaseBookmarks
from .config import settings
from .controller import ClientController, ControllerState, Phase
from .view import render_bookmark_list, render_page

# --- Simple In-Memory Browser Session Store ---
# One entry per browser; each entry owns that browser's ClientController.
# Not shared between worker processes.
_in_memory_session_data_storage: typing.Dict[str, dict] = {}

SESSION_COOKIE_NAME = "session_id"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 4  # 4 hours

ACCESS_TOKEN_COOKIE = "sb-access-token"
REFRESH_TOKEN_COOKIE = "sb-refresh-token"
CODE_VERIFIER_COOKIE = "sb-code-verifier"
CODE_VERIFIER_MAX_AGE = 60 * 10

SSE_KEEPALIVE_SECONDS = 15.0


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        await evict_idle_sessions()
        session_id = request.cookies.get(SESSION_COOKIE_NAME)
        if not session_id or session_id not in _in_memory_session_data_storage:
            session_id = str(uuid.uuid4())
            _in_memory_session_data_storage[session_id] = {}
        request.state.session_id = session_id
        request.state.session = _in_memory_session_data_storage[session_id]
        request.state.session["last_seen"] = time.monotonic()
        response: StarletteResponse = await call_next(request)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="lax",
        )
        return response


async def evict_idle_sessions(now: typing.Optional[float] = None) -> int:
    """
    Drops browser sessions not seen for longer than the session cookie lives and
    closes their controllers. Returns how many sessions were evicted.
    """
    now = time.monotonic() if now is None else now
    expired = [
        session_id for session_id, data in _in_memory_session_data_storage.items()
        if now - data.get("last_seen", now) > SESSION_COOKIE_MAX_AGE
    ]
    controllers = []
    for session_id in expired:
        data = _in_memory_session_data_storage.pop(session_id, {})
        if "controller" in data:
            controllers.append(data["controller"])
    for controller in controllers:
        await controller.aclose()
    if expired:
        print(f"MAIN: Evicted {len(expired)} idle browser session(s), closed {len(controllers)} controller(s).")
    return len(expired)


async def close_all_controllers() -> None:
    controllers = [
        data.pop("controller") for data in _in_memory_session_data_storage.values() if "controller" in data
    ]
    for controller in controllers:
        await controller.aclose()
    print(f"MAIN: Closed {len(controllers)} client controller(s).")


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("--- BookmarkManager (FastAPI) Starting Up ---")
    print(f"Supabase URL: {settings.BASE_URL}")
    print(f"OAuth provider: {settings.OAUTH_PROVIDER} (params: {settings.OAUTH_QUERY_PARAMS})")
    print(f"OAuth callback URL: {settings.CALLBACK_URL}")
    print(f"Bookmarks table: {settings.BOOKMARKS_TABLE}")
    print("-------------------------------------------")
    yield
    await close_all_controllers()


# --- FastAPI App Setup ---
app = FastAPI(
    title="BookmarkManager",
    description="Personal bookmark manager with Google sign-in and live updates.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(SessionMiddlewareCustom)


# --- Dependencies ---
_auth = SupabaseAuth()
_store = SupabaseBookmarks()


def get_auth() -> SupabaseAuth:
    return _auth


def get_store() -> SupabaseBookmarks:
    return _store


def get_controller(
        request: Request,
        auth: SupabaseAuth = Depends(get_auth),
        store: SupabaseBookmarks = Depends(get_store),
) -> ClientController:
    controller = request.state.session.get("controller")
    if controller is None:
        controller = ClientController(auth, store)
        request.state.session["controller"] = controller
        print(f"MAIN: Created client controller for browser session {request.state.session_id}")
    return controller


def _set_token_cookies(response: StarletteResponse, access_token: str, refresh_token: str) -> None:
    for key, value in ((ACCESS_TOKEN_COOKIE, access_token), (REFRESH_TOKEN_COOKIE, refresh_token)):
        response.set_cookie(
            key=key,
            value=value,
            path="/",
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="lax",
        )


def _clear_token_cookies(response: StarletteResponse) -> None:
    response.delete_cookie(key=ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(key=REFRESH_TOKEN_COOKIE, path="/")


# --- Authentication Routes ---
@app.get("/login")
async def login(controller: ClientController = Depends(get_controller)):
    redirect = controller.sign_in()
    response = RedirectResponse(url=redirect.url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        key=CODE_VERIFIER_COOKIE,
        value=redirect.code_verifier,
        max_age=CODE_VERIFIER_MAX_AGE,
        path="/",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )
    print("MAIN: /login - Redirecting to OAuth provider.")
    return response


@app.get("/auth/callback")
async def auth_callback(request: Request, auth: SupabaseAuth = Depends(get_auth)):
    code = request.query_params.get("code")
    if not code:
        print("MAIN: /auth/callback - No code in query, redirecting to /")
        return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)

    code_verifier = request.cookies.get(CODE_VERIFIER_COOKIE)
    try:
        session = await auth.exchange_code_for_session(code, code_verifier)
    except AuthExchangeError as e:
        print(f"MAIN: /auth/callback - Exchange Error: {e.message} (status {e.status_code})")
        response = RedirectResponse(url=f"/?error=auth_error_{e.status_code}", status_code=status.HTTP_302_FOUND)
        response.delete_cookie(key=CODE_VERIFIER_COOKIE, path="/")
        return response

    print(f"MAIN: /auth/callback successful for user {session.user_id}. Redirecting to /")
    response = RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)
    _set_token_cookies(response, session.access_token, session.refresh_token)
    response.delete_cookie(key=CODE_VERIFIER_COOKIE, path="/")
    return response


@app.api_route("/logout", methods=["GET", "POST"])
async def logout(controller: ClientController = Depends(get_controller)):
    await controller.sign_out()
    # Full reload of the root so nothing from the previous identity survives
    response = RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)
    _clear_token_cookies(response)
    print("MAIN: /logout - Local state cleared, redirecting to /")
    return response


# --- Bookmark mutations (form posts) ---
@app.post("/bookmarks")
async def add_bookmark(
        title: str = Form(""),
        url: str = Form(""),
        controller: ClientController = Depends(get_controller),
):
    await controller.add_bookmark(title, url)
    return RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)


@app.post("/bookmarks/{bookmark_id}/delete")
async def delete_bookmark(bookmark_id: str, controller: ClientController = Depends(get_controller)):
    await controller.delete_bookmark(bookmark_id)
    return RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)


# --- Live updates ---
async def _bookmark_events(request: Request, controller: ClientController) -> typing.AsyncIterator[str]:
    version = controller.version
    while not await request.is_disconnected():
        # An open stream keeps its browser session from being evicted
        request.state.session["last_seen"] = time.monotonic()
        try:
            version = await asyncio.wait_for(controller.wait_for_change(version), timeout=SSE_KEEPALIVE_SECONDS)
        except asyncio.TimeoutError:
            yield ": keep-alive\n\n"
            continue
        if controller.state.phase != Phase.SIGNED_IN:
            return
        yield f"data: {json.dumps({'html': render_bookmark_list(controller.state)})}\n\n"


@app.get("/events")
async def bookmark_events(request: Request, controller: ClientController = Depends(get_controller)):
    return StreamingResponse(
        _bookmark_events(request, controller),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# --- Page ---
@app.get("/", response_class=HTMLResponse)
async def read_root(request: Request, controller: ClientController = Depends(get_controller)):
    access_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if controller.is_syncing():
        # Another request for this browser is resolving the session; the page reloads itself
        return HTMLResponse(render_page(ControllerState()))
    state = await controller.sync_session(access_token, refresh_token)

    response = HTMLResponse(render_page(state, auth_error=request.query_params.get("error")))
    if state.session_error is not None:
        # Lookup failed; leave the browser's tokens alone so the next load retries
        return response
    if state.session is not None:
        if (state.session.access_token, state.session.refresh_token) != (access_token, refresh_token):
            _set_token_cookies(response, state.session.access_token, state.session.refresh_token)
    elif access_token or refresh_token:
        _clear_token_cookies(response)
    return response


@app.get("/healthz")
async def healthz():
    return {"ok": True}
