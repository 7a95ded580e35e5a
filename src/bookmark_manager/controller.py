# src/bookmark_manager/controller.py

import asyncio
import typing
from enum import Enum

import httpx
from pydantic import BaseModel, Field, ValidationError

from .auth_utils import AuthSessionError, SupabaseAuth
from .bookmark_store import BookmarkStoreError, SupabaseBookmarks
from .config import settings, Settings
from .models import Bookmark, ChangeEvent, NewBookmark, OAuthRedirect, Session


class Phase(str, Enum):
    LOADING = "loading"
    SIGNED_OUT = "signed_out"
    SIGNED_IN = "signed_in"


class AddForm(BaseModel):
    title: str = ""
    url: str = ""
    adding: bool = False
    error: typing.Optional[str] = None


class ControllerState(BaseModel):
    phase: Phase = Phase.LOADING
    session: typing.Optional[Session] = None
    bookmarks: typing.List[Bookmark] = Field(default_factory=list)
    form: AddForm = Field(default_factory=AddForm)
    load_error: typing.Optional[str] = None
    session_error: typing.Optional[str] = None  # last session lookup failed; tokens not yet resolved
    live: bool = False  # True while the change subscription is open


class ClientController:
    """
    Per-browser state machine: LOADING -> SIGNED_OUT | SIGNED_IN.

    Entering SIGNED_IN loads the owner's bookmarks and opens the change
    subscription; leaving it (sign-out, session change, aclose) closes the
    subscription. Local mutations are never applied directly: the list only
    changes through the initial fetch and the change feed.
    """

    def __init__(
            self,
            auth: SupabaseAuth,
            store: SupabaseBookmarks,
            config: Settings = settings,
    ):
        self.auth = auth
        self.store = store
        self.config = config
        self.state = ControllerState()
        self.version = 0
        self._changed = asyncio.Event()
        self._subscription = None
        self._tokens: typing.Tuple[typing.Optional[str], typing.Optional[str]] = (None, None)
        self._sync_lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> "ClientController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --- Observers ---

    def _notify(self) -> None:
        self.version += 1
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def wait_for_change(self, since: int) -> int:
        """Blocks until the state has changed after `since`; returns the new version."""
        while self.version == since:
            await self._changed.wait()
        return self.version

    # --- Session bootstrap ---

    async def bootstrap(self, access_token: typing.Optional[str], refresh_token: typing.Optional[str]) -> ControllerState:
        return await self.sync_session(access_token, refresh_token)

    async def sync_session(
            self,
            access_token: typing.Optional[str],
            refresh_token: typing.Optional[str],
    ) -> ControllerState:
        """
        Re-queries the session store when the browser's tokens differ from the ones
        this controller last resolved, and transitions accordingly.
        """
        async with self._sync_lock:
            if self.state.phase != Phase.LOADING and self._tokens == (access_token, refresh_token):
                return self.state

            try:
                session = await self.auth.get_session(access_token, refresh_token)
            except (AuthSessionError, httpx.HTTPError) as e:
                # Tokens stay unresolved so the next page load asks again
                print(f"CONTROLLER: Session lookup failed, will retry on next load: {str(e)}")
                if self.state.phase == Phase.LOADING:
                    self.state = ControllerState(phase=Phase.SIGNED_OUT)
                self.state.session_error = str(e) or "Session lookup failed."
                self._notify()
                return self.state

            await self._set_session(session)
            if session is not None:
                self._tokens = (session.access_token, session.refresh_token)
            else:
                self._tokens = (access_token, refresh_token)
            return self.state

    def is_syncing(self) -> bool:
        """True while a session lookup for this browser is still in progress."""
        return self._sync_lock.locked()

    async def _set_session(self, session: typing.Optional[Session]) -> None:
        current = self.state.session
        self.state.session_error = None
        if session is not None and self.state.phase == Phase.SIGNED_IN and current == session:
            return

        await self._leave_signed_in()
        if session is None:
            self.state = ControllerState(phase=Phase.SIGNED_OUT)
            self._notify()
            return
        await self._enter_signed_in(session)

    async def _enter_signed_in(self, session: Session) -> None:
        print(f"CONTROLLER: Signed in as {session.email or session.user_id}")
        self.state = ControllerState(phase=Phase.SIGNED_IN, session=session)
        self._notify()
        await asyncio.gather(
            self._load_bookmarks(session),
            self._open_subscription(session),
        )

    async def _load_bookmarks(self, session: Session) -> None:
        try:
            rows = await self.store.select(session)
        except BookmarkStoreError as e:
            print(f"CONTROLLER: Initial bookmark fetch failed: {e.status_code} - {e.message}")
            if self.state.session is session:
                self.state.load_error = e.message or str(e)
                self._notify()
            return
        if self.state.session is not session:
            return
        self.state.bookmarks = rows
        self.state.load_error = None
        self._notify()

    async def _open_subscription(self, session: Session) -> None:
        try:
            subscription = await self.store.subscribe(session, self.handle_change, on_close=self._subscription_lost)
        except Exception as e:
            print(f"CONTROLLER: Could not open change subscription: {str(e)}")
            return
        if self._closed or self.state.session is not session:
            # Session ended while the socket was connecting
            await subscription.close()
            return
        self._subscription = subscription
        self.state.live = not getattr(subscription, "dropped", False)
        self._notify()

    def _subscription_lost(self) -> None:
        # The handle stays in _subscription so leaving SIGNED_IN still releases it
        print("CONTROLLER: Change subscription dropped, live updates stopped.")
        self.state.live = False
        self._notify()

    async def _leave_signed_in(self) -> None:
        subscription, self._subscription = self._subscription, None
        self.state.live = False
        if subscription is not None:
            await subscription.close()

    # --- Change feed ---

    def handle_change(self, event: ChangeEvent) -> None:
        if self.state.phase != Phase.SIGNED_IN:
            return

        if event.type == "INSERT" and event.record:
            try:
                bookmark = Bookmark.from_row(event.record)
            except ValidationError as e:
                print(f"CONTROLLER: Ignoring malformed insert notification: {e}")
                return
            if any(b.id == bookmark.id for b in self.state.bookmarks):
                return
            self.state.bookmarks = [bookmark] + self.state.bookmarks
            self._notify()

        elif event.type == "DELETE":
            old_id = event.old_id
            if old_id is None:
                return
            remaining = [b for b in self.state.bookmarks if b.id != old_id]
            if len(remaining) != len(self.state.bookmarks):
                self.state.bookmarks = remaining
                self._notify()

    # --- User operations ---

    def sign_in(self) -> OAuthRedirect:
        return self.auth.begin_oauth_sign_in(
            provider=self.config.OAUTH_PROVIDER,
            redirect_to=self.config.CALLBACK_URL,
            query_params=self.config.OAUTH_QUERY_PARAMS,
        )

    async def sign_out(self) -> None:
        session = self.state.session
        if session is not None:
            try:
                await self.auth.sign_out(session)
            except (AuthSessionError, httpx.HTTPError) as e:
                print(f"CONTROLLER: Remote sign-out failed, clearing local state anyway: {str(e)}")

        await self._leave_signed_in()
        self.state = ControllerState(phase=Phase.SIGNED_OUT)
        self._tokens = (None, None)
        self._notify()

    async def add_bookmark(self, title: str, url: str) -> bool:
        """
        Inserts a bookmark for the signed-in owner. Returns True if the insert was
        issued and succeeded. The list itself updates when the change feed echoes it.
        """
        form = self.state.form
        if self.state.phase != Phase.SIGNED_IN or self.state.session is None:
            return False
        if form.adding:
            return False

        form.title = title
        form.url = url
        clean_title, clean_url = title.strip(), url.strip()
        if not clean_title or not clean_url:
            return False

        session = self.state.session
        form.adding = True
        form.error = None
        self._notify()
        try:
            await self.store.insert(
                session,
                NewBookmark(url=clean_url, title=clean_title, user_id=session.user_id),
            )
        except BookmarkStoreError as e:
            print(f"CONTROLLER: Insert failed, keeping form for retry: {e.status_code} - {e.message}")
            form.error = e.message or str(e)
            return False
        finally:
            form.adding = False
            self._notify()

        form.title = ""
        form.url = ""
        self._notify()
        return True

    async def delete_bookmark(self, bookmark_id: str) -> bool:
        session = self.state.session
        if self.state.phase != Phase.SIGNED_IN or session is None:
            return False
        try:
            await self.store.delete(session, bookmark_id)
        except BookmarkStoreError as e:
            print(f"CONTROLLER: Delete of {bookmark_id} failed: {e.status_code} - {e.message}")
            return False
        return True

    # --- Teardown ---

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._leave_signed_in()
        self._notify()
