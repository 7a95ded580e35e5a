"""
Pytest config.

Settings are instantiated when `bookmark_manager.config` is imported, so the
required environment is pinned here before any test module imports the package.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import pytest

os.environ.setdefault("SUPABASE_URL", "https://project.supabase.test")
os.environ.setdefault("SUPABASE_ANON_KEY", "anon-key")
os.environ.setdefault("SITE_URL", "http://testserver")

from bookmark_manager.auth_utils import AuthExchangeError  # noqa: E402
from bookmark_manager.bookmark_store import BookmarkStoreError  # noqa: E402
from bookmark_manager.models import Bookmark, OAuthRedirect, Session  # noqa: E402


def make_bookmark(bookmark_id: str, minute: int, owner: str = "user-1") -> Bookmark:
    return Bookmark(
        id=bookmark_id,
        url=f"https://example.com/{bookmark_id}",
        title=f"Bookmark {bookmark_id}",
        owner_id=owner,
        created_at=datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc),
    )


def make_row(bookmark_id: str, minute: int, owner: str = "user-1") -> dict:
    return {
        "id": bookmark_id,
        "url": f"https://example.com/{bookmark_id}",
        "title": f"Bookmark {bookmark_id}",
        "user_id": owner,
        "created_at": f"2024-01-01T12:{minute:02d}:00+00:00",
    }


class FakeAuth:
    """Session store double keyed by access token."""

    def __init__(self, sessions: Optional[dict] = None):
        self.sessions = dict(sessions or {})
        self.lookups: List[Tuple[Optional[str], Optional[str]]] = []
        self.signed_out: List[Session] = []
        self.sign_out_error: Optional[Exception] = None
        self.exchange_result: Optional[Session] = None
        self.exchange_error: Optional[AuthExchangeError] = None
        self.exchanged: List[Tuple[str, Optional[str]]] = []
        # Raised by the next lookups, one per call, before falling back to `sessions`
        self.lookup_errors: List[Exception] = []

    async def get_session(self, access_token, refresh_token):
        self.lookups.append((access_token, refresh_token))
        if self.lookup_errors:
            raise self.lookup_errors.pop(0)
        return self.sessions.get(access_token)

    def begin_oauth_sign_in(self, provider, redirect_to, query_params=None):
        return OAuthRedirect(
            url=f"https://auth.test/authorize?provider={provider}&redirect_to={redirect_to}",
            code_verifier="verifier",
        )

    async def exchange_code_for_session(self, code, code_verifier):
        self.exchanged.append((code, code_verifier))
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_result

    async def sign_out(self, session):
        self.signed_out.append(session)
        if self.sign_out_error is not None:
            raise self.sign_out_error


class FakeSubscription:
    def __init__(self, session, on_event, on_close=None):
        self.session = session
        self.on_event = on_event
        self.on_close = on_close
        self.close_calls = 0

    async def close(self):
        self.close_calls += 1


class FakeStore:
    """Bookmark store double that records every call."""

    def __init__(self, rows: Optional[List[Bookmark]] = None):
        self.rows = list(rows or [])
        self.inserts: list = []
        self.deletes: list = []
        self.subscriptions: List[FakeSubscription] = []
        self.select_error: Optional[BookmarkStoreError] = None
        self.insert_error: Optional[BookmarkStoreError] = None
        self.delete_error: Optional[BookmarkStoreError] = None
        self.insert_gate: Optional[asyncio.Event] = None

    async def select(self, session):
        if self.select_error is not None:
            raise self.select_error
        return list(self.rows)

    async def insert(self, session, bookmark):
        self.inserts.append((session, bookmark))
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        if self.insert_error is not None:
            raise self.insert_error

    async def delete(self, session, bookmark_id):
        self.deletes.append((session, bookmark_id))
        if self.delete_error is not None:
            raise self.delete_error

    async def subscribe(self, session, on_event, on_close=None):
        subscription = FakeSubscription(session, on_event, on_close)
        self.subscriptions.append(subscription)
        return subscription


@pytest.fixture
def session() -> Session:
    return Session(user_id="user-1", email="ada@example.com", access_token="t1", refresh_token="r1")


@pytest.fixture
def other_session() -> Session:
    return Session(user_id="user-2", email="grace@example.com", access_token="t2", refresh_token="r2")


@pytest.fixture
def fake_auth(session, other_session) -> FakeAuth:
    return FakeAuth({"t1": session, "t2": other_session})


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore([make_bookmark("b", 2), make_bookmark("a", 1)])
