from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

import bookmark_manager.main as bm
from bookmark_manager.auth_utils import AuthExchangeError
from bookmark_manager.models import Session

from conftest import FakeAuth, FakeStore, make_bookmark


@pytest.fixture
def app_client(fake_auth, fake_store):
    bm._in_memory_session_data_storage.clear()
    bm.app.dependency_overrides[bm.get_auth] = lambda: fake_auth
    bm.app.dependency_overrides[bm.get_store] = lambda: fake_store
    with TestClient(bm.app) as client:
        yield client
    bm.app.dependency_overrides.clear()
    bm._in_memory_session_data_storage.clear()


def set_cookie_headers(response) -> list:
    return response.headers.get_list("set-cookie")


def find_cookie(response, name: str) -> str:
    for header in set_cookie_headers(response):
        if header.startswith(f"{name}="):
            return header
    raise AssertionError(f"cookie {name} not set: {set_cookie_headers(response)}")


def test_callback_without_code_redirects_to_root(app_client, fake_auth: FakeAuth) -> None:
    r = app_client.get("/auth/callback", follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "/"
    assert fake_auth.exchanged == []
    assert not any(h.startswith("sb-access-token=") for h in set_cookie_headers(r))


def test_callback_success_sets_token_cookies(app_client, fake_auth: FakeAuth) -> None:
    fake_auth.exchange_result = Session(user_id="user-1", email="ada@example.com",
                                        access_token="t1", refresh_token="r1")
    app_client.cookies.set("sb-code-verifier", "verifier-123")

    r = app_client.get("/auth/callback", params={"code": "abc"}, follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "/"
    assert fake_auth.exchanged == [("abc", "verifier-123")]
    access = find_cookie(r, "sb-access-token")
    refresh = find_cookie(r, "sb-refresh-token")
    assert access.startswith("sb-access-token=t1;")
    assert refresh.startswith("sb-refresh-token=r1;")
    assert "Path=/" in access
    assert "Path=/" in refresh


def test_callback_failure_redirects_with_error(app_client, fake_auth: FakeAuth) -> None:
    fake_auth.exchange_error = AuthExchangeError(400, "invalid flow state")

    r = app_client.get("/auth/callback", params={"code": "bad"}, follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "/?error=auth_error_400"
    assert not any(h.startswith("sb-access-token=") for h in set_cookie_headers(r))


def test_callback_with_consumed_code_follows_failure_path(app_client, fake_auth: FakeAuth) -> None:
    fake_auth.exchange_result = Session(user_id="user-1", access_token="t1", refresh_token="r1")
    first = app_client.get("/auth/callback", params={"code": "abc"}, follow_redirects=False)
    assert first.headers["location"] == "/"

    fake_auth.exchange_error = AuthExchangeError(404, "code already used")
    second = app_client.get("/auth/callback", params={"code": "abc"}, follow_redirects=False)

    assert second.status_code == 302
    assert second.headers["location"] == "/?error=auth_error_404"


def test_root_signed_out_offers_sign_in(app_client) -> None:
    r = app_client.get("/")

    assert r.status_code == 200
    assert "Sign in with Google" in r.text
    assert 'href="/login"' in r.text


def test_root_shows_auth_error(app_client) -> None:
    r = app_client.get("/", params={"error": "auth_error_400"})

    assert "auth_error_400" in r.text


def test_root_signed_in_renders_list(app_client) -> None:
    app_client.cookies.set("sb-access-token", "t1")
    app_client.cookies.set("sb-refresh-token", "r1")

    r = app_client.get("/")

    assert r.status_code == 200
    assert "ada@example.com" in r.text
    assert r.text.index("Bookmark b") < r.text.index("Bookmark a")


def test_root_clears_stale_token_cookies(app_client) -> None:
    app_client.cookies.set("sb-access-token", "expired")

    r = app_client.get("/")

    assert "Sign in with Google" in r.text
    assert any(h.startswith('sb-access-token=""') or h.startswith("sb-access-token=;")
               for h in set_cookie_headers(r))


def test_root_keeps_token_cookies_when_session_lookup_fails(app_client, fake_auth: FakeAuth) -> None:
    fake_auth.lookup_errors.append(httpx.ConnectError("auth service unreachable"))
    app_client.cookies.set("sb-access-token", "t1")
    app_client.cookies.set("sb-refresh-token", "r1")

    r = app_client.get("/")

    assert "Could not reach the sign-in service" in r.text
    assert not any(h.startswith("sb-access-token=") or h.startswith("sb-refresh-token=")
                   for h in set_cookie_headers(r))

    r = app_client.get("/")

    assert "My Bookmarks" in r.text
    assert "ada@example.com" in r.text
    assert fake_auth.lookups == [("t1", "r1"), ("t1", "r1")]


def test_root_serves_loading_page_while_session_resolves(app_client) -> None:
    app_client.get("/")
    (entry,) = bm._in_memory_session_data_storage.values()
    entry["controller"].is_syncing = lambda: True

    r = app_client.get("/")

    assert r.status_code == 200
    assert 'id="loading"' in r.text
    assert "Sign in with Google" not in r.text


def test_idle_browser_sessions_are_evicted(app_client, fake_store: FakeStore) -> None:
    app_client.cookies.set("sb-access-token", "t1")
    app_client.cookies.set("sb-refresh-token", "r1")
    app_client.get("/")
    (session_id,) = bm._in_memory_session_data_storage
    bm._in_memory_session_data_storage[session_id]["last_seen"] -= bm.SESSION_COOKIE_MAX_AGE + 1

    app_client.get("/healthz")

    assert session_id not in bm._in_memory_session_data_storage
    assert fake_store.subscriptions[0].close_calls == 1


def test_recently_seen_browser_sessions_are_kept(app_client, fake_store: FakeStore) -> None:
    app_client.cookies.set("sb-access-token", "t1")
    app_client.cookies.set("sb-refresh-token", "r1")
    app_client.get("/")
    (session_id,) = bm._in_memory_session_data_storage

    app_client.get("/healthz")

    assert session_id in bm._in_memory_session_data_storage
    assert fake_store.subscriptions[0].close_calls == 0


def test_login_redirects_to_provider_and_keeps_verifier(app_client) -> None:
    r = app_client.get("/login", follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"].startswith("https://auth.test/authorize?provider=google")
    assert find_cookie(r, "sb-code-verifier").startswith("sb-code-verifier=verifier;")


def test_add_and_delete_forms_reach_the_store(app_client, fake_store: FakeStore) -> None:
    app_client.cookies.set("sb-access-token", "t1")
    app_client.cookies.set("sb-refresh-token", "r1")
    app_client.get("/")

    r = app_client.post("/bookmarks", data={"title": " New ", "url": "https://new.example"},
                        follow_redirects=False)
    assert r.status_code == 303
    assert [b.title for _, b in fake_store.inserts] == ["New"]

    r = app_client.post("/bookmarks/b/delete", follow_redirects=False)
    assert r.status_code == 303
    assert [bookmark_id for _, bookmark_id in fake_store.deletes] == ["b"]


def test_logout_clears_session_and_cookies(app_client, fake_auth: FakeAuth, fake_store: FakeStore) -> None:
    app_client.cookies.set("sb-access-token", "t1")
    app_client.cookies.set("sb-refresh-token", "r1")
    app_client.get("/")

    r = app_client.post("/logout", follow_redirects=False)

    assert r.status_code == 303
    assert r.headers["location"] == "/"
    assert len(fake_auth.signed_out) == 1
    assert fake_store.subscriptions[0].close_calls == 1
    assert any(h.startswith("sb-access-token=") and "Max-Age=0" in h for h in set_cookie_headers(r))


def test_shutdown_closes_open_subscriptions(fake_auth) -> None:
    store = FakeStore([make_bookmark("a", 1)])
    bm._in_memory_session_data_storage.clear()
    bm.app.dependency_overrides[bm.get_auth] = lambda: fake_auth
    bm.app.dependency_overrides[bm.get_store] = lambda: store
    try:
        with TestClient(bm.app) as client:
            client.cookies.set("sb-access-token", "t1")
            client.cookies.set("sb-refresh-token", "r1")
            client.get("/")
            assert store.subscriptions[0].close_calls == 0
        assert store.subscriptions[0].close_calls == 1
    finally:
        bm.app.dependency_overrides.clear()
        bm._in_memory_session_data_storage.clear()


def test_healthz(app_client) -> None:
    assert app_client.get("/healthz").json() == {"ok": True}
