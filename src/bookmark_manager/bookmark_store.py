# src/bookmark_manager/bookmark_store.py
import typing

import httpx

from .config import settings, Settings
from .models import Bookmark, NewBookmark, Session
from .realtime import EventHandler, RealtimeSubscription


class BookmarkStoreError(Exception):
    def __init__(self, status_code: int, message: typing.Optional[str] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message or f"Bookmark store request failed with status {status_code}.")


class SupabaseBookmarks:
    """
    Bookmark Store backed by PostgREST for queries and Supabase Realtime for the
    change feed. Row ownership is enforced by the database's row-level security;
    the owner filters here only scope what is asked for.
    """

    def __init__(self, config: Settings = settings, client: typing.Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    @property
    def table_url(self) -> str:
        return f"{self.config.REST_URL}/{self.config.BOOKMARKS_TABLE}"

    def _headers(self, session: Session, **extra: str) -> dict:
        headers = {
            "apikey": self.config.SUPABASE_ANON_KEY,
            "Authorization": f"Bearer {session.access_token}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    async def _request(self, method: str, session: Session, **kwargs) -> httpx.Response:
        headers = self._headers(session, **kwargs.pop("extra_headers", {}))
        try:
            if self._client is not None:
                response = await self._client.request(method, self.table_url, headers=headers,
                                                      timeout=self.config.HTTP_TIMEOUT_SECONDS, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(method, self.table_url, headers=headers,
                                                    timeout=self.config.HTTP_TIMEOUT_SECONDS, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            print(f"STORE: HTTP error on {method} {self.table_url}: {e.response.status_code} - {e.response.text}")
            raise BookmarkStoreError(e.response.status_code, e.response.text) from e
        except httpx.RequestError as e:
            print(f"STORE: Request error on {method} {self.table_url}: {str(e)}")
            raise BookmarkStoreError(503, f"Could not connect to bookmark store: {str(e)}") from e

    async def select(self, session: Session) -> typing.List[Bookmark]:
        response = await self._request(
            "GET",
            session,
            params={
                "select": "*",
                "user_id": f"eq.{session.user_id}",
                "order": "created_at.desc",
            },
        )
        return [Bookmark.from_row(row) for row in response.json()]

    async def insert(self, session: Session, bookmark: NewBookmark) -> None:
        await self._request(
            "POST",
            session,
            json=[bookmark.model_dump()],
            extra_headers={"Prefer": "return=minimal"},
        )
        print(f"STORE: Inserted bookmark '{bookmark.title}' for user {bookmark.user_id}")

    async def delete(self, session: Session, bookmark_id: str) -> None:
        await self._request("DELETE", session, params={"id": f"eq.{bookmark_id}"})
        print(f"STORE: Deleted bookmark {bookmark_id} for user {session.user_id}")

    async def subscribe(
            self,
            session: Session,
            on_event: EventHandler,
            on_close: typing.Optional[typing.Callable[[], None]] = None,
    ) -> RealtimeSubscription:
        subscription = RealtimeSubscription(session, on_event, config=self.config, on_close=on_close)
        return await subscription.open()
