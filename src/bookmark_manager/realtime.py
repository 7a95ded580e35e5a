# src/bookmark_manager/realtime.py

import asyncio
import json
import typing
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from .config import settings, Settings
from .models import ChangeEvent, Session

CHANNEL_NAME = "bookmarks-changes"

EventHandler = typing.Callable[[ChangeEvent], None]


class RealtimeSubscription:
    """
    One channel on the Supabase Realtime websocket, listening for postgres_changes
    on a single table filtered to one owner.

    `open()` joins the channel and starts a reader and a heartbeat task; `close()`
    leaves the channel and releases the socket. `close()` may be called any number
    of times; only the first call does anything. If the server ends the socket
    first, `on_close` is called once; `close()` is still needed to release it.
    """

    def __init__(
            self,
            session: Session,
            on_event: EventHandler,
            config: Settings = settings,
            connector: typing.Callable[..., typing.Any] = connect,
            on_close: typing.Optional[typing.Callable[[], None]] = None,
    ):
        self.session = session
        self.on_event = on_event
        self.on_close = on_close
        self.config = config
        self.topic = f"realtime:{CHANNEL_NAME}"
        self._connector = connector
        self._ws = None
        self._ref = 0
        self._join_ref: typing.Optional[str] = None
        self._reader: typing.Optional[asyncio.Task] = None
        self._heartbeat: typing.Optional[asyncio.Task] = None
        self.joined = False
        self.closed = False
        self.dropped = False  # server ended the socket before close()

    @property
    def url(self) -> str:
        query = urlencode({"apikey": self.config.SUPABASE_ANON_KEY, "vsn": "1.0.0"})
        return f"{self.config.REALTIME_URL}?{query}"

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def join_payload(self) -> dict:
        return {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "*",
                        "schema": "public",
                        "table": self.config.BOOKMARKS_TABLE,
                        "filter": f"user_id=eq.{self.session.user_id}",
                    }
                ],
            },
            "access_token": self.session.access_token,
        }

    async def _send(self, topic: str, event: str, payload: dict) -> str:
        ref = self._next_ref()
        await self._ws.send(json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref}))
        return ref

    async def open(self) -> "RealtimeSubscription":
        if self.closed:
            raise RuntimeError("Subscription already closed.")
        self._ws = await self._connector(self.url)
        self._join_ref = await self._send(self.topic, "phx_join", self.join_payload())
        self._reader = asyncio.create_task(self._read_loop())
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())
        print(f"REALTIME: Joining {self.topic} for user {self.session.user_id}")
        return self

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        current = asyncio.current_task()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._ws is not None:
            try:
                await self._send(self.topic, "phx_leave", {})
            except ConnectionClosed:
                pass
            await self._ws.close()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    print(f"REALTIME: Task on {self.topic} had failed: {type(e).__name__}: {e}")
        print(f"REALTIME: Left {self.topic} for user {self.session.user_id}")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.REALTIME_HEARTBEAT_SECONDS)
            try:
                await self._send("phoenix", "heartbeat", {})
            except ConnectionClosed:
                return

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    self.handle_message(raw)
                except Exception as e:
                    print(f"REALTIME: Dropping frame on {self.topic}: {type(e).__name__}: {e}")
        except ConnectionClosed as e:
            if not self.closed:
                print(f"REALTIME: Connection closed unexpectedly: {e}")
        if self.closed:
            return
        # Server went away without close() being called
        self.dropped = True
        self.joined = False
        if self._heartbeat is not None and not self._heartbeat.done():
            self._heartbeat.cancel()
        if self.on_close is not None:
            self.on_close()

    def handle_message(self, raw: typing.Union[str, bytes]) -> typing.Optional[ChangeEvent]:
        """
        Dispatches one frame from the socket. Returns the change event that was
        delivered to `on_event`, if the frame carried one.
        """
        message = json.loads(raw)
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self.joined = True
                print(f"REALTIME: Subscribed to {self.topic}")
            else:
                print(f"REALTIME: Join rejected for {self.topic}: {payload.get('response')}")
            return None

        if event == "phx_error" or event == "phx_close":
            print(f"REALTIME: Channel {self.topic} reported {event}")
            self.joined = False
            return None

        if event != "postgres_changes" or message.get("topic") != self.topic:
            return None

        data = payload.get("data") or {}
        change = ChangeEvent(
            type=str(data.get("type", "")).upper(),
            record=data.get("record"),
            old_record=data.get("old_record"),
        )
        self.on_event(change)
        return change
