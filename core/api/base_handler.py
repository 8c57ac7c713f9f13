import asyncio
import json
from typing import Any, Callable, Optional

from aiohttp import WSMsgType, web

from config.logger import setup_logging
from services.auth.identity import IdentityClient
from services.auth.session import AuthSession
from services.catalog.subscription import SnapshotEvent, Subscription
from services.errors import (
    InvalidImage,
    NotFound,
    RemovalServiceError,
    ServiceUnavailable,
    Unauthenticated,
    UploadFailed,
)

TAG = __name__


class BaseHandler:
    def __init__(self, config: dict, identity: Optional[IdentityClient] = None):
        self.config = config
        self.logger = setup_logging()
        self.identity = identity
        self.auth_enabled = bool(
            config.get("server", {}).get("auth", {}).get("enabled", True)
        )

    def _add_cors_headers(self, response: web.StreamResponse):
        response.headers["Access-Control-Allow-Headers"] = (
            "content-type, authorization, Authorization, x-user-id"
        )
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Origin"] = "*"

    def _json_response(self, data: dict, status: int = 200) -> web.Response:
        response = web.Response(
            text=json.dumps(data, separators=(",", ":")),
            content_type="application/json",
            status=status,
        )
        self._add_cors_headers(response)
        return response

    def _error_response(self, exc: Exception) -> web.Response:
        if isinstance(exc, Unauthenticated):
            status = 401
        elif isinstance(exc, NotFound):
            status = 404
        elif isinstance(exc, (RemovalServiceError, UploadFailed)):
            status = 502
        elif isinstance(exc, ServiceUnavailable):
            status = 503
        elif isinstance(exc, (InvalidImage, ValueError, web.HTTPBadRequest)):
            status = 400
        else:
            status = 500
        if status == 500:
            self.logger.bind(tag=TAG).exception(f"Unhandled request error: {exc}")
            message = "request error."
        else:
            self.logger.bind(tag=TAG).warning(f"Request failed ({status}): {exc}")
            message = str(exc)
        return self._json_response({"ok": False, "error": message}, status=status)

    async def _read_json(self, request: web.Request) -> dict:
        text = await request.text()
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ValueError("invalid json") from exc
        if not isinstance(data, dict):
            raise ValueError("invalid json")
        return data

    async def resolve_auth(
        self, request: web.Request, allow_query_token: bool = False
    ) -> AuthSession:
        """Map the request's credentials onto an AuthSession.

        With auth disabled the X-User-Id header is trusted as-is (local runs);
        otherwise the Bearer token must verify as a Firebase ID token. Browser
        websockets cannot set headers, so live streams may pass `?token=`.
        """
        if not self.auth_enabled:
            user_id = request.headers.get("X-User-Id", "").strip()
            if not user_id:
                raise Unauthenticated("Missing X-User-Id header")
            return AuthSession.for_user(user_id)

        auth_header = request.headers.get("Authorization", "")
        if allow_query_token and not auth_header and request.query.get("token"):
            auth_header = f"Bearer {request.query['token']}"
        if not auth_header.startswith("Bearer "):
            raise Unauthenticated("Missing bearer token")
        if self.identity is None:
            raise Unauthenticated("Token verification is not configured")
        user = await asyncio.to_thread(self.identity.verify_id_token, auth_header[7:])
        return AuthSession(user)

    async def handle_options(self, request: web.Request) -> web.Response:
        response = web.Response(status=204)
        self._add_cors_headers(response)
        return response

    async def _stream_snapshots(
        self,
        request: web.Request,
        subscribe: Callable[[AuthSession, Callable[[SnapshotEvent], None]], Subscription],
        serialize: Callable[[Any], dict],
        kind: str,
    ) -> web.StreamResponse:
        """Push every snapshot of a live query over a websocket.

        Each frame is `{"type": "snapshot", "sequence": n, <kind>: [...]}` and
        carries the whole list. Firestore calls back on its own thread, so
        events hop onto the loop through a queue.
        """
        try:
            auth = await self.resolve_auth(request, allow_query_token=True)
        except Exception as e:
            return self._error_response(e)

        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()

        def on_event(event: SnapshotEvent):
            loop.call_soon_threadsafe(events.put_nowait, event)

        try:
            subscription = await asyncio.to_thread(subscribe, auth, on_event)
        except Exception as e:
            self.logger.bind(tag=TAG).exception(f"Failed to start live {kind} stream: {e}")
            await ws.close(message=b"subscription failed")
            return ws

        async def forward():
            while True:
                event = await events.get()
                try:
                    await ws.send_json(
                        {
                            "type": "snapshot",
                            "sequence": event.sequence,
                            kind: [serialize(item) for item in event.items],
                        }
                    )
                except ConnectionResetError:
                    return

        sender = asyncio.create_task(forward())
        self.logger.bind(tag=TAG).info(f"Live {kind} stream opened for {auth.user_id}")
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    self.logger.bind(tag=TAG).warning(
                        f"Live {kind} stream error: {ws.exception()}"
                    )
                    break
        finally:
            sender.cancel()
            subscription.unsubscribe()
            self.logger.bind(tag=TAG).info(f"Live {kind} stream closed for {auth.user_id}")
        return ws
