import asyncio

from aiohttp import web

from core.api.base_handler import BaseHandler
from services.auth.identity import IdentityClient

TAG = __name__


class AuthHandler(BaseHandler):
    def __init__(self, config: dict, identity: IdentityClient):
        super().__init__(config, identity)

    async def handle_login(self, request: web.Request) -> web.Response:
        try:
            data = await self._read_json(request)
            user = await asyncio.to_thread(
                self.identity.sign_in,
                (data.get("email") or "").strip(),
                data.get("password") or "",
            )
            return self._json_response({"ok": True, "user": user.to_payload()})
        except Exception as e:
            return self._error_response(e)

    async def handle_register(self, request: web.Request) -> web.Response:
        try:
            data = await self._read_json(request)
            user = await asyncio.to_thread(
                self.identity.register,
                (data.get("username") or "").strip(),
                (data.get("email") or "").strip(),
                data.get("password") or "",
                data.get("confirmPassword") or "",
            )
            self.logger.bind(tag=TAG).info(f"Registered {user.uid} via HTTP")
            return self._json_response({"ok": True, "user": user.to_payload()}, status=201)
        except Exception as e:
            return self._error_response(e)
