import asyncio
import json
from typing import List, Tuple

from aiohttp import web

from core.api.base_handler import BaseHandler
from services.alarms.models import Alarm, parse_time
from services.alarms.store import AlarmStore
from services.auth.identity import IdentityClient

TAG = __name__


def _alarm_minutes(data: dict):
    if data.get("minutes") is not None:
        minutes = data["minutes"]
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            raise ValueError("minutes must be an integer")
        return minutes
    if data.get("time"):
        return parse_time(str(data["time"]))
    return None


class AlarmHandler(BaseHandler):
    """CRUD endpoints for a user's alarms."""

    def __init__(self, config: dict, identity: IdentityClient, store: AlarmStore):
        super().__init__(config, identity)
        self.store = store

    async def _read_alarm_request(self, request: web.Request) -> Tuple[dict, List[bytes]]:
        """Alarm fields plus attached images.

        JSON bodies carry only fields. Multipart bodies carry the fields as a
        JSON `alarm` part and any number of `image` file parts.
        """
        if not request.content_type.startswith("multipart/"):
            return await self._read_json(request), []
        form = await request.post()
        raw = form.get("alarm") or "{}"
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ValueError("alarm part is not valid json") from exc
        images = []
        for part in form.getall("image", []):
            if isinstance(part, web.FileField):
                images.append(part.file.read())
        return data, images

    async def handle_list(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            alarms = await asyncio.to_thread(self.store.list_alarms, auth)
            return self._json_response(
                {"ok": True, "alarms": [alarm.to_payload() for alarm in alarms]}
            )
        except Exception as e:
            return self._error_response(e)

    async def handle_live(self, request: web.Request) -> web.StreamResponse:
        return await self._stream_snapshots(
            request, self.store.subscribe, lambda alarm: alarm.to_payload(), "alarms"
        )

    async def handle_create(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            data, images = await self._read_alarm_request(request)
            minutes = _alarm_minutes(data)
            if minutes is None:
                raise ValueError("time or minutes is required")
            is_enabled = data.get("isEnabled", True)
            if not isinstance(is_enabled, bool):
                raise ValueError("isEnabled must be a boolean")
            alarm = Alarm(
                minutes=minutes,
                label=str(data.get("label") or ""),
                selected_days=data.get("selectedDays") or [],
                is_enabled=is_enabled,
            )
            stored = await asyncio.to_thread(self.store.add_alarm, auth, alarm, images)
            return self._json_response({"ok": True, "alarm": stored.to_payload()}, status=201)
        except Exception as e:
            return self._error_response(e)

    async def handle_update(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            alarm_id = request.match_info["alarm_id"]
            data = await self._read_json(request)
            label = data.get("label")
            updated = await asyncio.to_thread(
                self.store.update_alarm,
                auth,
                alarm_id,
                minutes=_alarm_minutes(data),
                label=None if label is None else str(label),
                selected_days=data.get("selectedDays"),
            )
            return self._json_response({"ok": True, "alarm": updated.to_payload()})
        except Exception as e:
            return self._error_response(e)

    async def handle_toggle(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            alarm_id = request.match_info["alarm_id"]
            data = await self._read_json(request)
            is_enabled = data.get("isEnabled")
            if not isinstance(is_enabled, bool):
                raise ValueError("isEnabled must be a boolean")
            await asyncio.to_thread(self.store.toggle_alarm, auth, alarm_id, is_enabled)
            return self._json_response({"ok": True, "id": alarm_id, "isEnabled": is_enabled})
        except Exception as e:
            return self._error_response(e)

    async def handle_delete(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            alarm_id = request.match_info["alarm_id"]
            await asyncio.to_thread(self.store.remove_alarm, auth, alarm_id)
            return self._json_response({"ok": True, "id": alarm_id})
        except Exception as e:
            return self._error_response(e)
