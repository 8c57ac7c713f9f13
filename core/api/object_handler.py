import asyncio

from aiohttp import web

from core.api.base_handler import BaseHandler
from services.auth.identity import IdentityClient
from services.errors import InvalidImage
from services.objects.catalog import ObjectCatalog
from services.objects.pipeline import UploadPipeline
from services.storage.models import BlobMetadata

TAG = __name__


class ObjectHandler(BaseHandler):
    """Scanned-object gallery: list, scan (upload), delete, live updates and storage reconciliation."""

    def __init__(
        self,
        config: dict,
        identity: IdentityClient,
        pipeline: UploadPipeline,
        catalog: ObjectCatalog,
    ):
        super().__init__(config, identity)
        self.pipeline = pipeline
        self.catalog = catalog

    async def handle_list(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            if request.query.get("source") == "storage":
                # Rebuilt from the bucket listing; never touches the catalog.
                objects = await asyncio.to_thread(self.catalog.list_blobs, auth)
            else:
                objects = await asyncio.to_thread(self.catalog.list_objects, auth)
            return self._json_response(
                {"ok": True, "objects": [obj.to_payload() for obj in objects]}
            )
        except Exception as e:
            return self._error_response(e)

    async def handle_upload(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            if not request.content_type.startswith("multipart/"):
                raise InvalidImage("Expected a multipart body with an image part")
            form = await request.post()
            image = form.get("image")
            if not isinstance(image, web.FileField):
                raise InvalidImage("Missing image part")
            image_data = image.file.read()
            name = str(form.get("name") or "")
            self.logger.bind(tag=TAG).info(
                f"Scan upload from {auth.user_id}: {len(image_data)} bytes, name={name!r}"
            )
            scanned = await asyncio.to_thread(self.pipeline.upload, auth, image_data, name)
            return self._json_response({"ok": True, "object": scanned.to_payload()}, status=201)
        except Exception as e:
            return self._error_response(e)

    async def handle_delete(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            object_id = request.match_info["object_id"]
            await asyncio.to_thread(self.catalog.delete_object, auth, object_id)
            return self._json_response({"ok": True, "id": object_id})
        except Exception as e:
            return self._error_response(e)

    async def handle_get(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            object_id = request.match_info["object_id"]
            scanned = await asyncio.to_thread(self.catalog.get_object, auth, object_id)
            return self._json_response({"ok": True, "object": scanned.to_payload()})
        except Exception as e:
            return self._error_response(e)

    async def handle_live(self, request: web.Request) -> web.StreamResponse:
        return await self._stream_snapshots(
            request, self.catalog.subscribe, lambda obj: obj.to_payload(), "objects"
        )

    async def handle_orphans(self, request: web.Request) -> web.Response:
        """Blobs under the user's object prefix that no catalog entry references."""
        try:
            auth = await self.resolve_auth(request)
            orphans = await asyncio.to_thread(self.catalog.find_orphan_blobs, auth)
            return self._json_response(
                {"ok": True, "orphans": [_blob_payload(item) for item in orphans]}
            )
        except Exception as e:
            return self._error_response(e)

    async def handle_reconcile(self, request: web.Request) -> web.Response:
        try:
            auth = await self.resolve_auth(request)
            deleted = await asyncio.to_thread(self.catalog.delete_orphan_blobs, auth)
            self.logger.bind(tag=TAG).info(f"Reconciled storage for {auth.user_id}: {deleted} removed")
            return self._json_response({"ok": True, "deleted": deleted})
        except Exception as e:
            return self._error_response(e)


def _blob_payload(item: BlobMetadata) -> dict:
    return {
        "path": item.path,
        "size": item.size,
        "contentType": item.content_type,
        "timeCreated": item.time_created.isoformat() if item.time_created else None,
    }
