import asyncio

from aiohttp import web

from config.logger import setup_logging
from core.api.alarm_handler import AlarmHandler
from core.api.auth_handler import AuthHandler
from core.api.object_handler import ObjectHandler
from services.alarms.store import AlarmStore
from services.auth.identity import IdentityClient
from services.objects.catalog import ObjectCatalog
from services.objects.pipeline import UploadPipeline

TAG = __name__


class SimpleHttpServer:
    def __init__(
        self,
        config: dict,
        *,
        identity: IdentityClient,
        alarm_store: AlarmStore,
        pipeline: UploadPipeline,
        catalog: ObjectCatalog,
    ):
        self.config = config
        self.logger = setup_logging()
        self.auth_handler = AuthHandler(config, identity)
        self.alarm_handler = AlarmHandler(config, identity, alarm_store)
        self.object_handler = ObjectHandler(config, identity, pipeline, catalog)

    def build_app(self) -> web.Application:
        server_config = self.config.get("server", {})
        app = web.Application(
            client_max_size=int(server_config.get("client_max_size", 20 * 1024 * 1024))
        )
        app.add_routes(
            [
                web.post("/auth/login", self.auth_handler.handle_login),
                web.post("/auth/register", self.auth_handler.handle_register),
                web.get("/alarms", self.alarm_handler.handle_list),
                web.get("/alarms/live", self.alarm_handler.handle_live),
                web.post("/alarms", self.alarm_handler.handle_create),
                web.patch("/alarms/{alarm_id}", self.alarm_handler.handle_update),
                web.delete("/alarms/{alarm_id}", self.alarm_handler.handle_delete),
                web.post("/alarms/{alarm_id}/toggle", self.alarm_handler.handle_toggle),
                web.get("/objects", self.object_handler.handle_list),
                web.post("/objects", self.object_handler.handle_upload),
                web.get("/objects/live", self.object_handler.handle_live),
                web.get("/objects/orphans", self.object_handler.handle_orphans),
                web.post("/objects/reconcile", self.object_handler.handle_reconcile),
                web.get("/objects/{object_id}", self.object_handler.handle_get),
                web.delete("/objects/{object_id}", self.object_handler.handle_delete),
                web.options("/{tail:.*}", self.object_handler.handle_options),
            ]
        )
        return app

    async def start(self):
        server_config = self.config["server"]
        host = server_config.get("ip", "0.0.0.0")
        port = int(server_config.get("http_port", 8003))

        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        self.logger.bind(tag=TAG).info(f"HTTP API listening on http://{host}:{port}")

        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runner.cleanup()
