import asyncio
import sys

from config.config_loader import load_config
from config.logger import setup_logging
from config.settings import check_config
from core.http_server import SimpleHttpServer
from services.alarms.store import AlarmStore
from services.auth.identity import IdentityClient
from services.catalog import firestore_client
from services.objects.catalog import ObjectCatalog
from services.objects.pipeline import REMOVAL_INLINE, PipelineSettings, UploadPipeline
from services.removal.client import RemoveBgClient
from services.storage.blob_store import GcsBlobStore

TAG = __name__
logger = setup_logging()


def build_server(config: dict) -> SimpleHttpServer:
    """Wire the stores once; every request shares them."""
    firebase = config.get("firebase", {})
    blob_store = GcsBlobStore(firebase["bucket"])
    client = firestore_client.build_client(firebase.get("project_id") or None)

    settings = PipelineSettings.from_config(config)
    removal = (
        RemoveBgClient.from_config(config)
        if settings.removal_mode == REMOVAL_INLINE
        else None
    )

    return SimpleHttpServer(
        config,
        identity=IdentityClient.from_config(config),
        alarm_store=AlarmStore(
            blob_store,
            client,
            jpeg_quality=int(config.get("alarms", {}).get("jpeg_quality", 70)),
        ),
        pipeline=UploadPipeline(blob_store, client, removal, settings),
        catalog=ObjectCatalog(blob_store, client),
    )


async def main():
    config = load_config()
    try:
        check_config(config)
    except ValueError as e:
        logger.bind(tag=TAG).error(str(e))
        sys.exit(1)

    server = build_server(config)
    logger.bind(tag=TAG).info(
        f"Starting WakeUp backend (removal mode: {server.object_handler.pipeline.settings.removal_mode})"
    )
    await server.start()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.bind(tag=TAG).info("Server stopped")
