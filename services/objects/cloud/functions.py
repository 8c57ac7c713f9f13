from __future__ import annotations

import functools
import os
from datetime import timedelta

import functions_framework

from services.catalog import firestore_client
from services.logging import setup_logging
from services.objects.trigger import ObjectProcessor
from services.removal.client import DEFAULT_API_URL, RemoveBgClient
from services.storage.blob_store import GcsBlobStore

TAG = __name__
logger = setup_logging()


@functions_framework.cloud_event
def process_image(cloud_event):
    """
    CloudEvent trigger for Cloud Storage finalize under users/*/objects/*.
    Environment vars:
      REMOVEBG_API_KEY: remove.bg API key
      FIREBASE_PROJECT_ID: optional Firestore project override
    """
    data = cloud_event.data or {}
    bucket = data.get("bucket")
    name = data.get("name")
    if not bucket or not name:
        logger.bind(tag=TAG).warning("No bucket/object name in event, ignoring")
        return "ignored"

    logger.bind(tag=TAG).info(f"Processing new image upload: gs://{bucket}/{name}")
    return _build_processor(bucket).process(name)


@functools.lru_cache(maxsize=4)
def _build_processor(bucket: str) -> ObjectProcessor:
    removal = RemoveBgClient(
        os.environ.get("REMOVEBG_API_KEY", ""),
        api_url=os.environ.get("REMOVEBG_API_URL", DEFAULT_API_URL),
    )
    return ObjectProcessor(
        GcsBlobStore(bucket),
        firestore_client.build_client(os.environ.get("FIREBASE_PROJECT_ID") or None),
        removal,
        signed_url_ttl=timedelta(minutes=int(os.environ.get("SIGNED_URL_MINUTES", "60"))),
    )
