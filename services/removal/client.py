from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

import requests

from services.errors import RemovalServiceError
from services.logging import setup_logging

TAG = __name__
logger = setup_logging()

DEFAULT_API_URL = "https://api.remove.bg/v1.0/removebg"


class RemoveBgClient:
    """Synchronous client for the remove.bg background-removal API."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        size: str = "auto",
        output_format: str = "png",
        image_type: str = "auto",
        bg_color: Optional[str] = "white",
        timeout: float = 60,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.size = size
        self.output_format = output_format
        self.image_type = image_type
        self.bg_color = bg_color
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Dict[str, Any], session: Optional[requests.Session] = None):
        section = config.get("removebg", {})
        return cls(
            section.get("api_key", ""),
            api_url=section.get("api_url", DEFAULT_API_URL),
            size=section.get("size", "auto"),
            output_format=section.get("format", "png"),
            image_type=section.get("type", "auto"),
            bg_color=section.get("bg_color", "white"),
            timeout=float(section.get("timeout", 60)),
            session=session,
        )

    def _options(self) -> Dict[str, str]:
        options = {
            "size": self.size,
            "format": self.output_format,
            "type": self.image_type,
        }
        if self.bg_color:
            options["bg_color"] = self.bg_color
        return options

    def remove_background(self, image_data: bytes) -> bytes:
        """Send the image inline (base64) and return the processed bytes."""
        payload = dict(self._options())
        payload["image_file_b64"] = base64.b64encode(image_data).decode("ascii")
        logger.bind(tag=TAG).info(
            f"Calling remove.bg with inline image ({len(image_data)} bytes)"
        )
        return self._post(json=payload)

    def remove_background_from_url(self, image_url: str) -> bytes:
        """Let remove.bg fetch the image from a (signed) URL."""
        payload = dict(self._options())
        payload["image_url"] = image_url
        logger.bind(tag=TAG).info("Calling remove.bg with image URL")
        return self._post(data=payload)

    def _post(self, **kwargs) -> bytes:
        if not self.api_key:
            raise RemovalServiceError(None, message="remove.bg API key is not configured")
        try:
            response = self._session.post(
                self.api_url,
                headers={"X-Api-Key": self.api_key},
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.bind(tag=TAG).error(f"remove.bg request failed: {exc}")
            raise RemovalServiceError(None, message=f"remove.bg request failed: {exc}") from exc

        if response.status_code != 200:
            titles = _error_titles(response)
            logger.bind(tag=TAG).error(
                f"remove.bg error: {response.status_code} {titles or response.text[:200]}"
            )
            raise RemovalServiceError(response.status_code, titles)

        logger.bind(tag=TAG).info(
            f"Background removed ({len(response.content)} bytes returned)"
        )
        return response.content


def _error_titles(response) -> List[str]:
    try:
        body = response.json()
    except ValueError:
        return []
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return []
    return [str(item.get("title")) for item in errors if isinstance(item, dict) and item.get("title")]
