"""
Client for the extraction worker.

The worker fetches the page, applies the blueprint's extraction rules and
answers with the records it found. This module only speaks its HTTP API.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ExtractionError
from .infra.http import HttpClient
from .interfaces import Extractor
from .models import ExtractionRequest

logger = logging.getLogger(__name__)

EXTRACT_PATH = "/api/extract"


class HttpExtractor(Extractor):
    """POSTs extraction requests to ``{worker_url}/api/extract``."""

    def __init__(
        self,
        worker_url: str,
        api_key: Optional[str] = None,
        http: Optional[HttpClient] = None,
        timeout: float = 120.0,
    ):
        self.endpoint = worker_url.rstrip("/") + EXTRACT_PATH
        self.http = http or HttpClient(timeout=timeout)
        if api_key:
            self.http.set_default_header("Authorization", f"Bearer {api_key}")

    async def extract(self, request: ExtractionRequest) -> List[Dict[str, Any]]:
        try:
            reply = await self.http.post_json(self.endpoint, request.model_dump())
        except aiohttp.ClientResponseError as e:
            raise ExtractionError(f"extraction worker returned {e.status}: {e.message}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExtractionError(f"extraction worker unreachable: {e}") from e

        return parse_reply(reply, request.url)

    async def close(self) -> None:
        await self.http.close()


def parse_reply(reply: Any, url: str = "") -> List[Dict[str, Any]]:
    """Pull the record list out of a worker reply.

    ``{"entities": [...]}`` is a success (``errors`` alongside are logged);
    ``{"error": "..."}`` or anything else is an ExtractionError.
    """
    if not isinstance(reply, dict):
        raise ExtractionError(f"unexpected reply from extraction worker: {type(reply).__name__}")

    entities = reply.get("entities")
    if entities is None:
        raise ExtractionError(str(reply.get("error") or "extraction worker returned no entities"))
    if not isinstance(entities, list):
        raise ExtractionError("extraction worker returned a non-list 'entities' field")

    for message in reply.get("errors") or []:
        logger.warning(f"Extraction warning for {url}: {message}")
    return entities
