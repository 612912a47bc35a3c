"""
Channel transports: where rendered notifications actually go.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .errors import TransportError
from .infra.http import HttpClient
from .interfaces import Transport, TransportRequest

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class LogTransport(Transport):
    """Writes notifications to the log. Useful for development and dry runs."""

    @property
    def name(self) -> str:
        return "LogTransport"

    async def send(self, request: TransportRequest) -> None:
        logger.info(f"Notification to {', '.join(request.recipients) or '-'}: {request.subject}")
        logger.debug(request.text)


class WebhookTransport(Transport):
    """POSTs the notification as JSON to the subscription's URL."""

    def __init__(self, http: Optional[HttpClient] = None, timeout: float = 30.0):
        self.http = http or HttpClient(timeout=timeout, max_retries=1)

    @property
    def name(self) -> str:
        return "WebhookTransport"

    async def send(self, request: TransportRequest) -> None:
        body = {
            "subject": request.subject,
            "text": request.text,
            "event": request.payload,
        }
        if len(request.recipients) != 1:
            raise TransportError(f"webhook needs exactly one url, got {len(request.recipients)}")
        url = request.recipients[0]
        try:
            await self.http.post_json(url, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"webhook {url} failed: {e}") from e
        logger.debug(f"Webhook delivered to {url}")

    async def close(self) -> None:
        await self.http.close()


class ResendEmailTransport(Transport):
    """Sends e-mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        http: Optional[HttpClient] = None,
        timeout: float = 30.0,
    ):
        self.from_email = from_email
        self.http = http or HttpClient(timeout=timeout, max_retries=1)
        self.http.set_default_header("Authorization", f"Bearer {api_key}")

    @property
    def name(self) -> str:
        return "ResendEmailTransport"

    async def send(self, request: TransportRequest) -> None:
        body = {
            "from": self.from_email,
            "to": request.recipients,
            "subject": request.subject,
            "html": request.html,
            "text": request.text,
        }
        try:
            reply = await self.http.post_json(RESEND_API_URL, body)
        except aiohttp.ClientResponseError as e:
            raise TransportError(f"resend API error ({e.status}): {e.message}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"resend API unreachable: {e}") from e
        logger.debug(f"Resend accepted e-mail {(reply or {}).get('id')} for {len(request.recipients)} recipients")

    async def close(self) -> None:
        await self.http.close()
