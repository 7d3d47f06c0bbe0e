"""
Discord Transport

Design Decision: HTTP Client
============================

Options Considered:
1. discord.py - Full gateway client, needs a websocket connection and
   event loop lifecycle just to post a message
2. aiohttp against the REST API - Three endpoints, no gateway
3. httpx - Fine too, but the rest of the stack is aiohttp-shaped

Decision: aiohttp + REST API v10
- POST   /channels/{channel}/messages            publish (multipart)
- GET    /channels/{channel}/messages/{message}  fetch (then CDN download)
- GET    /channels/{channel}/messages?before=    list_recent

Response bodies are validated with pydantic models so a surprising payload
turns into a TransportError instead of a KeyError deep in the store.

Status Mapping:
| Status          | Raised                           |
|-----------------|----------------------------------|
| 429             | RateLimited(retry_after)         |
| 413, code 40005 | PayloadTooLarge                  |
| 404             | NotFound                         |
| 401, 403        | ConfigError (token / permissions)|
| 5xx, network    | TransportError                   |
| other 4xx       | DistoreError                     |
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, List, Optional

import aiohttp
from pydantic import BaseModel, ValidationError

from .. import __version__
from ..errors import (
    ConfigError, DistoreError, NotFound, PayloadTooLarge, RateLimited, TransportError,
)
from .base import (
    BackendLimits, HistoryItem, HistoryPage, Reference, Transport, check_cursor,
)

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
USER_AGENT = f"DiscordBot (https://github.com/obvMellow/distore, {__version__})"

# Discord JSON error code for "Request entity too large"
ERROR_ENTITY_TOO_LARGE = 40005


# === Pydantic Models ===

class DiscordAttachment(BaseModel):
    """Attachment object, as much of it as we use."""
    id: str
    filename: str
    size: int
    url: str


class DiscordMessage(BaseModel):
    """Message object, as much of it as we use."""
    id: str
    channel_id: str
    content: str = ""
    timestamp: datetime
    attachments: List[DiscordAttachment] = []


class DiscordTransport(Transport):
    """Transport that stores blobs as Discord message attachments."""

    def __init__(self, token: str, limits: Optional[BackendLimits] = None,
                 base_url: str = DISCORD_API, timeout: float = 120.0,
                 session: Optional[aiohttp.ClientSession] = None):
        if not token:
            raise ConfigError("No Discord token set; run `distore config token <TOKEN>`")
        self.token = token
        self.limits = limits or BackendLimits()
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': USER_AGENT},
            )
            self._owns_session = True
        return self._session

    @property
    def _auth_headers(self) -> dict:
        # Only sent to the API, never to the attachment CDN
        return {'Authorization': f"Bot {self.token}"}

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    # === Transport API ===

    async def publish(self, channel: str, blob: bytes, filename: str,
                      content: str = "") -> Reference:
        if len(blob) > self.limits.max_attachment_size:
            raise PayloadTooLarge(
                f"Attachment {filename} is {len(blob):,} bytes, "
                f"limit is {self.limits.max_attachment_size:,}"
            )

        form = aiohttp.FormData()
        form.add_field(
            'payload_json',
            json.dumps({
                'content': content,
                'attachments': [{'id': 0, 'filename': filename}],
            }),
            content_type='application/json',
        )
        form.add_field('files[0]', blob, filename=filename,
                       content_type='application/octet-stream')

        data = await self._api('POST', f"/channels/{channel}/messages", data=form)
        message = self._parse(DiscordMessage, data)
        logger.debug(f"Published {filename} ({len(blob):,} bytes) as {message.id}")
        return Reference(str(message.channel_id), message.id)

    async def fetch(self, reference: Reference) -> bytes:
        data = await self._api(
            'GET', f"/channels/{reference.channel_id}/messages/{reference.message_id}"
        )
        message = self._parse(DiscordMessage, data)
        if not message.attachments:
            raise NotFound(f"Message {reference} has no attachment")

        attachment = message.attachments[0]
        return await self._download(attachment.url)

    async def list_recent(self, channel: str, before: Optional[str] = None,
                          limit: int = 100) -> HistoryPage:
        limit = max(1, min(limit, 100))
        params = {'limit': str(limit)}
        if before is not None:
            params['before'] = check_cursor(before)

        data = await self._api('GET', f"/channels/{channel}/messages", params=params)
        if not isinstance(data, list):
            raise TransportError(f"Unexpected history response: {type(data).__name__}")

        messages = [self._parse(DiscordMessage, m) for m in data]
        items = [
            HistoryItem(
                reference=Reference(str(m.channel_id), m.id),
                content=m.content,
                timestamp=m.timestamp,
                filenames=[a.filename for a in m.attachments],
            )
            for m in messages
        ]
        next_cursor = messages[-1].id if len(messages) == limit else None
        return HistoryPage(items=items, next_cursor=next_cursor)

    # === HTTP helpers ===

    async def _api(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method, url, headers=self._auth_headers, **kwargs
            ) as resp:
                if resp.status >= 400:
                    await self._raise_for_status(resp, f"{method} {path}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method} {path} failed: {e!r}") from e

    async def _download(self, url: str) -> bytes:
        try:
            async with self._get_session().get(url) as resp:
                if resp.status >= 400:
                    await self._raise_for_status(resp, "attachment download")
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Attachment download failed: {e!r}") from e

    @staticmethod
    async def _raise_for_status(resp: aiohttp.ClientResponse, what: str):
        try:
            body = await resp.json(content_type=None)
        except (ValueError, aiohttp.ContentTypeError):
            body = None
        if not isinstance(body, dict):
            body = {}
        detail = body.get('message', resp.reason)

        if resp.status == 429:
            retry_after = body.get('retry_after') or resp.headers.get('Retry-After') or 1.0
            raise RateLimited(float(retry_after), f"{what}: rate limited ({detail})")
        if resp.status == 413 or body.get('code') == ERROR_ENTITY_TOO_LARGE:
            raise PayloadTooLarge(f"{what}: payload too large ({detail})")
        if resp.status == 404:
            raise NotFound(f"{what}: not found ({detail})")
        if resp.status == 401:
            raise ConfigError(f"{what}: Discord rejected the token ({detail})")
        if resp.status == 403:
            raise ConfigError(f"{what}: no permission for this channel ({detail})")
        if resp.status >= 500:
            raise TransportError(f"{what}: server error {resp.status} ({detail})")
        raise DistoreError(f"{what}: request failed with {resp.status} ({detail})")

    @staticmethod
    def _parse(model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TransportError(f"Unexpected response from Discord: {e}") from e
