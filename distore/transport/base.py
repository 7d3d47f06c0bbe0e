"""
Transport Adapter Interface

Design Decision: Backend Boundary
=================================

The store only needs three things from a chat backend:

1. publish(channel, blob)      -> Reference
2. fetch(reference)            -> blob
3. list_recent(channel, cursor) -> page of history items

Everything else about the backend (auth, HTTP, rate limit headers, JSON
shapes) stays inside the adapter. Swapping Discord for another service means
writing one new Transport subclass.

Backend limits (attachment size, manifest size) are runtime facts and travel
as a BackendLimits value injected into the uploader/downloader, never as
module constants.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..errors import ConfigError

# Discord's attachment limit for non-boosted servers
DEFAULT_MAX_ATTACHMENT_SIZE = 10 * 1024 * 1024
# Multipart boundaries, headers and payload_json
DEFAULT_FRAMING_OVERHEAD = 4 * 1024


@dataclass(frozen=True)
class BackendLimits:
    """Size constraints of the storage backend."""
    max_attachment_size: int = DEFAULT_MAX_ATTACHMENT_SIZE
    framing_overhead: int = DEFAULT_FRAMING_OVERHEAD
    # Serialized manifest limit; never above the largest chunk, since the
    # manifest is posted as an attachment itself
    max_manifest_size: Optional[int] = None
    # Expected length of a textual reference, used to estimate manifest size
    reference_size_hint: int = 41

    def __post_init__(self):
        if self.max_attachment_size <= self.framing_overhead:
            raise ConfigError(
                f"max_attachment_size ({self.max_attachment_size}) must exceed "
                f"framing_overhead ({self.framing_overhead})"
            )

    @property
    def max_chunk_size(self) -> int:
        """Largest chunk that still fits an attachment with framing."""
        return self.max_attachment_size - self.framing_overhead

    @property
    def manifest_limit(self) -> int:
        if self.max_manifest_size is not None:
            return min(self.max_manifest_size, self.max_chunk_size)
        return self.max_chunk_size


@dataclass(frozen=True, order=True)
class Reference:
    """
    Opaque handle to one backend message.

    The textual form is "<channel_id>/<message_id>". Chunk references and
    root references share this type; a root reference is simply the
    reference of the message carrying a manifest.
    """
    channel_id: str
    message_id: str

    def __str__(self) -> str:
        return f"{self.channel_id}/{self.message_id}"

    @classmethod
    def parse(cls, text: str, default_channel: Optional[str] = None) -> 'Reference':
        """
        Parse "<channel>/<message>" or a bare "<message>".

        A bare message id needs default_channel.
        """
        text = str(text).strip()
        if '/' in text:
            channel_id, _, message_id = text.partition('/')
        else:
            channel_id, message_id = default_channel, text

        if not channel_id or not message_id:
            raise ConfigError(
                f"Invalid reference '{text}': expected <channel>/<message>"
                + ("" if default_channel else " or a configured channel")
            )
        if '/' in message_id:
            raise ConfigError(f"Invalid reference '{text}'")
        return cls(channel_id=str(channel_id), message_id=message_id)


def check_cursor(cursor: str) -> str:
    """History cursors are message ids: decimal digits only."""
    cursor = str(cursor).strip()
    if not cursor.isascii() or not cursor.isdigit():
        raise ConfigError(f"Invalid cursor '{cursor}': expected a message id")
    return cursor


@dataclass
class HistoryItem:
    """One message from a channel's history."""
    reference: Reference
    content: str
    timestamp: datetime
    filenames: List[str] = field(default_factory=list)


@dataclass
class HistoryPage:
    """A page of history, newest first."""
    items: List[HistoryItem]
    # Pass as `before` to get the next (older) page; None when exhausted
    next_cursor: Optional[str] = None


class Transport(ABC):
    """
    Narrow async interface to the message backend.

    Every call may be slow, rate limited or transiently unavailable:
    - RateLimited(retry_after) when the backend asks to back off
    - TransportError for network/backend faults
    - PayloadTooLarge when a blob exceeds the attachment limit
    - NotFound when a reference does not resolve
    """

    @abstractmethod
    async def publish(self, channel: str, blob: bytes, filename: str,
                      content: str = "") -> Reference:
        """Post blob as an attachment of a new message."""

    @abstractmethod
    async def fetch(self, reference: Reference) -> bytes:
        """Return the bytes of the message's (first) attachment."""

    @abstractmethod
    async def list_recent(self, channel: str, before: Optional[str] = None,
                          limit: int = 100) -> HistoryPage:
        """List messages older than `before` (or the newest), newest first."""

    async def close(self):
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
