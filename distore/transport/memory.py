"""
In-Memory Transport

A dict-backed Transport with the same contract as the Discord adapter:
monotonically increasing message ids, newest-first paged history, and the
attachment size limit enforced with PayloadTooLarge. Used by the test suite
and by code that embeds the store without a real backend.
"""

import itertools
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

from ..errors import NotFound, PayloadTooLarge
from .base import (
    BackendLimits, HistoryItem, HistoryPage, Reference, Transport, check_cursor,
)


@dataclass
class StoredMessage:
    """A message held by the memory backend."""
    reference: Reference
    content: str
    filename: Optional[str]
    blob: Optional[bytes]
    timestamp: datetime


class MemoryTransport(Transport):
    """
    Transport that keeps every message in process memory.

    Message ids start at a Discord-like snowflake value so textual references
    look like real ones.
    """

    def __init__(self, limits: Optional[BackendLimits] = None,
                 start_id: int = 1_100_000_000_000_000_000):
        self.limits = limits or BackendLimits()
        self._ids = itertools.count(start_id)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._messages: Dict[Reference, StoredMessage] = {}
        self._channels: Dict[str, List[Reference]] = {}

        # Statistics
        self.publish_calls = 0
        self.fetch_calls = 0

    def _next_timestamp(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    async def publish(self, channel: str, blob: bytes, filename: str,
                      content: str = "") -> Reference:
        self.publish_calls += 1
        if len(blob) > self.limits.max_attachment_size:
            raise PayloadTooLarge(
                f"Attachment {filename} is {len(blob):,} bytes, "
                f"limit is {self.limits.max_attachment_size:,}"
            )

        return self._store(channel, content, filename, bytes(blob))

    def post_text(self, channel: str, content: str) -> Reference:
        """Post a message without attachment (chatter in the channel)."""
        return self._store(channel, content, None, None)

    def _store(self, channel: str, content: str, filename: Optional[str],
               blob: Optional[bytes]) -> Reference:
        reference = Reference(str(channel), str(next(self._ids)))
        self._messages[reference] = StoredMessage(
            reference=reference,
            content=content,
            filename=filename,
            blob=blob,
            timestamp=self._next_timestamp(),
        )
        self._channels.setdefault(str(channel), []).append(reference)
        return reference

    async def fetch(self, reference: Reference) -> bytes:
        self.fetch_calls += 1
        message = self._messages.get(reference)
        if message is None or message.blob is None:
            raise NotFound(f"No attachment at {reference}")
        return message.blob

    async def list_recent(self, channel: str, before: Optional[str] = None,
                          limit: int = 100) -> HistoryPage:
        references = self._channels.get(str(channel), [])
        newest_first = sorted(references, key=lambda r: int(r.message_id), reverse=True)
        if before is not None:
            before = int(check_cursor(before))
            newest_first = [r for r in newest_first if int(r.message_id) < before]

        page = newest_first[:limit]
        items = [
            HistoryItem(
                reference=ref,
                content=self._messages[ref].content,
                timestamp=self._messages[ref].timestamp,
                filenames=[self._messages[ref].filename] if self._messages[ref].filename else [],
            )
            for ref in page
        ]
        next_cursor = page[-1].message_id if len(newest_first) > limit else None
        return HistoryPage(items=items, next_cursor=next_cursor)

    def corrupt(self, reference: Reference, offset: int = 0):
        """Flip one byte of a stored attachment."""
        message = self._messages[reference]
        data = bytearray(message.blob)
        data[offset] ^= 0xFF
        message.blob = bytes(data)

    def messages(self, channel: str) -> List[StoredMessage]:
        """All messages in a channel, oldest first."""
        return [self._messages[ref] for ref in self._channels.get(str(channel), [])]
