"""
Catalogue

The channel history is the only index of stored files. A listing pages
through history newest-first and keeps messages that carry the manifest
marker and whose manifest attachment decodes. Anything else in the channel
(chat, chunk messages, damaged manifests) is skipped silently. A manifest
that cannot be fetched after retries fails the whole listing.

The scan is an async generator: one history page in memory at a time, and
every entry carries a cursor from which a later scan resumes with the next
older entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, List, Optional

from .errors import ManifestError, NotFound
from .file.manifest import deserialize, is_manifest_message
from .transfer.retry import RetryPolicy, call_with_retry
from .transport.base import HistoryItem, Reference, Transport, check_cursor

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class CatalogueEntry:
    """A stored file as seen in the channel history."""
    file_name: str
    total_size: int
    chunk_count: int
    root: Reference
    published_at: datetime
    whole_file_hash: str
    # Pass to Catalogue.scan(cursor=...) to continue after this entry
    cursor: str

    def to_dict(self) -> dict:
        return {
            'file_name': self.file_name,
            'total_size': self.total_size,
            'chunk_count': self.chunk_count,
            'root': str(self.root),
            'published_at': self.published_at.isoformat(),
            'whole_file_hash': self.whole_file_hash,
            'cursor': self.cursor,
        }


class Catalogue:
    """Lists stored files by scanning a channel for manifest messages."""

    def __init__(self, transport: Transport, retry_policy: Optional[RetryPolicy] = None,
                 page_size: int = DEFAULT_PAGE_SIZE):
        self.transport = transport
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_size = page_size

    async def scan(self, channel: str, cursor: Optional[str] = None) -> AsyncIterator[CatalogueEntry]:
        """
        Yield stored files, newest first.

        Args:
            channel: Channel to scan
            cursor: Resume after the entry that produced this cursor

        Raises:
            ConfigError: cursor is not a message id
            TransportError: a history page or a manifest could not be fetched
        """
        before = check_cursor(cursor) if cursor is not None else None
        while True:
            page = await call_with_retry(
                lambda: self.transport.list_recent(channel, before=before, limit=self.page_size),
                self.retry_policy,
                f"history of {channel}",
            )

            for item in page.items:
                entry = await self._to_entry(item)
                if entry is not None:
                    yield entry

            if page.next_cursor is None:
                return
            before = page.next_cursor

    async def collect(self, channel: str, limit: Optional[int] = None,
                      cursor: Optional[str] = None) -> List[CatalogueEntry]:
        """Gather up to `limit` entries into a list."""
        entries = []
        async for entry in self.scan(channel, cursor=cursor):
            entries.append(entry)
            if limit is not None and len(entries) >= limit:
                break
        return entries

    async def _to_entry(self, item: HistoryItem) -> Optional[CatalogueEntry]:
        if not is_manifest_message(item.content, item.filenames):
            return None

        try:
            payload = await call_with_retry(
                lambda: self.transport.fetch(item.reference),
                self.retry_policy,
                f"manifest {item.reference}",
            )
            manifest = deserialize(payload)
        except (ManifestError, NotFound) as e:
            logger.debug(f"Skipping {item.reference}: {e}")
            return None

        return CatalogueEntry(
            file_name=manifest.file_name,
            total_size=manifest.total_size,
            chunk_count=manifest.chunk_count,
            root=item.reference,
            published_at=item.timestamp,
            whole_file_hash=manifest.whole_file_hash,
            cursor=item.reference.message_id,
        )
