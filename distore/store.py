"""
Object Store - Main Controller

Ties one Transport, one channel and one set of tuning values together and
exposes the three operations callers need:
- upload(file_path): store a file, get its root reference
- download(root, destination): rebuild a stored file
- list(): browse stored files in the channel
"""

from pathlib import Path
from typing import AsyncIterator, List, Optional, Union

from .catalogue import Catalogue, CatalogueEntry
from .config import Settings
from .file.manifest import Manifest
from .transfer.downloader import Downloader
from .transfer.progress import ProgressCallback
from .transfer.retry import RetryPolicy
from .transfer.uploader import DEFAULT_CONCURRENCY, Uploader
from .transport.base import BackendLimits, Reference, Transport
from .transport.discord import DiscordTransport


class ObjectStore:
    """
    A chat channel used as a file store.

    The store holds no state of its own beyond its collaborators; the
    channel history is the persistence.
    """

    def __init__(self, transport: Transport, channel: str,
                 limits: Optional[BackendLimits] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 concurrency: int = DEFAULT_CONCURRENCY,
                 chunk_size: Optional[int] = None):
        self.transport = transport
        self.channel = str(channel)
        self.limits = limits or BackendLimits()
        self.retry_policy = retry_policy or RetryPolicy()
        self.chunk_size = chunk_size

        self.uploader = Uploader(transport, self.limits, self.retry_policy, concurrency)
        self.downloader = Downloader(transport, self.limits, self.retry_policy, concurrency)
        self.catalogue = Catalogue(transport, self.retry_policy)

    @classmethod
    def for_discord(cls, token: str, channel: str, settings: Optional[Settings] = None,
                    concurrency: Optional[int] = None) -> 'ObjectStore':
        """Build a store backed by the Discord REST API."""
        settings = settings or Settings()
        limits = settings.limits()
        transport = DiscordTransport(token, limits=limits, timeout=settings.request_timeout)
        return cls(
            transport,
            channel,
            limits=limits,
            retry_policy=settings.retry_policy(),
            concurrency=concurrency if concurrency is not None else settings.concurrency,
            chunk_size=settings.chunk_size,
        )

    def parse_reference(self, text: Union[str, Reference]) -> Reference:
        """Accept "<channel>/<message>" or a bare message id in this channel."""
        if isinstance(text, Reference):
            return text
        return Reference.parse(text, default_channel=self.channel)

    async def upload(self, file_path: Path, chunk_size: Optional[int] = None,
                     progress_callback: ProgressCallback = None) -> Reference:
        return await self.uploader.upload(
            file_path, self.channel,
            chunk_size=chunk_size if chunk_size is not None else self.chunk_size,
            progress_callback=progress_callback,
        )

    async def download(self, root: Union[str, Reference],
                       destination: Union[Path, str, None] = None,
                       progress_callback: ProgressCallback = None) -> int:
        return await self.downloader.download(
            self.parse_reference(root), destination, progress_callback
        )

    async def fetch_manifest(self, root: Union[str, Reference]) -> Manifest:
        return await self.downloader.fetch_manifest(self.parse_reference(root))

    def list(self, cursor: Optional[str] = None) -> AsyncIterator[CatalogueEntry]:
        return self.catalogue.scan(self.channel, cursor=cursor)

    async def list_files(self, limit: Optional[int] = None,
                         cursor: Optional[str] = None) -> List[CatalogueEntry]:
        return await self.catalogue.collect(self.channel, limit=limit, cursor=cursor)

    async def close(self):
        await self.transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
