"""
Distore - files stored as chunked attachments in a chat channel.

A file is split into size-bounded chunks, each chunk is posted as an
attachment, and a manifest listing the chunk messages is posted last. The
manifest message's reference (the root reference) is all that is needed to
get the file back.
"""

__version__ = "0.3.0"

from .errors import (
    DistoreError, ConfigError, TransportError, RateLimited, PayloadTooLarge,
    ManifestTooLarge, IntegrityError, NotFound, ManifestNotFound, ManifestError,
    CorruptManifest, UnsupportedVersion, UploadFailed, DownloadFailed,
)
from .transport import BackendLimits, Reference, Transport, MemoryTransport, DiscordTransport
from .file import Manifest, ManifestChunk, FileChunker
from .transfer import Uploader, Downloader, RetryPolicy, TransferProgress
from .catalogue import Catalogue, CatalogueEntry
from .store import ObjectStore

__all__ = [
    '__version__',
    'DistoreError',
    'ConfigError',
    'TransportError',
    'RateLimited',
    'PayloadTooLarge',
    'ManifestTooLarge',
    'IntegrityError',
    'NotFound',
    'ManifestNotFound',
    'ManifestError',
    'CorruptManifest',
    'UnsupportedVersion',
    'UploadFailed',
    'DownloadFailed',
    'BackendLimits',
    'Reference',
    'Transport',
    'MemoryTransport',
    'DiscordTransport',
    'Manifest',
    'ManifestChunk',
    'FileChunker',
    'Uploader',
    'Downloader',
    'RetryPolicy',
    'TransferProgress',
    'Catalogue',
    'CatalogueEntry',
    'ObjectStore',
]
