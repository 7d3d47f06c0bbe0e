"""
Chunk Uploader

Design Decision: Upload Strategy
================================

Options Considered:
1. Sequential upload, one chunk at a time
   - Simple, but one slow request stalls everything
2. One task per chunk, all at once
   - Fast until the backend rate limits every request
3. Fixed-size worker pool fed by a bounded queue
   - Concurrency capped at a known number of in-flight requests
   - Memory capped at about 2 x concurrency chunks

Decision: Fixed-size worker pool
- A producer reads the file once, hashing the whole file and each chunk
- `concurrency` workers publish chunks and retry them independently
- Results go into a preallocated list keyed by chunk index, so the order in
  the manifest never depends on which request finished first

Upload Flow:
1. Validate chunk size and concurrency (no network yet)
2. Pick a chunk size whose manifest fits the backend limit (tiering)
3. Publish all chunks through the worker pool
4. Build, check and publish the manifest
5. Return the manifest's reference (the root reference)

Orphaned Chunks:
There is no distributed transaction. If the upload fails or is cancelled
after some chunks were published, those chunk messages stay in the channel
with no manifest pointing at them. This is accepted: the backend offers no
delete we rely on, and a failed upload never returns a root reference, so
orphans are invisible to download and list. Nothing tries to clean them up.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from ..errors import ConfigError, ManifestTooLarge, TransportError, UploadFailed
from ..file.chunker import Chunk, FileChunker, get_chunk_count, part_name, validate_chunk_size
from ..file.manifest import (
    MANIFEST_FILENAME, Manifest, ManifestChunk, estimate_manifest_size, serialize, summary_text,
)
from ..transport.base import BackendLimits, Reference, Transport
from .progress import ProgressCallback, TransferProgress, notify
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4


def check_concurrency(concurrency: int) -> int:
    if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
        raise ConfigError(f"Concurrency must be a positive integer, got {concurrency!r}")
    return concurrency


class Uploader:
    """
    Publishes a file as chunk messages plus one manifest message.

    Backend limits and retry policy are injected, so the same uploader
    works against any Transport.
    """

    def __init__(self, transport: Transport, limits: Optional[BackendLimits] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 concurrency: int = DEFAULT_CONCURRENCY):
        self.transport = transport
        self.limits = limits or BackendLimits()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = check_concurrency(concurrency)

    def select_chunk_size(self, file_size: int, chunk_size: int, file_name: str) -> int:
        """
        Grow chunk_size until the manifest fits the backend limit.

        Doubles the size, capped at the backend maximum.

        Raises:
            ManifestTooLarge: even the largest chunk size gives too many chunks
        """
        size = chunk_size
        while True:
            count = get_chunk_count(file_size, size)
            estimate = estimate_manifest_size(count, size, file_name, self.limits)
            if estimate <= self.limits.manifest_limit:
                if size != chunk_size:
                    logger.info(f"Raised chunk size from {chunk_size:,} to {size:,} bytes "
                                f"to keep the manifest under {self.limits.manifest_limit:,} bytes")
                return size
            if size >= self.limits.max_chunk_size:
                raise ManifestTooLarge(
                    f"{file_name} needs {count:,} chunks even at {size:,} bytes per chunk; "
                    f"its manifest (~{estimate:,} bytes) exceeds the backend limit of "
                    f"{self.limits.manifest_limit:,} bytes"
                )
            size = min(size * 2, self.limits.max_chunk_size)

    async def upload(self, file_path: Path, channel: str,
                     chunk_size: Optional[int] = None,
                     progress_callback: ProgressCallback = None) -> Reference:
        """
        Upload a file and return its root reference.

        Args:
            file_path: File to upload
            channel: Channel to publish into
            chunk_size: Bytes per chunk (default: backend maximum)
            progress_callback: Called after every published chunk

        Raises:
            ConfigError: bad chunk size, missing file
            ManifestTooLarge, PayloadTooLarge: size policy violations
            UploadFailed: retry budget exhausted; no root reference exists
        """
        file_path = Path(file_path)
        requested = chunk_size if chunk_size is not None else self.limits.max_chunk_size
        validate_chunk_size(requested, self.limits)
        if not file_path.is_file():
            raise ConfigError(f"File not found: {file_path}")

        file_name = file_path.name
        file_size = file_path.stat().st_size
        chunk_size = self.select_chunk_size(file_size, requested, file_name)
        chunk_count = get_chunk_count(file_size, chunk_size)

        logger.info(f"Uploading {file_name}: {file_size:,} bytes in {chunk_count} chunks "
                    f"of {chunk_size:,} bytes, {self.concurrency} workers")

        progress = TransferProgress(
            direction='upload',
            file_name=file_name,
            total_chunks=chunk_count,
            total_bytes=file_size,
            phase='transferring',
        )
        notify(progress_callback, progress)

        chunker = FileChunker(chunk_size)
        # One slot per chunk index, each written exactly once
        slots: List[Optional[ManifestChunk]] = [None] * chunk_count

        try:
            await self._publish_chunks(chunker, file_path, channel, slots,
                                       progress, progress_callback)

            if chunker.bytes_read != file_size or any(s is None for s in slots):
                raise UploadFailed(f"{file_name} changed while it was being uploaded")

            manifest = Manifest(
                file_name=file_name,
                total_size=file_size,
                chunk_size=chunk_size,
                whole_file_hash=chunker.file_hash,
                chunks=tuple(slots),
            ).validate()

            progress.phase = 'manifest'
            notify(progress_callback, progress)
            root = await self._publish_manifest(manifest, channel)
        except TransportError as e:
            progress.phase = 'failed'
            notify(progress_callback, progress)
            self._log_orphans(file_name, channel, slots)
            raise UploadFailed(f"Upload of {file_name} failed after retries: {e}",
                               retried=True) from e
        except BaseException:
            progress.phase = 'failed'
            notify(progress_callback, progress)
            self._log_orphans(file_name, channel, slots)
            raise

        progress.phase = 'complete'
        notify(progress_callback, progress)
        logger.info(f"Uploaded {file_name} as {root}")
        return root

    async def _publish_chunks(self, chunker: FileChunker, file_path: Path, channel: str,
                              slots: List[Optional[ManifestChunk]],
                              progress: TransferProgress,
                              progress_callback: ProgressCallback):
        """Run the producer and the worker pool until every chunk is published."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.concurrency)
        file_name = file_path.name

        async def produce():
            async for chunk in chunker.chunk_file(file_path):
                if chunk.index >= len(slots):
                    raise UploadFailed(f"{file_name} grew while it was being uploaded")
                await queue.put(chunk)
            for _ in range(self.concurrency):
                await queue.put(None)

        async def work(worker_id: int):
            while True:
                chunk: Optional[Chunk] = await queue.get()
                if chunk is None:
                    return

                reference = await call_with_retry(
                    lambda: self.transport.publish(
                        channel, chunk.data, part_name(file_name, chunk.index)
                    ),
                    self.retry_policy,
                    f"chunk {chunk.index} of {file_name}",
                )
                self._record(slots, ManifestChunk(
                    index=chunk.index,
                    reference=reference,
                    hash=chunk.hash,
                    size=chunk.size,
                ))

                progress.completed_chunks += 1
                progress.bytes_transferred += chunk.size
                logger.debug(f"Worker {worker_id} published chunk {chunk.index} -> {reference}")
                notify(progress_callback, progress)

        tasks = [asyncio.ensure_future(produce())]
        tasks += [asyncio.ensure_future(work(i)) for i in range(self.concurrency)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    @staticmethod
    def _record(slots: List[Optional[ManifestChunk]], entry: ManifestChunk):
        # No await between check and store, so this is atomic on the event loop
        if slots[entry.index] is not None:
            raise RuntimeError(f"Chunk {entry.index} recorded twice")
        slots[entry.index] = entry

    async def _publish_manifest(self, manifest: Manifest, channel: str) -> Reference:
        payload = serialize(manifest)
        if len(payload) > self.limits.manifest_limit:
            raise ManifestTooLarge(
                f"Manifest for {manifest.file_name} is {len(payload):,} bytes, "
                f"limit is {self.limits.manifest_limit:,}; use a larger chunk size"
            )

        return await call_with_retry(
            lambda: self.transport.publish(
                channel, payload, MANIFEST_FILENAME, summary_text(manifest)
            ),
            self.retry_policy,
            f"manifest of {manifest.file_name}",
        )

    @staticmethod
    def _log_orphans(file_name: str, channel: str, slots: List[Optional[ManifestChunk]]):
        published = [s for s in slots if s is not None]
        if published:
            logger.warning(
                f"Upload of {file_name} did not complete; {len(published)} chunk message(s) "
                f"remain in channel {channel} without a manifest"
            )
