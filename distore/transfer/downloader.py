"""
Chunk Downloader

Design Decision: Download Strategy
==================================

Options Considered:
1. Fetch all chunks, then write the file
   - Simple, but holds the entire file in memory
2. Fetch in parallel, write each chunk at its offset
   - Needs random-access writes and a second pass for the whole-file hash
3. Fetch in parallel, write in order through a reorder buffer
   - Chunks that arrive early wait in a dict keyed by index
   - The file and the whole-file hash only ever advance in index order

Decision: Worker pool + in-order writer (option 3)
- Same bounded pool and retry policy as the uploader
- Each chunk is verified against its manifest hash as soon as it arrives
- Bytes go to a temporary file next to the destination; only a fully
  verified file is moved into place (atomic rename)

Download Flow:
1. Fetch and decode the manifest
2. Fetch chunks in parallel, verify each one
3. Write them in manifest order to a temp file, hashing as we go
4. Check total size and whole-file hash
5. Atomically replace the destination with the temp file
"""

import asyncio
import hashlib
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles
import aiofiles.os

from ..errors import (
    DownloadFailed, IntegrityError, ManifestNotFound, NotFound, TransportError,
)
from ..file.chunker import verify_chunk
from ..file.manifest import Manifest, ManifestChunk, deserialize
from ..transport.base import BackendLimits, Reference, Transport
from .progress import ProgressCallback, TransferProgress, notify
from .retry import RetryPolicy, call_with_retry
from .uploader import DEFAULT_CONCURRENCY, check_concurrency

logger = logging.getLogger(__name__)


class Downloader:
    """
    Rebuilds a stored file from its root reference.

    Never leaves a partial file at the destination.
    """

    def __init__(self, transport: Transport, limits: Optional[BackendLimits] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 concurrency: int = DEFAULT_CONCURRENCY):
        self.transport = transport
        self.limits = limits or BackendLimits()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = check_concurrency(concurrency)

    async def fetch_manifest(self, root: Reference) -> Manifest:
        """
        Fetch and decode the manifest behind a root reference.

        Raises:
            ManifestNotFound: the reference does not resolve
            UnsupportedVersion, CorruptManifest: the attachment is not a
                manifest this reader can use
            DownloadFailed: retry budget exhausted
        """
        try:
            payload = await call_with_retry(
                lambda: self.transport.fetch(root),
                self.retry_policy,
                f"manifest {root}",
            )
        except NotFound as e:
            raise ManifestNotFound(f"No stored file at {root}") from e
        except TransportError as e:
            raise DownloadFailed(f"Could not fetch manifest {root}: {e}", retried=True) from e

        manifest = deserialize(payload)
        logger.info(f"Got manifest: {manifest.file_name} ({manifest.total_size:,} bytes, "
                    f"{manifest.chunk_count} chunks)")
        return manifest

    @staticmethod
    def resolve_destination(destination: Union[Path, str, None], manifest: Manifest) -> Path:
        """A directory (or None) means "use the stored file name in there"."""
        if destination is None:
            return Path.cwd() / Path(manifest.file_name).name
        destination = Path(destination)
        if destination.is_dir():
            return destination / Path(manifest.file_name).name
        return destination

    async def download(self, root: Reference, destination: Union[Path, str, None] = None,
                       progress_callback: ProgressCallback = None) -> int:
        """
        Download a stored file.

        Args:
            root: Root reference returned by the upload
            destination: Output file or directory (default: current directory)
            progress_callback: Called after every written chunk

        Returns:
            Number of bytes written

        Raises:
            ManifestNotFound, UnsupportedVersion, CorruptManifest
            IntegrityError: any chunk or the whole file fails verification
            DownloadFailed: retry budget exhausted
        """
        manifest = await self.fetch_manifest(root)
        return await self.restore(manifest, destination, progress_callback)

    async def restore(self, manifest: Manifest, destination: Union[Path, str, None] = None,
                      progress_callback: ProgressCallback = None) -> int:
        """Fetch, verify and write the chunks of an already fetched manifest."""
        output_path = self.resolve_destination(destination, manifest)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output_path.parent / f".{output_path.name}.{uuid.uuid4().hex[:8]}.partial"

        progress = TransferProgress(
            direction='download',
            file_name=manifest.file_name,
            total_chunks=manifest.chunk_count,
            total_bytes=manifest.total_size,
            phase='transferring',
        )
        notify(progress_callback, progress)

        try:
            written, file_hash = await self._fetch_to_file(manifest, temp_path,
                                                           progress, progress_callback)

            progress.phase = 'verifying'
            notify(progress_callback, progress)
            if written != manifest.total_size:
                raise IntegrityError(
                    f"Reassembled {written:,} bytes, manifest says {manifest.total_size:,}"
                )
            if file_hash != manifest.whole_file_hash:
                raise IntegrityError(
                    f"Whole-file hash mismatch for {manifest.file_name}: "
                    f"expected {manifest.whole_file_hash[:16]}..., got {file_hash[:16]}..."
                )

            await aiofiles.os.replace(temp_path, output_path)
        except TransportError as e:
            progress.phase = 'failed'
            notify(progress_callback, progress)
            await self._discard(temp_path)
            raise DownloadFailed(f"Download of {manifest.file_name} failed after retries: {e}",
                                 retried=True) from e
        except BaseException:
            progress.phase = 'failed'
            notify(progress_callback, progress)
            await self._discard(temp_path)
            raise

        progress.phase = 'complete'
        notify(progress_callback, progress)
        logger.info(f"File saved to {output_path} ({written:,} bytes, integrity verified)")
        return written

    async def _fetch_to_file(self, manifest: Manifest, temp_path: Path,
                             progress: TransferProgress,
                             progress_callback: ProgressCallback):
        """
        Fetch every chunk with the worker pool and write them in order.

        Returns:
            (bytes_written, whole_file_hash)
        """
        queue: asyncio.Queue = asyncio.Queue()
        for chunk_info in manifest.chunks:
            queue.put_nowait(chunk_info)

        # Chunks that arrived before their predecessors
        pending: Dict[int, bytes] = {}
        state = {'next_index': 0, 'written': 0}
        file_hasher = hashlib.sha256()
        write_lock = asyncio.Lock()
        # Keeps the reorder buffer bounded when an early chunk is slow
        window = asyncio.Semaphore(self.concurrency * 2)

        async with aiofiles.open(temp_path, 'wb') as out:

            async def flush():
                async with write_lock:
                    while state['next_index'] in pending:
                        data = pending.pop(state['next_index'])
                        await out.write(data)
                        file_hasher.update(data)
                        state['written'] += len(data)
                        state['next_index'] += 1
                        window.release()

                        progress.completed_chunks += 1
                        progress.bytes_transferred += len(data)
                        notify(progress_callback, progress)

            async def work(worker_id: int):
                while True:
                    # Take the slot before the chunk, so the lowest unwritten
                    # index always holds a slot and the buffer cannot stall
                    await window.acquire()
                    try:
                        chunk_info: ManifestChunk = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        window.release()
                        return

                    data = await call_with_retry(
                        lambda: self.transport.fetch(chunk_info.reference),
                        self.retry_policy,
                        f"chunk {chunk_info.index} of {manifest.file_name}",
                    )
                    if len(data) != chunk_info.size:
                        raise IntegrityError(
                            f"Chunk {chunk_info.index} is {len(data):,} bytes, "
                            f"expected {chunk_info.size:,}",
                            index=chunk_info.index,
                        )
                    verify_chunk(chunk_info.index, data, chunk_info.hash)
                    logger.debug(f"Worker {worker_id} fetched chunk {chunk_info.index}")

                    if chunk_info.index in pending:
                        raise RuntimeError(f"Chunk {chunk_info.index} fetched twice")
                    pending[chunk_info.index] = data
                    await flush()

            tasks = [asyncio.ensure_future(work(i)) for i in range(self.concurrency)]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        if state['next_index'] != manifest.chunk_count:
            raise IntegrityError(
                f"Only {state['next_index']} of {manifest.chunk_count} chunks were written"
            )
        return state['written'], file_hasher.hexdigest()

    @staticmethod
    async def _discard(temp_path: Path):
        if os.path.exists(temp_path):
            await aiofiles.os.remove(temp_path)
