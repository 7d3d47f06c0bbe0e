"""Tests for the chunk downloader."""

import asyncio
import hashlib

import pytest

from conftest import CHANNEL, CHUNK_SIZE, FlakyTransport
from distore.errors import (
    CorruptManifest, DownloadFailed, IntegrityError, ManifestNotFound, NotFound,
    UnsupportedVersion,
)
from distore.file.manifest import MANIFEST_FILENAME
from distore.store import ObjectStore
from distore.transfer.downloader import Downloader
from distore.transfer.retry import RetryPolicy
from distore.transfer.uploader import Uploader
from distore.transport.base import BackendLimits, Reference
from distore.transport.memory import MemoryTransport

MB = 1024 * 1024


def leftovers(directory):
    """Temporary files left behind by a download."""
    return [p.name for p in directory.iterdir() if p.name.endswith('.partial')]


class TestDownload:
    """Successful downloads."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, make_file, tmp_path):
        source = make_file('data.bin', 10 * 1024 + 5, seed=11)
        root = await store.upload(source)

        target = tmp_path / 'out' / 'copy.bin'
        written = await store.download(root, target)

        assert written == source.stat().st_size
        assert target.read_bytes() == source.read_bytes()
        assert leftovers(target.parent) == []

    @pytest.mark.asyncio
    async def test_sixty_units_with_twenty_five_unit_chunks(self, retry_policy, make_file,
                                                            tmp_path):
        limits = BackendLimits(max_attachment_size=25 * 1024 + 512, framing_overhead=512)
        store = ObjectStore(MemoryTransport(limits), CHANNEL, limits=limits,
                            retry_policy=retry_policy)
        source = make_file('scaled.bin', 60 * 1024)

        root = await store.upload(source)
        manifest = await store.fetch_manifest(root)
        await store.download(root, tmp_path / 'scaled-copy.bin')

        assert [c.size for c in manifest.chunks] == [25 * 1024, 25 * 1024, 10 * 1024]
        assert (tmp_path / 'scaled-copy.bin').read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_sixty_megabytes_in_three_chunks(self, tmp_path, make_file):
        """Test a 60MB file with a 25MB chunk limit: chunks of 25, 25 and 10 MB."""
        limits = BackendLimits(max_attachment_size=25 * MB + 4096, framing_overhead=4096)
        store = ObjectStore(MemoryTransport(limits), CHANNEL, limits=limits,
                            retry_policy=RetryPolicy(base_delay=0, jitter=0))
        source = make_file('big.iso', 60 * MB)

        root = await store.upload(source, chunk_size=25 * MB)
        manifest = await store.fetch_manifest(root)

        assert [c.size for c in manifest.chunks] == [25 * MB, 25 * MB, 10 * MB]

        target = tmp_path / 'restored.iso'
        await store.download(root, target)

        restored = target.read_bytes()
        assert restored == source.read_bytes()
        assert hashlib.sha256(restored).hexdigest() == manifest.whole_file_hash

    @pytest.mark.asyncio
    async def test_directory_destination_uses_stored_name(self, store, make_file, tmp_path):
        source = make_file('notes.txt', 1500)
        root = await store.upload(source)
        out_dir = tmp_path / 'downloads'
        out_dir.mkdir()

        await store.download(root, out_dir)

        assert (out_dir / 'notes.txt').read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_bare_message_id_resolves_in_store_channel(self, store, make_file, tmp_path):
        source = make_file('a.bin', 100)
        root = await store.upload(source)

        await store.download(root.message_id, tmp_path / 'b.bin')

        assert (tmp_path / 'b.bin').read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_empty_file(self, store, make_file, tmp_path):
        root = await store.upload(make_file('empty.bin', 0))

        assert await store.download(root, tmp_path / 'empty-copy.bin') == 0
        assert (tmp_path / 'empty-copy.bin').read_bytes() == b''

    @pytest.mark.asyncio
    async def test_existing_destination_is_replaced(self, store, make_file, tmp_path):
        source = make_file('a.bin', 2000)
        root = await store.upload(source)
        target = tmp_path / 'target.bin'
        target.write_bytes(b'old contents')

        await store.download(root, target)

        assert target.read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_out_of_order_fetches_are_written_in_order(self, limits, retry_policy,
                                                             make_file, tmp_path):
        """Test the reorder buffer with a pool that completes backwards."""
        transport = MemoryTransport(limits)
        source = make_file('data.bin', 16 * 1024, seed=5)
        root = await Uploader(transport, limits, retry_policy).upload(source, CHANNEL,
                                                                       chunk_size=CHUNK_SIZE)

        class SlowFirst(MemoryTransport):
            async def fetch(self, reference):
                await asyncio.sleep(0.02 if reference.message_id.endswith(('0', '1')) else 0)
                return await transport.fetch(reference)

        downloader = Downloader(SlowFirst(limits), limits, retry_policy, concurrency=6)
        await downloader.download(root, tmp_path / 'copy.bin')

        assert (tmp_path / 'copy.bin').read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_progress_ends_verified(self, store, make_file, tmp_path):
        root = await store.upload(make_file('data.bin', 3000))
        phases = []

        await store.download(root, tmp_path / 'copy.bin',
                             progress_callback=lambda p: phases.append(p.phase))

        assert phases[0] == 'transferring'
        assert phases[-2:] == ['verifying', 'complete']


class TestIntegrity:
    """Corruption and missing data."""

    @pytest.mark.asyncio
    async def test_corrupt_chunk_fails_without_output(self, store, transport, make_file,
                                                      tmp_path):
        """Test that one flipped byte raises IntegrityError and writes nothing."""
        source = make_file('data.bin', 5 * 1024)
        root = await store.upload(source)
        manifest = await store.fetch_manifest(root)
        transport.corrupt(manifest.chunks[2].reference, offset=100)

        out_dir = tmp_path / 'out'
        with pytest.raises(IntegrityError) as exc_info:
            await store.download(root, out_dir / 'copy.bin')

        assert exc_info.value.index == 2
        assert not (out_dir / 'copy.bin').exists()
        assert leftovers(out_dir) == []

    @pytest.mark.asyncio
    async def test_corrupt_chunk_keeps_existing_destination(self, store, transport,
                                                            make_file, tmp_path):
        root = await store.upload(make_file('data.bin', 2048))
        manifest = await store.fetch_manifest(root)
        transport.corrupt(manifest.chunks[0].reference)
        target = tmp_path / 'keep.bin'
        target.write_bytes(b'previous')

        with pytest.raises(IntegrityError):
            await store.download(root, target)

        assert target.read_bytes() == b'previous'

    @pytest.mark.asyncio
    async def test_unknown_reference(self, store, tmp_path):
        with pytest.raises(ManifestNotFound):
            await store.download(Reference(CHANNEL, '42'), tmp_path / 'x')

    @pytest.mark.asyncio
    async def test_chunk_reference_is_not_a_manifest(self, store, transport, make_file,
                                                     tmp_path):
        await store.upload(make_file('data.bin', 2048))
        chunk_message = transport.messages(CHANNEL)[0]

        with pytest.raises(CorruptManifest):
            await store.download(chunk_message.reference, tmp_path / 'x')

    @pytest.mark.asyncio
    async def test_newer_manifest_version(self, store, transport, tmp_path):
        payload = (b'{"format":"distore-manifest","formatVersion":99,"fileName":"f",'
                   b'"totalSize":0,"chunkSize":1,"wholeFileHash":"","chunks":[]}')
        root = await transport.publish(CHANNEL, payload, MANIFEST_FILENAME)

        with pytest.raises(UnsupportedVersion):
            await store.download(root, tmp_path / 'x')

    @pytest.mark.asyncio
    async def test_missing_chunk_message(self, store, transport, make_file, tmp_path):
        root = await store.upload(make_file('data.bin', 3072))
        manifest = await store.fetch_manifest(root)
        transport._messages[manifest.chunks[1].reference].blob = None

        with pytest.raises(NotFound):
            await store.download(root, tmp_path / 'copy.bin')

        assert not (tmp_path / 'copy.bin').exists()


class TestRetries:
    """Transient failures during download."""

    @pytest.mark.asyncio
    async def test_transient_fetch_errors_are_retried(self, limits, retry_policy, make_file,
                                                      tmp_path):
        transport = FlakyTransport(limits)
        source = make_file('data.bin', 4096)
        root = await Uploader(transport, limits, retry_policy).upload(source, CHANNEL,
                                                                       chunk_size=CHUNK_SIZE)
        transport.fetch_errors = 2

        await Downloader(transport, limits, retry_policy).download(root, tmp_path / 'c.bin')

        assert (tmp_path / 'c.bin').read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, limits, retry_policy, make_file, tmp_path):
        transport = FlakyTransport(limits)
        root = await Uploader(transport, limits, retry_policy).upload(
            make_file('data.bin', 4096), CHANNEL, chunk_size=CHUNK_SIZE)
        transport.fetch_errors = 1000

        with pytest.raises(DownloadFailed) as exc_info:
            await Downloader(transport, limits, retry_policy).download(root, tmp_path / 'c.bin')

        assert exc_info.value.retried
        assert not (tmp_path / 'c.bin').exists()


class TestCancellation:
    """Cancelling a download part way through."""

    @pytest.mark.asyncio
    async def test_cancelled_download_leaves_no_files(self, store, transport, limits,
                                                      retry_policy, make_file, tmp_path):
        """Test that cancellation removes the temporary file and keeps the old one."""
        root = await store.upload(make_file('data.bin', 8 * 1024))
        manifest = await store.fetch_manifest(root)
        started = asyncio.Event()

        class Stalled(MemoryTransport):
            async def fetch(self, reference):
                started.set()
                await asyncio.sleep(10)
                return await transport.fetch(reference)

        out_dir = tmp_path / 'out'
        out_dir.mkdir()
        target = out_dir / 'copy.bin'
        target.write_bytes(b'previous')
        downloader = Downloader(Stalled(limits), limits, retry_policy, concurrency=2)

        task = asyncio.ensure_future(downloader.restore(manifest, target))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert target.read_bytes() == b'previous'
        assert leftovers(out_dir) == []
