"""
File Chunker

Design Decision: Chunk Size
===========================

The backend caps attachment size, so a chunk is the largest slice that
still fits one attachment once multipart framing is added:

    chunk_size <= max_attachment_size - framing_overhead

The default is exactly that bound (fewest messages per file). A smaller
size is accepted; a larger one is a configuration error raised before any
network call.

Chunking Strategy: Fixed-Size
- Chunk i covers bytes [i * chunk_size, (i + 1) * chunk_size)
- Only the final chunk may be shorter
- A zero-byte file has zero chunks
- SHA-256 per chunk and for the whole file, so identical bytes always
  produce identical hashes (dedup-ready, although dedup is not done)
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Iterable, Iterator, List, Optional, Sequence

import aiofiles

from ..errors import ConfigError, IntegrityError
from ..transport.base import BackendLimits

PART_SUFFIX = ".part"


@dataclass(frozen=True)
class Chunk:
    """One contiguous slice of a source file."""
    index: int
    data: bytes
    hash: str  # SHA-256 as hex

    @property
    def size(self) -> int:
        return len(self.data)


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


def validate_chunk_size(chunk_size: int, limits: BackendLimits) -> int:
    """
    Check chunk_size against the backend limits.

    Raises:
        ConfigError: if the size is not positive or leaves no room for framing
    """
    if not isinstance(chunk_size, int) or isinstance(chunk_size, bool) or chunk_size <= 0:
        raise ConfigError(f"Chunk size must be a positive integer, got {chunk_size!r}")
    if chunk_size > limits.max_chunk_size:
        raise ConfigError(
            f"Chunk size {chunk_size:,} exceeds the backend limit of "
            f"{limits.max_chunk_size:,} bytes ({limits.max_attachment_size:,} "
            f"attachment minus {limits.framing_overhead:,} framing)"
        )
    return chunk_size


def get_chunk_count(file_size: int, chunk_size: int) -> int:
    """Number of chunks for a file of the given size."""
    return (file_size + chunk_size - 1) // chunk_size


def split(stream: BinaryIO, chunk_size: int) -> Iterator[Chunk]:
    """
    Split a binary stream into chunks, lazily.

    Starts at the stream's current position; seek back to restart.
    """
    if chunk_size <= 0:
        raise ConfigError(f"Chunk size must be positive, got {chunk_size}")

    index = 0
    while True:
        data = _read_exactly(stream, chunk_size)
        if not data:
            break
        yield Chunk(index=index, data=data, hash=hash_bytes(data))
        index += 1


def _read_exactly(stream: BinaryIO, size: int) -> bytes:
    # Raw and non-blocking streams may return short reads before EOF
    parts = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b''.join(parts)


def verify_chunk(index: int, data: bytes, expected_hash: str) -> None:
    """Raise IntegrityError if data does not hash to expected_hash."""
    actual = hash_bytes(data)
    if actual != expected_hash:
        raise IntegrityError(
            f"Chunk {index} hash mismatch: expected {expected_hash[:16]}..., "
            f"got {actual[:16]}...",
            index=index,
        )


def join(blobs: Iterable[bytes], expected_hashes: Optional[Sequence[str]] = None) -> Iterator[bytes]:
    """
    Concatenate chunk blobs in the given order, verifying each one.

    Yields the blobs so callers can stream them to a file.

    Raises:
        IntegrityError: on a hash mismatch, or a blob count that differs
            from the number of expected hashes
    """
    count = 0
    for index, data in enumerate(blobs):
        if expected_hashes is not None:
            if index >= len(expected_hashes):
                raise IntegrityError(
                    f"Unexpected chunk {index}: only {len(expected_hashes)} recorded",
                    index=index,
                )
            verify_chunk(index, data, expected_hashes[index])
        count += 1
        yield data

    if expected_hashes is not None and count != len(expected_hashes):
        raise IntegrityError(
            f"Got {count} chunks, expected {len(expected_hashes)}",
            index=count,
        )


class FileChunker:
    """
    Splits files into fixed-size chunks.

    Features:
    - Lazy sync and async (aiofiles) iteration
    - SHA-256 hash per chunk
    - Whole-file hash computed in the same pass
    """

    def __init__(self, chunk_size: int):
        self.chunk_size = chunk_size
        self.file_hasher = hashlib.sha256()
        self.bytes_read = 0

    @property
    def file_hash(self) -> str:
        """Whole-file hash of everything read so far."""
        return self.file_hasher.hexdigest()

    def get_chunk_count(self, file_size: int) -> int:
        return get_chunk_count(file_size, self.chunk_size)

    def chunks(self, file_path: Path) -> Iterator[Chunk]:
        """Split a file (synchronous). Each call reopens the file."""
        self.file_hasher = hashlib.sha256()
        self.bytes_read = 0
        with open(file_path, 'rb') as f:
            for chunk in split(f, self.chunk_size):
                self.file_hasher.update(chunk.data)
                self.bytes_read += chunk.size
                yield chunk

    async def chunk_file(self, file_path: Path) -> AsyncIterator[Chunk]:
        """
        Split a file asynchronously.

        Yields:
            Chunk objects in index order
        """
        self.file_hasher = hashlib.sha256()
        self.bytes_read = 0
        index = 0

        async with aiofiles.open(file_path, 'rb') as f:
            while True:
                data = await f.read(self.chunk_size)
                if not data:
                    break
                # aiofiles reads regular files fully, but guard short reads
                while len(data) < self.chunk_size:
                    more = await f.read(self.chunk_size - len(data))
                    if not more:
                        break
                    data += more

                self.file_hasher.update(data)
                self.bytes_read += len(data)
                yield Chunk(index=index, data=data, hash=hash_bytes(data))
                index += 1


# === Offline part files ===

def part_name(file_name: str, index: int) -> str:
    return f"{file_name}{PART_SUFFIX}{index}"


def disassemble(file_path: Path, output_dir: Path, chunk_size: int) -> List[Path]:
    """
    Write a file out as "<name>.part<i>" files.

    Returns:
        Paths of the written parts, in index order
    """
    file_path = Path(file_path)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for chunk in FileChunker(chunk_size).chunks(file_path):
        part_path = output_dir / part_name(file_path.name, chunk.index)
        part_path.write_bytes(chunk.data)
        written.append(part_path)
    return written


def find_parts(file_name: str, parts_dir: Path) -> List[Path]:
    """
    Find "<name>.part<i>" files and sort them by numeric index.

    Raises:
        ConfigError: if no parts exist or the indices have gaps
    """
    prefix = f"{file_name}{PART_SUFFIX}"
    indexed = []
    for entry in Path(parts_dir).iterdir():
        if not entry.is_file() or not entry.name.startswith(prefix):
            continue
        suffix = entry.name[len(prefix):]
        if suffix.isdigit():
            indexed.append((int(suffix), entry))

    if not indexed:
        raise ConfigError(f"No parts named {prefix}<n> in {parts_dir}")

    indexed.sort()
    indices = [i for i, _ in indexed]
    if indices != list(range(len(indices))):
        raise ConfigError(f"Parts of {file_name} are not contiguous: {indices}")
    return [path for _, path in indexed]


def assemble(file_name: str, parts_dir: Path, output: Optional[Path] = None) -> Path:
    """
    Concatenate "<name>.part<i>" files back into the original file.

    Returns:
        Path of the assembled file
    """
    parts_dir = Path(parts_dir)
    parts = find_parts(file_name, parts_dir)
    output = Path(output) if output else parts_dir / file_name

    temp_path = output.with_name(f".{output.name}.assembling")
    try:
        with open(temp_path, 'wb') as out:
            for part in parts:
                out.write(part.read_bytes())
        os.replace(temp_path, output)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output
