"""
File Manifest

Design Decision: Manifest Format
================================

The manifest is the only persisted format of the store: the bytes posted as
the attachment of the "root" message. Everything needed to rebuild the file
is in it:
- File identification (name, size, whole-file SHA-256)
- Chunk layout (chunk size, ordered references, per-chunk SHA-256)
- Metadata (format version, creation time)

Options Considered:
1. JSON - Human readable, easy to inspect in the channel
2. Protocol Buffers - Compact, but needs a schema toolchain
3. key=value text - What the message body uses, too weak for chunk lists

Decision: compact UTF-8 JSON with camelCase keys

Versioning:
- "format" tags the document as a distore manifest
- "formatVersion" gates decoding: a reader rejects versions newer than
  FORMAT_VERSION with UnsupportedVersion instead of guessing
- Unknown top-level fields are kept in `extra` and written back unchanged,
  so an older reader that re-serializes a newer-but-compatible manifest
  loses nothing

Manifest Message:
The root message carries the manifest attachment and a short text body:

    ### This message is generated by Distore. Do not edit this message.
    name=<file name>
    size=<bytes>

The first line is the structural marker the catalogue filters on.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ConfigError, CorruptManifest, UnsupportedVersion
from ..transport.base import BackendLimits, Reference
from .chunker import get_chunk_count

FORMAT_TAG = "distore-manifest"
FORMAT_VERSION = 1

MESSAGE_MARKER = "### This message is generated by Distore. Do not edit this message."
MANIFEST_FILENAME = "distore-manifest.json"

_KNOWN_KEYS = {
    "format", "formatVersion", "fileName", "totalSize", "chunkSize",
    "wholeFileHash", "createdAt", "chunks",
}


@dataclass(frozen=True)
class ManifestChunk:
    """Where one chunk lives and how to verify it."""
    index: int
    reference: Reference
    hash: str  # SHA-256 hex
    size: int

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'reference': str(self.reference),
            'chunkHash': self.hash,
            'size': self.size,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'ManifestChunk':
        if not isinstance(data, dict):
            raise CorruptManifest(f"Chunk entry is not an object: {data!r}")
        reference = _require(data, 'reference', str)
        try:
            parsed = Reference.parse(reference)
        except ConfigError as e:
            raise CorruptManifest(f"Invalid chunk reference {reference!r}") from e
        return cls(
            index=_require(data, 'index', int),
            reference=parsed,
            hash=_require(data, 'chunkHash', str),
            size=_require(data, 'size', int),
        )


@dataclass(frozen=True)
class Manifest:
    """
    Authoritative record of one stored file.

    Immutable: a changed file is a new upload with a new manifest.
    """
    file_name: str
    total_size: int
    chunk_size: int
    whole_file_hash: str
    chunks: Tuple[ManifestChunk, ...]
    created_at: float = field(default_factory=time.time)
    format_version: int = FORMAT_VERSION
    # Unknown top-level fields from newer writers
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def chunk_hashes(self) -> List[str]:
        return [c.hash for c in self.chunks]

    def validate(self) -> 'Manifest':
        """
        Check the layout invariants.

        Raises:
            CorruptManifest: on gaps, duplicates or size mismatches
        """
        if self.total_size < 0 or self.chunk_size <= 0:
            raise CorruptManifest(
                f"Invalid sizes: total={self.total_size}, chunk={self.chunk_size}"
            )

        expected_count = get_chunk_count(self.total_size, self.chunk_size)
        if len(self.chunks) != expected_count:
            raise CorruptManifest(
                f"Expected {expected_count} chunks for {self.total_size} bytes "
                f"at {self.chunk_size} per chunk, found {len(self.chunks)}"
            )

        for position, chunk in enumerate(self.chunks):
            if chunk.index != position:
                raise CorruptManifest(
                    f"Chunk at position {position} has index {chunk.index}"
                )
            is_last = position == expected_count - 1
            if chunk.size <= 0 or chunk.size > self.chunk_size or (
                    not is_last and chunk.size != self.chunk_size):
                raise CorruptManifest(f"Chunk {position} has invalid size {chunk.size}")

        if sum(c.size for c in self.chunks) != self.total_size:
            raise CorruptManifest("Chunk sizes do not add up to the total size")
        return self

    def to_dict(self) -> Dict:
        """Serialize to dictionary (wire key names)."""
        data = dict(self.extra)
        data.update({
            'format': FORMAT_TAG,
            'formatVersion': self.format_version,
            'fileName': self.file_name,
            'totalSize': self.total_size,
            'chunkSize': self.chunk_size,
            'wholeFileHash': self.whole_file_hash,
            'createdAt': self.created_at,
            'chunks': [c.to_dict() for c in self.chunks],
        })
        return data

    @classmethod
    def from_dict(cls, data: Any) -> 'Manifest':
        """
        Deserialize from dictionary.

        Raises:
            UnsupportedVersion: formatVersion newer than FORMAT_VERSION
            CorruptManifest: anything else that is not a valid manifest
        """
        if not isinstance(data, dict):
            raise CorruptManifest("Manifest is not a JSON object")
        if data.get('format') != FORMAT_TAG:
            raise CorruptManifest(f"Not a distore manifest (format={data.get('format')!r})")

        version = _require(data, 'formatVersion', int)
        if version > FORMAT_VERSION:
            raise UnsupportedVersion(version, FORMAT_VERSION)
        if version < 1:
            raise CorruptManifest(f"Invalid format version {version}")

        raw_chunks = _require(data, 'chunks', list)
        created_at = data.get('createdAt', 0.0)
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
            raise CorruptManifest(f"Invalid createdAt {created_at!r}")

        manifest = cls(
            file_name=_require(data, 'fileName', str),
            total_size=_require(data, 'totalSize', int),
            chunk_size=_require(data, 'chunkSize', int),
            whole_file_hash=_require(data, 'wholeFileHash', str),
            chunks=tuple(ManifestChunk.from_dict(c) for c in raw_chunks),
            created_at=created_at,
            format_version=version,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )
        return manifest.validate()


def _require(data: Dict, key: str, type_: type):
    if key not in data:
        raise CorruptManifest(f"Manifest field '{key}' is missing")
    value = data[key]
    # bool is an int subclass; never a valid size or index
    if isinstance(value, bool) or not isinstance(value, type_):
        raise CorruptManifest(f"Manifest field '{key}' has invalid value {value!r}")
    return value


def serialize(manifest: Manifest) -> bytes:
    """Encode a manifest as compact UTF-8 JSON."""
    return json.dumps(
        manifest.to_dict(), separators=(',', ':'), ensure_ascii=False
    ).encode('utf-8')


def deserialize(data: bytes) -> Manifest:
    """
    Decode manifest bytes.

    Raises:
        UnsupportedVersion, CorruptManifest
    """
    try:
        decoded = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptManifest(f"Manifest is not valid JSON: {e}") from e
    return Manifest.from_dict(decoded)


def estimate_manifest_size(chunk_count: int, chunk_size: int, file_name: str,
                           limits: BackendLimits) -> int:
    """
    Upper bound on the serialized size of a manifest with chunk_count chunks.

    References are assumed to be limits.reference_size_hint characters long.
    """
    placeholder_ref = Reference('0' * (limits.reference_size_hint // 2),
                                '0' * (limits.reference_size_hint // 2))
    entry = ManifestChunk(
        index=max(chunk_count - 1, 0),
        reference=placeholder_ref,
        hash='0' * 64,
        size=chunk_size,
    )
    skeleton = Manifest(
        file_name=file_name,
        total_size=chunk_count * chunk_size,
        chunk_size=chunk_size,
        whole_file_hash='0' * 64,
        chunks=(),
        created_at=time.time(),
    )
    base = len(serialize(skeleton))
    per_chunk = len(json.dumps(entry.to_dict(), separators=(',', ':'))) + 1
    return base + chunk_count * per_chunk


# === Manifest message text ===

def summary_text(manifest: Manifest) -> str:
    """Text body posted alongside the manifest attachment."""
    return f"{MESSAGE_MARKER}\nname={manifest.file_name}\nsize={manifest.total_size}"


def is_manifest_message(content: str, filenames: Optional[List[str]] = None) -> bool:
    """Structural check: marker line plus (when known) the manifest attachment."""
    if not content.startswith(MESSAGE_MARKER):
        return False
    if filenames is not None and MANIFEST_FILENAME not in filenames:
        return False
    return True
