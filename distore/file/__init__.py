"""
File Module - Chunking and Manifests

Splits files into chunks and describes them with manifests.
"""

from .chunker import Chunk, FileChunker, split, join, hash_bytes, validate_chunk_size
from .manifest import Manifest, ManifestChunk, serialize, deserialize

__all__ = [
    'Chunk',
    'FileChunker',
    'split',
    'join',
    'hash_bytes',
    'validate_chunk_size',
    'Manifest',
    'ManifestChunk',
    'serialize',
    'deserialize',
]
