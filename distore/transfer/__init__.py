"""
Transfer Module - Upload/Download

Moves chunks between local files and the backend with a bounded worker pool.
"""

from .retry import RetryPolicy, call_with_retry
from .progress import TransferProgress, ProgressCallback
from .uploader import Uploader
from .downloader import Downloader

__all__ = [
    'RetryPolicy',
    'call_with_retry',
    'TransferProgress',
    'ProgressCallback',
    'Uploader',
    'Downloader',
]
