"""Progress reporting for uploads and downloads."""

from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class TransferProgress:
    """Progress of one upload or download, reported after every chunk."""
    direction: str  # 'upload' or 'download'
    file_name: str
    total_chunks: int
    total_bytes: int
    completed_chunks: int = 0
    bytes_transferred: int = 0
    phase: str = 'preparing'  # 'preparing', 'transferring', 'manifest', 'verifying', 'complete', 'failed'


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]


def notify(callback: Optional[ProgressCallback], progress: TransferProgress) -> None:
    if callback:
        callback(progress)
