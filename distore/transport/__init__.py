"""
Transport Module - Backend Adapters

The store talks to its backend only through the Transport interface.
"""

from .base import BackendLimits, HistoryItem, HistoryPage, Reference, Transport
from .memory import MemoryTransport
from .discord import DiscordTransport

__all__ = [
    'BackendLimits',
    'HistoryItem',
    'HistoryPage',
    'Reference',
    'Transport',
    'MemoryTransport',
    'DiscordTransport',
]
