"""
Data sources: descriptors, the local-first fetcher and the refresh scheduler.
"""

from dashsync.datasource.base import SnapshotMetadata, SourceDescriptor
from dashsync.datasource.fetcher import SourceFetcher, parse_payload
from dashsync.datasource.scheduler import RefreshConfig, RefreshScheduler, SourceState
from dashsync.datasource.source_manager import SourceRegistry

__all__ = [
    "SnapshotMetadata",
    "SourceDescriptor",
    "SourceFetcher",
    "parse_payload",
    "RefreshConfig",
    "RefreshScheduler",
    "SourceState",
    "SourceRegistry",
]
