"""
dashsync - data synchronization and caching layer for the humanitarian data dashboard.
"""

from dashsync.datasource.base import SnapshotMetadata, SourceDescriptor
from dashsync.datasource.scheduler import RefreshConfig, SourceState
from dashsync.datasource.source_manager import SourceRegistry
from dashsync.services.status import RefreshError, RefreshStatus
from dashsync.sync import DataSyncService

__all__ = [
    "DataSyncService",
    "RefreshConfig",
    "RefreshError",
    "RefreshStatus",
    "SnapshotMetadata",
    "SourceDescriptor",
    "SourceRegistry",
    "SourceState",
]
