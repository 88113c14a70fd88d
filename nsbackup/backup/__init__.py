"""
Backup module for nsbackup.

This module handles the core backup functionality including:
- Collection enumeration and document streaming (MongoDB)
- Archive writing
- Storage (S3)
- Run admission (one backup at a time)
- Execution orchestration and result aggregation
"""

from .executor import BackupExecutor, BackupSettings, perform_backup
from .sources import CollectionEnumerator, DocumentStreamer
from .compression import ArchiveWriter
from .storage import S3Storage
from .guard import RunGuard, get_guard
from .results import BackupOptions, BackupResult, CollectionOutcome, aggregate

__all__ = [
    'BackupExecutor',
    'BackupSettings',
    'perform_backup',
    'CollectionEnumerator',
    'DocumentStreamer',
    'ArchiveWriter',
    'S3Storage',
    'RunGuard',
    'get_guard',
    'BackupOptions',
    'BackupResult',
    'CollectionOutcome',
    'aggregate'
]
