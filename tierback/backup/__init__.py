"""
Backup module for Tierback.

This module handles the core backup functionality including:
- Archive production (local directories, SSH directories, MySQL dumps)
- Compression
- Storage gateways (S3-compatible and local)
- Tier calendar
- Retention policy evaluation and enforcement
- Run orchestration
"""

from .executor import BackupRunner, build_runner, run_backups
from .sources import DirectorySource, SSHDirectorySource, MySQLDumpSource, ProductionError
from .compression import create_archive
from .storage import S3Storage, LocalStorage, StorageError, TransferError, ListError, DeleteError
from .retention import RetentionManager, ThresholdPolicy, CollapsingPolicy, evaluate
from .tiers import Tier, TierSchedule

__all__ = [
    'BackupRunner',
    'build_runner',
    'run_backups',
    'DirectorySource',
    'SSHDirectorySource',
    'MySQLDumpSource',
    'ProductionError',
    'create_archive',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'TransferError',
    'ListError',
    'DeleteError',
    'RetentionManager',
    'ThresholdPolicy',
    'CollapsingPolicy',
    'evaluate',
    'Tier',
    'TierSchedule'
]
