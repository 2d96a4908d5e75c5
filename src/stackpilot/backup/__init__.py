"""
Backup archives: creation, verification and restore.
"""

from stackpilot.backup.integrity import IntegrityReport, IntegrityVerifier
from stackpilot.backup.manager import BackupManager
from stackpilot.backup.models import BackupArchive, BackupKind, BackupManifest
from stackpilot.backup.restore import RestoreController, RestoreResult

__all__ = [
    "BackupArchive",
    "BackupKind",
    "BackupManager",
    "BackupManifest",
    "IntegrityReport",
    "IntegrityVerifier",
    "RestoreController",
    "RestoreResult",
]
