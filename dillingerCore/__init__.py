"""
dillingerCore - container session and download orchestration for Dillinger

This package launches games, installers and debug shells in containers,
tracks their sessions, schedules resumable multi-file downloads on worker
threads, and pairs Moonlight clients with the streaming sidecar.
"""

__version__ = "0.1.0"
__author__ = "Dillinger contributors"

from .config import DillingerConfig, load_config
from .models import GameSession, DownloadTask, DownloadStatus, SessionStatus
from .database import Database
from .sessions import SessionRegistry
from .orchestrator import Orchestrator
from .downloader import DownloadManager
from .pairing import PairingCoordinator, SidecarClient

__all__ = [
    "DillingerConfig",
    "load_config",
    "GameSession",
    "DownloadTask",
    "DownloadStatus",
    "SessionStatus",
    "Database",
    "SessionRegistry",
    "Orchestrator",
    "DownloadManager",
    "PairingCoordinator",
    "SidecarClient",
]
