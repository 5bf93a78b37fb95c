"""Durable job queue and reconciliation for image batch jobs and video operations."""

from .backends import CanvasSurface, RecordStore, RemoteJobClient
from .canvas import CanvasAsset, CanvasState
from .hashing import compute_content_hash
from .manager import QueueManager
from .models import (
    ImageQueueRecord,
    ImageQueueRequest,
    QueueStatus,
    VideoQueueRecord,
    VideoQueueRequest,
)
from .scheduler import RefreshScheduler
from .sqlite_backend import SQLiteRecordStore
from .store import QueueRecordStore

__all__ = [
    "CanvasSurface",
    "RecordStore",
    "RemoteJobClient",
    "CanvasAsset",
    "CanvasState",
    "compute_content_hash",
    "QueueManager",
    "ImageQueueRecord",
    "ImageQueueRequest",
    "QueueStatus",
    "VideoQueueRecord",
    "VideoQueueRequest",
    "RefreshScheduler",
    "SQLiteRecordStore",
    "QueueRecordStore",
]
