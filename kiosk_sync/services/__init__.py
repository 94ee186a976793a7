"""Background and foreground services: durable store, queues, sync, scheduling."""

from .analytics import AnalyticsBatcher, build_summary
from .errors import (
    AmbiguousAcceptanceError,
    ConfigError,
    ConnectivityError,
    KioskSyncError,
    ServerRejectionError,
    StorageError,
    StorageExhaustedError,
    TransportError,
    ValidationError,
)
from .local_store import AppStateStore, LocalStore
from .network_handler import RequestSender, backoff_delay_ms
from .offline_mode import ConnectivityMonitor, NetworkMode
from .records import AnalyticsEvent, QueueRecord
from .scheduler import BackgroundScheduler
from .status import StatusReporter
from .submission_queue import SubmissionQueue
from .sync_manager import SyncManager, SyncOutcome, SyncResult
