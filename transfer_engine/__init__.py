from .config import EngineConfig, load_config
from .control import ControlClient, ControlServer
from .coordinator import UploadCoordinator
from .duplicates import DuplicateDetector
from .hashing import HashCalculator
from .history import HistoryStore
from .manager import UploadManager
from .models import (
    CompletedPart,
    Credentials,
    DuplicateAction,
    DuplicateCheckResult,
    DuplicateType,
    ManagerStatus,
    RetryPolicy,
    UploadJob,
    UploadStatus,
)
from .schedule import ScheduleMode, ScheduleRule, UploadSchedule
from .signing import RequestSigner, SessionCredentialProvider, StaticCredentialProvider
from .throttle import BandwidthThrottler
from .tracker import UploadTracker
from .uploader import TransferClient

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "load_config",
    "ControlClient",
    "ControlServer",
    "UploadCoordinator",
    "DuplicateDetector",
    "HashCalculator",
    "HistoryStore",
    "UploadManager",
    "ScheduleMode",
    "ScheduleRule",
    "UploadSchedule",
    "CompletedPart",
    "Credentials",
    "DuplicateAction",
    "DuplicateCheckResult",
    "DuplicateType",
    "ManagerStatus",
    "RetryPolicy",
    "UploadJob",
    "UploadStatus",
    "RequestSigner",
    "SessionCredentialProvider",
    "StaticCredentialProvider",
    "BandwidthThrottler",
    "UploadTracker",
    "TransferClient",
]
