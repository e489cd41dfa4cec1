"""
Module wiring the transfer engine components together.
"""
import logging
from pathlib import Path
from typing import List, Optional

from .config import EngineConfig
from .duplicates import DuplicateDetector
from .errors import EnqueueError
from .hashing import HashCalculator
from .history import HistoryStore
from .manager import UploadManager
from .models import UploadJob
from .scanner import FileScanner
from .signing import CredentialProvider
from .throttle import BandwidthThrottler
from .tracker import UploadTracker
from .uploader import TransferClient

logger = logging.getLogger(__name__)


def _join_key(prefix: Optional[str], name: str) -> str:
    prefix = (prefix or "").strip("/")
    return f"{prefix}/{name}" if prefix else name


class UploadCoordinator:
    """Builds the engine from configuration and turns paths into jobs."""

    def __init__(self, config: Optional[EngineConfig] = None,
                 credential_provider: Optional[CredentialProvider] = None,
                 transfer: Optional[TransferClient] = None):
        """Initialize the upload coordinator.

        Args:
            config: Engine configuration, defaults when omitted
            credential_provider: Source of signing credentials
            transfer: Prebuilt transfer client, mostly for tests
        """
        self.config = config or EngineConfig()
        self.throttler = transfer.throttler if transfer else BandwidthThrottler(self.config.bandwidth_limit)
        self.transfer = transfer or TransferClient.from_config(
            self.config, credential_provider, self.throttler
        )
        self.scanner = FileScanner()
        self.detector = DuplicateDetector(
            HashCalculator(max_full_hash_size=self.config.max_full_hash_size),
            remote=self.transfer,
            check_remote=self.config.check_remote_duplicates,
            enabled=self.config.duplicate_detection
        )
        self.tracker = UploadTracker(state_file=self.config.state_file)
        self.history = HistoryStore(self.config.history_file, self.config.max_history_items)
        self.manager = UploadManager(
            self.transfer,
            detector=self.detector,
            tracker=self.tracker,
            history=self.history,
            max_concurrent=self.config.max_concurrent,
            retry_policy=self.config.retry_policy,
            duplicate_action=self.config.duplicate_action,
            schedule=self.config.schedule
        )

    def start(self) -> None:
        """Resume any incomplete uploads from the persisted state and start uploading."""
        self.manager.restore()
        self.manager.start()

    def stop(self) -> None:
        self.manager.shutdown()

    def upload_path(self, path: Path, bucket: Optional[str] = None,
                    key: Optional[str] = None, prefix: Optional[str] = None) -> List[str]:
        """Queue a file or every file inside a folder.

        Args:
            path: File or folder to upload
            bucket: Destination bucket, defaults to the configured bucket
            key: Exact key for a single file
            prefix: Key prefix for every file

        Returns:
            Ids of the queued jobs

        Raises:
            EnqueueError: If no bucket is known or no files were found
        """
        bucket = bucket or self.config.default_bucket
        if not bucket:
            raise EnqueueError("No bucket specified and no default bucket configured")

        candidates = self.scanner.expand(Path(path))
        if not candidates:
            raise EnqueueError(f"No files found at {path}")

        if len(candidates) > 1 and self.detector.enabled:
            duplicates = self.detector.check_local_duplicates([p for p, _ in candidates])
            skipped = {dup for dups in duplicates.values() for dup in dups}
            for primary, dups in duplicates.items():
                logger.info(f"Skipping {len(dups)} local copies of {primary.name}")
            candidates = [(p, name) for p, name in candidates if p not in skipped]

        job_ids = []
        for file_path, name in candidates:
            if key and len(candidates) == 1:
                object_key = _join_key(prefix, key)
            else:
                object_key = _join_key(prefix if not key else _join_key(prefix, key), name)
            job = UploadJob(source_path=file_path, bucket=bucket, key=object_key)
            job_ids.append(self.manager.enqueue(job))

        return job_ids
