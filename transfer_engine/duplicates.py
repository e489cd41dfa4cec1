"""
Duplicate detection for candidate uploads.
"""
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from .hashing import HashCalculator, is_quick_hash
from .models import DuplicateCheckResult, DuplicateRecord, DuplicateType

logger = logging.getLogger(__name__)


def _format_age(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if seconds < 86400:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = seconds // 86400
    return f"{days} day{'s' if days != 1 else ''} ago"


def generate_unique_name(name: str, existing: Set[str]) -> str:
    """Add a numeric suffix before the extension until the name is unused.

    Args:
        name: Original file name or key
        existing: Names already taken

    Returns:
        `name` itself when free, otherwise `base_1.ext`, `base_2.ext`, ...
    """
    path = Path(name)
    parent = "" if str(path.parent) == "." else f"{path.parent.as_posix()}/"
    base = path.stem
    ext = path.suffix

    candidate = name
    counter = 1
    while candidate in existing:
        candidate = f"{parent}{base}_{counter}{ext}"
        counter += 1
    return candidate


class DuplicateDetector:
    """Classifies a candidate upload as new, a recent upload or an existing object.

    Args:
        hash_calculator: Fingerprint source
        remote: Object with `head_object(bucket, key)` returning metadata or None
        check_remote: Whether to look for an object at the destination key
        recent_window: Seconds a recorded upload counts as recent, None for no limit
        enabled: Master switch; disabled detectors report every file as new
        clock: Wall-clock time source
    """

    def __init__(self, hash_calculator: Optional[HashCalculator] = None, remote=None,
                 check_remote: bool = True, recent_window: Optional[float] = None,
                 enabled: bool = True, clock: Callable[[], float] = time.time):
        self.hashes = hash_calculator or HashCalculator()
        self.remote = remote
        self.check_remote = check_remote
        self.recent_window = recent_window
        self.enabled = enabled
        self._clock = clock
        self._recent: Dict[str, DuplicateRecord] = {}
        self._lock = threading.Lock()

    def check_for_duplicate(self, path: Path, bucket: str, key: str) -> DuplicateCheckResult:
        if not self.enabled:
            return DuplicateCheckResult.not_duplicate()

        try:
            file_hash = self.hashes.compute(path)
        except OSError as e:
            logger.warning(f"Could not hash {path}: {e}")
            return DuplicateCheckResult.not_duplicate()

        record = self._find_recent(file_hash)
        if record is not None:
            age = self._clock() - record.uploaded_at
            return DuplicateCheckResult(
                is_duplicate=True,
                duplicate_type=DuplicateType.RECENTLY_UPLOADED,
                existing_location=record.uri,
                hash=file_hash,
                suggestion=f"This file was already uploaded {_format_age(age)}"
            )

        if self.check_remote and self.remote is not None:
            result = self._check_remote(bucket, key, file_hash)
            if result is not None:
                return result

        return DuplicateCheckResult.not_duplicate(file_hash)

    def _find_recent(self, file_hash: str) -> Optional[DuplicateRecord]:
        with self._lock:
            record = self._recent.get(file_hash)
        if record is None:
            return None
        if self.recent_window is not None and self._clock() - record.uploaded_at > self.recent_window:
            return None
        return record

    def _check_remote(self, bucket: str, key: str, file_hash: str) -> Optional[DuplicateCheckResult]:
        try:
            metadata = self.remote.head_object(bucket, key)
        except Exception as e:
            logger.warning(f"Failed to check s3://{bucket}/{key} for duplicate: {e}")
            return None

        if metadata is None:
            return None

        content_matches = None
        etag = str(metadata.get('ETag') or '').strip('"')
        # Multipart ETags ("<hex>-<parts>") are not content digests.
        if etag and '-' not in etag and self.hashes.algorithm == "md5" and not is_quick_hash(file_hash):
            content_matches = etag == file_hash

        suggestion = "A file already exists at this location"
        if content_matches:
            suggestion = "An identical file already exists at this location"

        return DuplicateCheckResult(
            is_duplicate=True,
            duplicate_type=DuplicateType.EXISTS_REMOTE,
            existing_location=f"s3://{bucket}/{key}",
            hash=file_hash,
            suggestion=suggestion,
            content_matches=content_matches
        )

    def check_local_duplicates(self, paths: Iterable[Path]) -> Dict[Path, List[Path]]:
        """Group a batch of files by content.

        Returns:
            Mapping of the first file of every group with more than one
            member to the remaining members, in input order
        """
        groups: Dict[str, List[Path]] = {}
        for path in paths:
            path = Path(path)
            try:
                file_hash = self.hashes.compute(path)
            except OSError as e:
                logger.warning(f"Could not hash {path}: {e}")
                continue
            groups.setdefault(file_hash, []).append(path)

        return {members[0]: members[1:] for members in groups.values() if len(members) > 1}

    def record_upload(self, file_hash: Optional[str], bucket: str, key: str) -> None:
        if not file_hash:
            return
        with self._lock:
            self._recent[file_hash] = DuplicateRecord(
                hash=file_hash,
                uri=f"s3://{bucket}/{key}",
                uploaded_at=self._clock()
            )

    @property
    def recent_uploads(self) -> Dict[str, DuplicateRecord]:
        with self._lock:
            return dict(self._recent)

    def clear_recent_uploads(self) -> None:
        with self._lock:
            self._recent.clear()

    def clear_old_uploads(self, older_than: float) -> int:
        """Forget uploads recorded more than `older_than` seconds ago.

        Returns:
            Number of records removed
        """
        cutoff = self._clock() - older_than
        with self._lock:
            stale = [h for h, record in self._recent.items() if record.uploaded_at <= cutoff]
            for file_hash in stale:
                del self._recent[file_hash]
        return len(stale)

    generate_unique_name = staticmethod(generate_unique_name)
