"""
Content fingerprints used for duplicate detection and upload checksums.
"""
import base64
import hashlib
import logging
import struct
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

QUICK_HASH_PREFIX = "quick-"
QUICK_HASH_CHUNK = 64 * 1024
DEFAULT_MAX_FULL_HASH_SIZE = 500 * 1024 * 1024
READ_BLOCK_SIZE = 1024 * 1024

SUPPORTED_ALGORITHMS = ("md5", "sha256")


def content_md5(data: bytes) -> str:
    """Base64 MD5 digest as sent in the Content-MD5 header."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def is_quick_hash(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(QUICK_HASH_PREFIX)


class HashCalculator:
    """Computes and caches file fingerprints.

    Files up to max_full_hash_size get a full digest. Larger files get a
    quick hash over the size and the first and last chunk, prefixed with
    "quick-" so the two schemes never collide.
    """

    def __init__(self, algorithm: str = "md5",
                 max_full_hash_size: int = DEFAULT_MAX_FULL_HASH_SIZE,
                 chunk_size: int = QUICK_HASH_CHUNK):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        self.algorithm = algorithm
        self.max_full_hash_size = max_full_hash_size
        self.chunk_size = chunk_size
        self._cache: Dict[Tuple[str, int, int], str] = {}
        self._lock = threading.Lock()

    def compute(self, path: Path) -> str:
        """Fingerprint a file, reusing the cached value while it is unchanged.

        Args:
            path: File to fingerprint

        Returns:
            Hex digest, or a "quick-" prefixed digest for large files

        Raises:
            OSError: If the file cannot be read
        """
        path = Path(path)
        stat = path.stat()
        cache_key = (str(path.resolve()), stat.st_size, stat.st_mtime_ns)

        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        if stat.st_size > self.max_full_hash_size:
            value = self.quick_hash(path, stat.st_size)
        else:
            value = self.full_hash(path)

        with self._lock:
            self._cache[cache_key] = value
        logger.debug(f"Hashed {path.name}: {value}")
        return value

    def full_hash(self, path: Path) -> str:
        digest = hashlib.new(self.algorithm)
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(READ_BLOCK_SIZE), b""):
                digest.update(block)
        return digest.hexdigest()

    def quick_hash(self, path: Path, size: Optional[int] = None) -> str:
        if size is None:
            size = Path(path).stat().st_size
        digest = hashlib.md5()
        digest.update(struct.pack("<q", size))
        with open(path, "rb") as f:
            digest.update(f.read(self.chunk_size))
            if size > self.chunk_size:
                f.seek(size - self.chunk_size)
                digest.update(f.read(self.chunk_size))
        return QUICK_HASH_PREFIX + digest.hexdigest()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
