"""
Module for keeping a record of finished uploads.
"""
import json
import logging
import os
import threading
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

from .models import HistoryItem, UploadJob

logger = logging.getLogger(__name__)


class HistoryStore:
    """Finished jobs, newest first, optionally persisted to a JSON file."""

    def __init__(self, history_file: Optional[Path] = None, max_items: int = 1000):
        self.history_file = Path(history_file) if history_file else None
        self.max_items = max_items
        self._items: List[HistoryItem] = []
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.history_file or not self.history_file.exists():
            return
        try:
            with open(self.history_file, 'r') as f:
                data = json.load(f)
            self._items = [HistoryItem(**item) for item in data.get('items', [])][:self.max_items]
            logger.debug(f"Loaded {len(self._items)} history items from {self.history_file}")
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Error loading history file: {e}")

    def _save(self) -> None:
        if not self.history_file:
            return
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.history_file.with_suffix(self.history_file.suffix + '.tmp')
        try:
            with open(tmp_file, 'w') as f:
                json.dump({'items': [asdict(item) for item in self._items]}, f, indent=2)
            os.replace(tmp_file, self.history_file)
        except OSError as e:
            logger.error(f"Error saving history file: {e}")

    def append(self, job: UploadJob) -> HistoryItem:
        """Archive a job that reached a terminal state."""
        item = HistoryItem.from_job(job)
        with self._lock:
            self._items.insert(0, item)
            del self._items[self.max_items:]
            self._save()
        return item

    def get_recent(self, limit: int = 10) -> List[HistoryItem]:
        with self._lock:
            return list(self._items[:max(0, limit)])

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self._save()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
