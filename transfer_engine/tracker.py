"""
Module for persisting in-flight upload state so uploads survive restarts.
"""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Dict, Any, List

from .models import UploadJob

logger = logging.getLogger(__name__)


class UploadTracker:
    """Persists unfinished jobs, including multipart upload ids and parts."""

    def __init__(self, state_file: Optional[Path] = None):
        """Initialize the upload tracker.

        Args:
            state_file: Path to the state persistence JSON file. If None,
                state is kept in memory only.
        """
        self.state_file = Path(state_file) if state_file else None
        if self.state_file:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)

        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

        # Load existing state if available
        self._load_state()

    def _load_state(self) -> None:
        """Load job states from the state file."""
        if not self.state_file or not self.state_file.exists():
            return

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            for job_dict in data.get('jobs', []):
                self._jobs[job_dict['id']] = job_dict

            logger.info(f"Loaded {len(self._jobs)} unfinished uploads from {self.state_file}")
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Error loading state file: {e}")

    def _save_state(self) -> None:
        """Save current job states to the state file. Caller holds the lock."""
        if not self.state_file:
            return

        data = {'jobs': list(self._jobs.values())}
        tmp_file = self.state_file.with_suffix(self.state_file.suffix + '.tmp')
        try:
            with open(tmp_file, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_file, self.state_file)
            logger.debug(f"Saved {len(self._jobs)} upload states to {self.state_file}")
        except OSError as e:
            logger.error(f"Error saving state file: {e}")

    def save_job(self, job: UploadJob) -> None:
        """Record the current state of a job.

        Args:
            job: Job whose multipart state changed
        """
        job_dict = job.to_dict()
        with self._lock:
            self._jobs[job.id] = job_dict
            self._save_state()

    def remove_job(self, job_id: str) -> None:
        """Forget a job that reached a terminal state.

        Args:
            job_id: Identifier of the job
        """
        with self._lock:
            if self._jobs.pop(job_id, None) is not None:
                self._save_state()

    def get_job(self, job_id: str) -> Optional[UploadJob]:
        with self._lock:
            job_dict = self._jobs.get(job_id)
        return UploadJob.from_dict(job_dict) if job_dict else None

    def load_jobs(self) -> List[UploadJob]:
        """Rebuild every persisted job, oldest first.

        Returns:
            List of UploadJob objects ready to be enqueued again
        """
        with self._lock:
            entries = list(self._jobs.values())

        jobs = []
        for job_dict in entries:
            try:
                jobs.append(UploadJob.from_dict(job_dict))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping corrupt state entry {job_dict.get('id')}: {e}")
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
