"""
Module scheduling upload jobs: queue, concurrency slots, state machine and retries.
"""
import heapq
import itertools
import logging
import os
import random
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .duplicates import DuplicateDetector, generate_unique_name
from .errors import EnqueueError, UploadCancelled, UploadPaused, classify_error
from .history import HistoryStore
from .models import (
    DuplicateAction,
    HistoryItem,
    ManagerStatus,
    RetryPolicy,
    UploadJob,
    UploadStatus,
)
from .schedule import UploadSchedule
from .tracker import UploadTracker

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadJob], None]
StatusCallback = Callable[[ManagerStatus], None]

# Longest sleep while the upload schedule holds queued jobs.
SCHEDULE_POLL_INTERVAL = 30.0


class UploadManager:
    """Drives upload jobs through their lifecycle.

    Jobs wait in a FIFO queue and at most `max_concurrent` of them run at a
    time, each owned by one worker thread. Transient failures are put back
    on a timer heap and re-enter the queue when their backoff expires, so a
    waiting job never holds a worker slot.
    """

    def __init__(self, transfer, detector: Optional[DuplicateDetector] = None,
                 tracker: Optional[UploadTracker] = None,
                 history: Optional[HistoryStore] = None,
                 max_concurrent: int = 4,
                 retry_policy: Optional[RetryPolicy] = None,
                 duplicate_action: DuplicateAction = DuplicateAction.WARN,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None,
                 schedule: Optional[UploadSchedule] = None,
                 wall_clock: Callable[[], datetime] = datetime.now):
        """Initialize the upload manager.

        Args:
            transfer: TransferClient performing the uploads
            detector: Duplicate detector consulted while preparing a job
            tracker: Durable store for unfinished jobs
            history: Sink for jobs reaching a terminal state
            max_concurrent: Maximum number of jobs uploading at once
            retry_policy: Attempt budget and backoff for transient failures
            duplicate_action: What to do with duplicate uploads
            clock: Monotonic time source for the retry timer
            rng: Random source for backoff jitter
            schedule: Time windows in which new jobs may start
            wall_clock: Local time source checked against the schedule
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.transfer = transfer
        self.detector = detector
        self.tracker = tracker
        self.history = history or HistoryStore()
        self.max_concurrent = max_concurrent
        self.retry_policy = retry_policy or RetryPolicy()
        self.duplicate_action = DuplicateAction(duplicate_action)
        self._clock = clock
        self._rng = rng or random.Random()
        self.schedule = schedule or UploadSchedule()
        self._wall_clock = wall_clock
        self._held_by_schedule = False

        self._jobs: Dict[str, UploadJob] = {}
        self._pending: Deque[str] = deque()
        self._delayed: List[Tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._parked: List[str] = []
        self._active: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._paused = False
        self._stopping = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None

        self._progress_callbacks: List[ProgressCallback] = []
        self._status_callbacks: List[StatusCallback] = []

    # Queue management

    def enqueue(self, job: UploadJob) -> str:
        """Add a job to the end of the pending queue.

        Args:
            job: Job to upload

        Returns:
            The job id

        Raises:
            EnqueueError: If the source is not a readable file or the
                destination is empty
        """
        self._validate(job)

        with self._changed:
            existing = self._jobs.get(job.id)
            if existing is not None and not existing.status.is_terminal:
                raise EnqueueError(f"Job {job.id} is already queued")
            if job.status != UploadStatus.PENDING:
                job.reset_for_retry()
            self._jobs[job.id] = job
            self._cancel_events[job.id] = threading.Event()
            self._pending.append(job.id)
            self._changed.notify_all()

        self._persist(job)
        logger.info(f"Queued {job.display_name} -> {job.s3_uri} ({job.total_bytes} bytes)")
        self._notify_status()
        return job.id

    @staticmethod
    def _validate(job: UploadJob) -> None:
        if not job.bucket:
            raise EnqueueError("Destination bucket is empty")
        if not job.key:
            raise EnqueueError("Destination key is empty")
        if not job.source_path.exists():
            raise EnqueueError(f"Source file not found: {job.source_path}")
        if not job.source_path.is_file():
            raise EnqueueError(f"Source is not a file: {job.source_path}")
        if not os.access(job.source_path, os.R_OK):
            raise EnqueueError(f"Source file is not readable: {job.source_path}")

    def restore(self) -> int:
        """Re-queue unfinished jobs persisted by the tracker.

        Returns:
            Number of jobs restored
        """
        if self.tracker is None:
            return 0

        restored = 0
        for job in self.tracker.load_jobs():
            with self._lock:
                if job.id in self._jobs:
                    continue
            try:
                self.enqueue(job)
                restored += 1
            except EnqueueError as e:
                logger.warning(f"Dropping unfinished upload {job.id}: {e}")
                self.tracker.remove_job(job.id)

        if restored:
            logger.info(f"Restored {restored} unfinished uploads")
        return restored

    # Lifecycle

    def start(self) -> None:
        with self._changed:
            if self._dispatcher is not None:
                return
            self._stopping = False
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent, thread_name_prefix="upload"
            )
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="upload-dispatcher", daemon=True
            )
            self._dispatcher.start()
        logger.info(f"Upload manager started with {self.max_concurrent} slots")

    def pause(self) -> None:
        """Stop dispatching jobs and parts; in-flight calls finish first."""
        with self._changed:
            if self._paused:
                return
            self._paused = True
            self._changed.notify_all()
        logger.info("Upload manager paused")
        self._notify_status()

    def resume(self) -> None:
        """Put parked jobs back at the front of the queue, in their original order."""
        with self._changed:
            if not self._paused and not self._parked:
                return
            self._paused = False
            for job_id in reversed(self._parked):
                job = self._jobs.get(job_id)
                if job is not None and job.status == UploadStatus.PAUSED:
                    job.reset_for_retry()
                    self._pending.appendleft(job_id)
            self._parked.clear()
            self._changed.notify_all()
        logger.info("Upload manager resumed")
        self._notify_status()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the dispatcher. Running multipart jobs park after their current parts."""
        with self._changed:
            self._paused = True
            self._stopping = True
            dispatcher = self._dispatcher
            executor = self._executor
            self._dispatcher = None
            self._executor = None
            self._changed.notify_all()

        if dispatcher is not None:
            dispatcher.join()
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("Upload manager stopped")

    def set_schedule(self, schedule: UploadSchedule) -> None:
        """Replace the upload schedule. Running jobs are not interrupted."""
        with self._changed:
            self.schedule = schedule
            self._changed.notify_all()
        logger.info(f"Upload schedule {'enabled' if schedule.enabled else 'disabled'}")

    @property
    def is_paused(self) -> bool:
        return self._paused

    # Cancellation and retries

    def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        Queued, delayed and parked jobs are cancelled at once. A running job
        observes the cancellation at its next throttle wait or part boundary.

        Returns:
            False if the job is unknown or already finished
        """
        with self._changed:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False

            self._cancel_events[job_id].set()
            # A job already on the backoff timer is done with its worker even if
            # the worker has not left the active set yet.
            waiting = any(entry[2] == job_id for entry in self._delayed)
            if job_id in self._active and not waiting:
                logger.info(f"Cancelling running upload {job.display_name}")
                return True

            if job_id in self._pending:
                self._pending.remove(job_id)
            if job_id in self._parked:
                self._parked.remove(job_id)
            if waiting:
                self._delayed = [entry for entry in self._delayed if entry[2] != job_id]
                heapq.heapify(self._delayed)
            self._changed.notify_all()

        self._finish_cancelled(job)
        return True

    def cancel_all(self) -> int:
        with self._lock:
            job_ids = [j.id for j in self._jobs.values() if not j.status.is_terminal]
        return sum(1 for job_id in job_ids if self.cancel(job_id))

    def retry(self, job_id: str, fresh: bool = False) -> bool:
        """Put a failed job back in the queue.

        Args:
            job_id: Identifier of a failed job
            fresh: Drop multipart state and retry history instead of resuming

        Returns:
            False if the job is unknown or not failed
        """
        with self._changed:
            job = self._jobs.get(job_id)
            if job is None or job.status != UploadStatus.FAILED:
                return False
            if fresh:
                job.reset_fresh()
            else:
                job.reset_for_retry()
            self._cancel_events[job_id] = threading.Event()
            self._pending.append(job_id)
            self._changed.notify_all()

        self._persist(job)
        logger.info(f"Retrying {job.display_name}{' from scratch' if fresh else ''}")
        self._notify_status()
        return True

    def retry_all_failed(self) -> int:
        with self._lock:
            failed = [j.id for j in self._jobs.values() if j.status == UploadStatus.FAILED]
        return sum(1 for job_id in failed if self.retry(job_id))

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the given retry attempt (1-based), jittered."""
        policy = self.retry_policy
        delay = min(policy.base_delay * (2 ** max(attempt - 1, 0)), policy.max_delay)
        spread = delay * policy.jitter
        return max(0.0, delay + self._rng.uniform(-spread, spread))

    # Queries

    def get_job(self, job_id: str) -> Optional[UploadJob]:
        with self._lock:
            job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    def list_jobs(self) -> List[UploadJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted((j.snapshot() for j in jobs), key=lambda j: j.created_at)

    def get_history(self, limit: int = 10) -> List[HistoryItem]:
        return self.history.get_recent(limit)

    def get_status(self) -> ManagerStatus:
        """Aggregate counts and byte-weighted progress over all known jobs."""
        with self._lock:
            snapshots = [j.snapshot() for j in self._jobs.values()]
            paused_flag = self._paused

        counts = {status: 0 for status in UploadStatus}
        total_bytes = 0
        uploaded_bytes = 0
        for job in snapshots:
            counts[job.status] += 1
            if job.status not in (UploadStatus.FAILED, UploadStatus.CANCELLED):
                total_bytes += job.total_bytes
                uploaded_bytes += job.bytes_uploaded

        is_running = counts[UploadStatus.UPLOADING] > 0
        return ManagerStatus(
            pending=counts[UploadStatus.PENDING],
            active=counts[UploadStatus.PREPARING] + counts[UploadStatus.UPLOADING],
            paused=counts[UploadStatus.PAUSED],
            completed=counts[UploadStatus.COMPLETED],
            failed=counts[UploadStatus.FAILED],
            cancelled=counts[UploadStatus.CANCELLED],
            total_bytes=total_bytes,
            uploaded_bytes=uploaded_bytes,
            is_running=is_running,
            is_paused=paused_flag and not is_running
        )

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued, delayed or running.

        Returns:
            True if the manager went idle before the timeout
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._pending and not self._delayed and not self._active,
                timeout=timeout
            )

    def on_progress(self, callback: ProgressCallback) -> None:
        self._progress_callbacks.append(callback)

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    # Dispatching

    def _dispatch_loop(self) -> None:
        with self._changed:
            while not self._stopping:
                self._promote_due()
                allowed = self._schedule_allows()
                while (allowed and not self._paused and self._pending
                       and len(self._active) < self.max_concurrent):
                    self._launch(self._pending.popleft())
                timeout = self._next_due_in()
                if not allowed and self._pending:
                    timeout = min(timeout if timeout is not None else SCHEDULE_POLL_INTERVAL,
                                  self._until_schedule_opens())
                self._changed.wait(timeout)

    def _schedule_allows(self) -> bool:
        now = self._wall_clock()
        allowed = self.schedule.is_upload_allowed(now)
        if not allowed and self._pending and not self._held_by_schedule:
            next_time = self.schedule.next_allowed_time(now)
            until = f" until {next_time:%a %H:%M}" if next_time else ""
            logger.info(f"Upload schedule holds {len(self._pending)} queued jobs{until}")
        elif allowed and self._held_by_schedule:
            logger.info("Upload schedule window opened")
        self._held_by_schedule = not allowed and bool(self._pending)
        return allowed

    def _until_schedule_opens(self) -> float:
        now = self._wall_clock()
        next_time = self.schedule.next_allowed_time(now)
        if next_time is None:
            return SCHEDULE_POLL_INTERVAL
        return max(0.0, min(SCHEDULE_POLL_INTERVAL, (next_time - now).total_seconds()))

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.status == UploadStatus.PENDING:
                self._pending.append(job_id)
        self._changed.notify_all()

    def _next_due_in(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self._clock())

    def _launch(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != UploadStatus.PENDING:
            return
        job.mark_preparing()
        cancel_event = self._cancel_events[job_id]
        self._active[job_id] = self._executor.submit(self._run_job, job, cancel_event)

    def _schedule_retry(self, job: UploadJob, delay: float, cancel_event: threading.Event) -> bool:
        """Put a job on the backoff timer.

        Returns:
            False if the job was cancelled before it could be scheduled
        """
        with self._changed:
            if cancel_event.is_set():
                return False
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._sequence), job.id))
            self._changed.notify_all()
        return True

    def _should_pause(self) -> bool:
        return self._paused

    # Job execution

    def _run_job(self, job: UploadJob, cancel_event: threading.Event) -> None:
        try:
            self._execute(job, cancel_event)
        except Exception:
            logger.exception(f"Unexpected error while processing {job.display_name}")
            job.mark_failed(RuntimeError("Internal error while processing upload"))
            self._finish(job)
        finally:
            with self._changed:
                self._active.pop(job.id, None)
                self._changed.notify_all()
            self._notify_status()

    def _execute(self, job: UploadJob, cancel_event: threading.Event) -> None:
        try:
            if cancel_event.is_set():
                raise UploadCancelled()
            if not job.prepared and not self._prepare(job):
                return

            job.mark_started()
            self._notify_status()
            self._notify_progress(job)
            attempt = job.retry_attempts + 1
            logger.info(f"Uploading {job.display_name} (attempt {attempt})")

            result = self.transfer.upload(
                job,
                cancel_event=cancel_event,
                should_pause=self._should_pause,
                progress_callback=self._notify_progress,
                on_state_change=self._persist
            )
        except UploadPaused:
            self._park(job)
            return
        except Exception as e:
            self._handle_failure(job, e, cancel_event)
            return

        if cancel_event.is_set():
            # The store call finished after cancel() already answered True.
            job.mark_cancelled()
            logger.info(f"Cancelled {job.display_name} after its last request completed")
            self._finish(job)
            return

        job.mark_completed(result.etag, result.presigned_url)
        if self.detector is not None:
            self.detector.record_upload(job.content_hash, job.bucket, job.key)
        self._finish(job)

    def _prepare(self, job: UploadJob) -> bool:
        """Run the duplicate check.

        Returns:
            False if the job was skipped as a duplicate
        """
        if self.detector is None or not self.detector.enabled or job.upload_id:
            job.mark_prepared()
            return True

        result = self.detector.check_for_duplicate(job.source_path, job.bucket, job.key)
        if not result.is_duplicate:
            job.mark_prepared(content_hash=result.hash)
            return True

        note = f"{result.suggestion} ({result.existing_location})"
        action = self.duplicate_action

        if action == DuplicateAction.SKIP:
            logger.info(f"Skipping duplicate {job.display_name}: {note}")
            job.mark_prepared(content_hash=result.hash, duplicate_note=note)
            job.mark_cancelled(f"Skipped duplicate: {note}")
            self._finish(job)
            return False

        if action == DuplicateAction.RENAME:
            key = self._unique_key(job)
            if key != job.key:
                logger.info(f"Duplicate {job.display_name}, uploading as {key}")
            job.mark_prepared(content_hash=result.hash, key=key, duplicate_note=note)
            return True

        if action == DuplicateAction.WARN:
            logger.warning(f"Possible duplicate {job.display_name}: {note}")
        else:
            logger.info(f"Overwriting {job.s3_uri}: {note}")
        job.mark_prepared(content_hash=result.hash, duplicate_note=note)
        return True

    def _unique_key(self, job: UploadJob) -> str:
        taken = set()
        candidate = job.key
        while self.transfer.object_exists(job.bucket, candidate):
            taken.add(candidate)
            candidate = generate_unique_name(job.key, taken)
        return candidate

    def _park(self, job: UploadJob) -> None:
        with self._changed:
            if self._paused:
                job.mark_paused()
                self._parked.append(job.id)
            else:
                # Resumed before the job got parked.
                job.reset_for_retry()
                self._pending.appendleft(job.id)
            self._changed.notify_all()
        self._persist(job)
        logger.info(f"Parked {job.display_name} at {job.bytes_uploaded}/{job.total_bytes} bytes")

    def _handle_failure(self, job: UploadJob, exc: Exception, cancel_event: threading.Event) -> None:
        error = classify_error(exc)

        if isinstance(error, UploadCancelled) or cancel_event.is_set():
            self._finish_cancelled(job)
            return

        if error.retryable and job.retry_attempts + 1 < self.retry_policy.max_attempts:
            job.mark_for_retry(error)
            delay = self.retry_delay(job.retry_attempts)
            logger.warning(
                f"Upload failed (attempt {job.retry_attempts}): {job.display_name} - {error}. "
                f"Retrying in {delay:.1f}s"
            )
            self._persist(job)
            if not self._schedule_retry(job, delay, cancel_event):
                self._finish_cancelled(job)
            return

        job.mark_failed(error)
        if error.retryable:
            logger.error(
                f"Upload permanently failed after {job.retry_attempts + 1} attempts: "
                f"{job.display_name} - {error}"
            )
        else:
            logger.error(f"Upload failed (non-retryable): {job.display_name} - {error}")
        self._finish(job)

    def _finish_cancelled(self, job: UploadJob) -> None:
        self._abort(job)
        job.mark_cancelled()
        logger.info(f"Cancelled {job.display_name}")
        self._finish(job)

    def _abort(self, job: UploadJob) -> None:
        if job.upload_id is None:
            return
        try:
            self.transfer.abort(job)
        except Exception as e:
            logger.error(f"Could not abort multipart upload for {job.display_name}: {e}")

    def _finish(self, job: UploadJob) -> None:
        """Archive a job that reached a terminal state."""
        self.history.append(job.snapshot())
        if self.tracker is not None:
            self.tracker.remove_job(job.id)
        self._notify_progress(job)
        with self._changed:
            self._changed.notify_all()

    def _persist(self, job: UploadJob) -> None:
        if self.tracker is not None:
            self.tracker.save_job(job)

    def _notify_progress(self, job: UploadJob) -> None:
        if not self._progress_callbacks:
            return
        snapshot = job.snapshot()
        for callback in list(self._progress_callbacks):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Progress callback failed")

    def _notify_status(self) -> None:
        if not self._status_callbacks:
            return
        status = self.get_status()
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("Status callback failed")
