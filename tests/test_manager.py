"""
Tests for the upload manager: scheduling, retries, pause and cancellation.
"""
import threading
import time
from datetime import datetime

import pytest

from transfer_engine.duplicates import DuplicateDetector
from transfer_engine.errors import AccessDenied, EnqueueError, NetworkError, UploadTimeout
from transfer_engine.manager import UploadManager
from transfer_engine.models import (
    CompletedPart,
    DuplicateAction,
    RetryPolicy,
    UploadJob,
    UploadStatus,
)
from transfer_engine.schedule import ScheduleMode, ScheduleRule, UploadSchedule

NO_DELAY = RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def manager(fake_transfer, history_store):
    manager = UploadManager(
        fake_transfer,
        history=history_store,
        max_concurrent=3,
        retry_policy=NO_DELAY
    )
    yield manager
    manager.shutdown()


def test_concurrency_limit_is_respected(manager, fake_transfer, make_job):
    fake_transfer.delay = 0.05
    seen_uploading = []
    manager.on_status(lambda status: seen_uploading.append(status.active))

    job_ids = [manager.enqueue(make_job(f"clip{i}.mov", 100)) for i in range(10)]
    manager.start()

    assert manager.wait_until_idle(timeout=10)
    assert fake_transfer.max_active <= 3
    assert max(seen_uploading) <= 3
    assert all(manager.get_job(i).status == UploadStatus.COMPLETED for i in job_ids)
    assert manager.get_status().completed == 10


def test_pending_queue_is_fifo(fake_transfer, history_store, make_job):
    manager = UploadManager(fake_transfer, history=history_store, max_concurrent=1, retry_policy=NO_DELAY)
    job_ids = [manager.enqueue(make_job(f"clip{i}.mov", 100)) for i in range(5)]

    manager.start()
    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()

    assert fake_transfer.calls == job_ids


def test_transient_failures_then_success(manager, fake_transfer, make_job):
    job = make_job()
    fake_transfer.scripts[job.id] = [UploadTimeout("timed out"), UploadTimeout("timed out")]

    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    result = manager.get_job(job.id)
    assert result.status == UploadStatus.COMPLETED
    assert result.retry_attempts == 2
    assert len(result.retry_errors) == 2
    assert result.bytes_uploaded == result.total_bytes
    assert result.etag == '"fake-etag"'
    assert result.presigned_url == "https://example.com/signed"


def test_retry_budget_exhausted(manager, fake_transfer, make_job):
    job = make_job()
    fake_transfer.scripts[job.id] = [NetworkError("down")] * 3

    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    result = manager.get_job(job.id)
    assert result.status == UploadStatus.FAILED
    assert fake_transfer.calls.count(job.id) == 3
    assert result.last_error == "Network error: down"
    assert len(result.retry_errors) == 2


def test_non_retryable_error_fails_immediately(manager, fake_transfer, make_job):
    job = make_job()
    fake_transfer.scripts[job.id] = [AccessDenied("nope")]

    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    result = manager.get_job(job.id)
    assert result.status == UploadStatus.FAILED
    assert result.retry_attempts == 0
    assert fake_transfer.calls == [job.id]
    assert manager.get_history(1)[0].status == "failed"


def test_cancel_during_upload_is_not_retried(manager, fake_transfer, make_job):
    job = make_job()
    gate = threading.Event()
    fake_transfer.gates[job.id] = gate
    fake_transfer.scripts[job.id] = [UploadTimeout("in-flight call failed")]

    manager.enqueue(job)
    manager.start()
    assert wait_for(lambda: manager.get_job(job.id).status == UploadStatus.UPLOADING)

    assert manager.cancel(job.id)
    gate.set()
    assert manager.wait_until_idle(timeout=5)

    result = manager.get_job(job.id)
    assert result.status == UploadStatus.CANCELLED
    assert fake_transfer.calls == [job.id]
    assert result.retry_attempts == 0


def test_cancel_wins_over_in_flight_success(manager, fake_transfer, make_job):
    job = make_job()
    gate = threading.Event()
    fake_transfer.gates[job.id] = gate

    manager.enqueue(job)
    manager.start()
    assert wait_for(lambda: manager.get_job(job.id).status == UploadStatus.UPLOADING)

    assert manager.cancel(job.id)
    gate.set()
    assert manager.wait_until_idle(timeout=5)

    assert manager.get_job(job.id).status == UploadStatus.CANCELLED
    assert manager.get_history(1)[0].status == "cancelled"


def test_cancel_interrupts_retry_backoff(fake_transfer, history_store, make_job):
    manager = UploadManager(
        fake_transfer,
        history=history_store,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=60.0, jitter=0.0)
    )
    job = make_job()
    fake_transfer.scripts[job.id] = [UploadTimeout("timed out")]

    manager.enqueue(job)
    manager.start()
    assert wait_for(lambda: manager.get_job(job.id).retry_attempts == 1)
    assert manager.get_job(job.id).status == UploadStatus.PENDING

    assert manager.cancel(job.id)

    assert wait_for(lambda: manager.get_job(job.id).status == UploadStatus.CANCELLED, timeout=1)
    assert manager.wait_until_idle(timeout=1)
    manager.shutdown()
    assert fake_transfer.calls == [job.id]


def test_cancel_queued_job_aborts_multipart(manager, fake_transfer, make_job):
    job = make_job()
    job.begin_multipart("mpu-1", 5 * 1024 * 1024)

    manager.enqueue(job)
    assert manager.cancel(job.id)

    assert manager.get_job(job.id).status == UploadStatus.CANCELLED
    assert fake_transfer.aborted == [job.id]
    assert not manager.cancel(job.id)


def test_cancel_all(manager, make_job):
    jobs = [manager.enqueue(make_job(f"c{i}.mov")) for i in range(3)]

    assert manager.cancel_all() == 3
    assert all(manager.get_job(j).status == UploadStatus.CANCELLED for j in jobs)


def test_pause_stops_dispatching(manager, fake_transfer, make_job):
    manager.pause()
    manager.enqueue(make_job("a.mov"))
    manager.start()

    time.sleep(0.1)
    assert fake_transfer.calls == []
    status = manager.get_status()
    assert status.is_paused
    assert not status.is_running

    manager.resume()
    assert manager.wait_until_idle(timeout=5)
    assert manager.get_status().completed == 1


def test_in_flight_job_is_parked_and_resumed_first(fake_transfer, history_store, make_job):
    manager = UploadManager(fake_transfer, history=history_store, max_concurrent=1, retry_policy=NO_DELAY)
    first = make_job("first.mov")
    second = make_job("second.mov")
    gate = threading.Event()
    fake_transfer.gates[first.id] = gate

    manager.enqueue(first)
    manager.enqueue(second)
    manager.start()
    assert wait_for(lambda: manager.get_job(first.id).status == UploadStatus.UPLOADING)

    manager.pause()
    gate.set()
    assert wait_for(lambda: manager.get_job(first.id).status == UploadStatus.PAUSED)
    assert manager.get_status().paused == 1
    del fake_transfer.gates[first.id]

    manager.resume()
    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()

    assert fake_transfer.calls == [first.id, first.id, second.id]
    assert manager.get_job(first.id).status == UploadStatus.COMPLETED


def test_pause_and_resume_are_idempotent(manager):
    manager.pause()
    manager.pause()
    assert manager.is_paused
    manager.resume()
    manager.resume()
    assert not manager.is_paused


def test_schedule_holds_jobs_until_window_opens(fake_transfer, history_store, make_job):
    night_only = UploadSchedule(enabled=True, rules=[ScheduleRule(start_minute=22 * 60, end_minute=6 * 60)])
    now = [datetime(2026, 10, 19, 14, 0)]
    manager = UploadManager(
        fake_transfer,
        history=history_store,
        retry_policy=NO_DELAY,
        schedule=night_only,
        wall_clock=lambda: now[0]
    )
    job_id = manager.enqueue(make_job("night.mov"))
    manager.start()

    time.sleep(0.1)
    assert fake_transfer.calls == []
    assert manager.get_job(job_id).status == UploadStatus.PENDING

    now[0] = datetime(2026, 10, 19, 23, 0)
    manager.set_schedule(night_only)

    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()
    assert fake_transfer.calls == [job_id]
    assert manager.get_job(job_id).status == UploadStatus.COMPLETED


def test_disabling_schedule_releases_held_jobs(fake_transfer, history_store, make_job):
    blocked = UploadSchedule(enabled=True, mode=ScheduleMode.BLOCK_DURING,
                             rules=[ScheduleRule(start_minute=0, end_minute=24 * 60)])
    manager = UploadManager(fake_transfer, history=history_store, retry_policy=NO_DELAY, schedule=blocked)
    manager.enqueue(make_job())
    manager.start()

    time.sleep(0.1)
    assert fake_transfer.calls == []

    manager.set_schedule(UploadSchedule())

    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()
    assert manager.get_status().completed == 1


def test_enqueue_rejects_bad_jobs(manager, make_job, tmp_upload_dir):
    with pytest.raises(EnqueueError):
        manager.enqueue(UploadJob(source_path=tmp_upload_dir / "missing.mov", bucket="b", key="k"))
    with pytest.raises(EnqueueError):
        manager.enqueue(UploadJob(source_path=tmp_upload_dir, bucket="b", key="k"))
    with pytest.raises(EnqueueError):
        manager.enqueue(make_job(bucket=""))
    with pytest.raises(EnqueueError):
        manager.enqueue(UploadJob(source_path=make_job("a.mov").source_path, bucket="b", key=""))


def test_manual_retry_of_failed_job(manager, fake_transfer, make_job):
    job = make_job()
    fake_transfer.scripts[job.id] = [AccessDenied("nope")]
    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    assert manager.retry(job.id)
    assert manager.wait_until_idle(timeout=5)

    assert manager.get_job(job.id).status == UploadStatus.COMPLETED
    assert not manager.retry(job.id)
    assert [item.status for item in manager.get_history(2)] == ["completed", "failed"]


def test_retry_all_failed(manager, fake_transfer, make_job):
    jobs = [make_job(f"c{i}.mov") for i in range(2)]
    for job in jobs:
        fake_transfer.scripts[job.id] = [AccessDenied("nope")]
        manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    assert manager.retry_all_failed() == 2
    assert manager.wait_until_idle(timeout=5)
    assert manager.get_status().completed == 2


def test_fresh_retry_drops_multipart_state(manager, fake_transfer, make_job):
    job = make_job()
    job.begin_multipart("mpu-1", 5 * 1024 * 1024)
    fake_transfer.scripts[job.id] = [AccessDenied("nope"), AccessDenied("nope")]
    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    manager.pause()
    manager.retry(job.id, fresh=True)

    snapshot = manager.get_job(job.id)
    assert snapshot.upload_id is None
    assert snapshot.retry_attempts == 0
    assert snapshot.status == UploadStatus.PENDING


def test_retry_delay_is_exponential_and_capped(fake_transfer):
    manager = UploadManager(fake_transfer, retry_policy=RetryPolicy(base_delay=5, max_delay=300, jitter=0))

    assert [manager.retry_delay(n) for n in (1, 2, 3)] == [5, 10, 20]
    assert manager.retry_delay(10) == 300


def test_retry_delay_jitter_bounds(fake_transfer):
    manager = UploadManager(fake_transfer, retry_policy=RetryPolicy(base_delay=10, jitter=0.1))

    for _ in range(50):
        assert 9.0 <= manager.retry_delay(1) <= 11.0


def test_duplicate_skip_cancels_job(fake_transfer, history_store, make_job):
    detector = DuplicateDetector()
    manager = UploadManager(fake_transfer, detector=detector, history=history_store,
                            duplicate_action=DuplicateAction.SKIP, retry_policy=NO_DELAY)
    job = make_job()
    detector.record_upload(detector.hashes.compute(job.source_path), "test-bucket", "earlier.mov")

    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()

    result = manager.get_job(job.id)
    assert result.status == UploadStatus.CANCELLED
    assert "s3://test-bucket/earlier.mov" in result.last_error
    assert fake_transfer.calls == []


def test_duplicate_rename_picks_free_key(fake_transfer, history_store, make_job):
    fake_transfer.existing = {"shots/clip.mov", "shots/clip_1.mov"}
    detector = DuplicateDetector(remote=fake_transfer)
    manager = UploadManager(fake_transfer, detector=detector, history=history_store,
                            duplicate_action=DuplicateAction.RENAME, retry_policy=NO_DELAY)
    job = make_job("clip.mov", key="shots/clip.mov")

    manager.enqueue(job)
    manager.start()
    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()

    result = manager.get_job(job.id)
    assert result.status == UploadStatus.COMPLETED
    assert result.key == "shots/clip_2.mov"


def test_second_upload_of_same_file_is_flagged(fake_transfer, history_store, make_job, make_file):
    detector = DuplicateDetector()
    manager = UploadManager(fake_transfer, detector=detector, history=history_store, retry_policy=NO_DELAY)
    first = make_job("a.mov", fill=b"same")
    second = UploadJob(source_path=make_file("b.mov", 1024, b"same"), bucket="test-bucket", key="b.mov")

    manager.enqueue(first)
    manager.start()
    assert manager.wait_until_idle(timeout=5)
    manager.enqueue(second)
    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()

    result = manager.get_job(second.id)
    assert result.status == UploadStatus.COMPLETED
    assert "s3://test-bucket/a.mov" in result.duplicate_note


def test_status_progress_is_weighted_by_bytes(manager, make_job):
    manager.enqueue(make_job("small.mov", 100))
    big = make_job("big.mov", 300)
    manager.enqueue(big)
    big.update_progress(150)

    status = manager.get_status()

    assert status.pending == 2
    assert status.total_bytes == 400
    assert status.overall_progress == pytest.approx(37.5)
    assert status.to_dict()['progress'] == 37.5


def test_restore_requeues_persisted_jobs(fake_transfer, upload_tracker, history_store, make_job):
    job = make_job("clip.mov", 2048)
    job.begin_multipart("mpu-9", 5 * 1024 * 1024)
    job.add_completed_part(CompletedPart(1, '"e1"', 1024))
    upload_tracker.save_job(job)

    manager = UploadManager(fake_transfer, tracker=upload_tracker, history=history_store, retry_policy=NO_DELAY)
    assert manager.restore() == 1

    restored = manager.get_job(job.id)
    assert restored.upload_id == "mpu-9"
    assert [p.part_number for p in restored.completed_parts] == [1]
    assert restored.bytes_uploaded == 1024

    manager.start()
    assert manager.wait_until_idle(timeout=5)
    manager.shutdown()
    assert len(upload_tracker) == 0


def test_restore_drops_jobs_whose_source_vanished(fake_transfer, upload_tracker, make_job):
    job = make_job("gone.mov")
    upload_tracker.save_job(job)
    job.source_path.unlink()

    manager = UploadManager(fake_transfer, tracker=upload_tracker)

    assert manager.restore() == 0
    assert len(upload_tracker) == 0


def test_progress_callbacks_receive_snapshots(manager, make_job):
    seen = []
    manager.on_progress(lambda job: seen.append(job.status))

    manager.enqueue(make_job())
    manager.start()
    assert manager.wait_until_idle(timeout=5)

    assert UploadStatus.UPLOADING in seen
    assert seen[-1] == UploadStatus.COMPLETED
