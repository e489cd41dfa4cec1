"""
Integration tests for the transfer engine against a mocked S3.
"""
import pytest

from transfer_engine.config import MIB
from transfer_engine.coordinator import UploadCoordinator
from transfer_engine.models import CompletedPart, UploadJob, UploadStatus


@pytest.fixture
def coordinator(mock_aws, engine_config, static_provider):
    coordinator = UploadCoordinator(engine_config, credential_provider=static_provider)
    yield coordinator
    coordinator.stop()


def test_small_and_multipart_files_reach_the_bucket(coordinator, mock_aws, make_file):
    small = make_file("notes.txt", 2048, b"notes")
    large = make_file("clip.mov", 7 * MIB, b"0123456789")

    job_ids = coordinator.upload_path(small, prefix="day1")
    job_ids += coordinator.upload_path(large, prefix="day1")
    coordinator.start()
    assert coordinator.manager.wait_until_idle(timeout=30)

    for job_id in job_ids:
        job = coordinator.manager.get_job(job_id)
        assert job.status == UploadStatus.COMPLETED, job.last_error
        assert "X-Amz-Signature=" in job.presigned_url

    body = mock_aws.get_object(Bucket="test-bucket", Key="day1/notes.txt")['Body'].read()
    assert body == small.read_bytes()
    body = mock_aws.get_object(Bucket="test-bucket", Key="day1/clip.mov")['Body'].read()
    assert body == large.read_bytes()
    assert mock_aws.list_multipart_uploads(Bucket="test-bucket").get('Uploads', []) == []


def test_folder_upload_keeps_structure(coordinator, mock_aws, make_file, tmp_upload_dir):
    make_file("shoot/a.png", 100, b"a")
    make_file("shoot/raw/b.png", 100, b"b")

    coordinator.upload_path(tmp_upload_dir / "shoot")
    coordinator.start()
    assert coordinator.manager.wait_until_idle(timeout=30)

    keys = sorted(o['Key'] for o in mock_aws.list_objects_v2(Bucket="test-bucket")['Contents'])
    assert keys == ["shoot/a.png", "shoot/raw/b.png"]
    assert [i.status for i in coordinator.manager.get_history(5)] == ["completed", "completed"]
    assert len(coordinator.tracker) == 0


def test_interrupted_multipart_upload_is_resumed(coordinator, mock_aws, make_file):
    path = make_file("clip.mov", 7 * MIB, b"abcdefgh")
    data = path.read_bytes()
    upload_id = mock_aws.create_multipart_upload(Bucket="test-bucket", Key="clip.mov")['UploadId']
    first = mock_aws.upload_part(
        Bucket="test-bucket", Key="clip.mov", UploadId=upload_id, PartNumber=1, Body=data[:5 * MIB]
    )

    job = UploadJob(source_path=path, bucket="test-bucket", key="clip.mov")
    job.begin_multipart(upload_id, 5 * MIB)
    job.add_completed_part(CompletedPart(1, first['ETag'], 5 * MIB))
    coordinator.tracker.save_job(job)

    coordinator.start()
    assert coordinator.manager.wait_until_idle(timeout=30)

    assert coordinator.manager.get_job(job.id).status == UploadStatus.COMPLETED
    assert mock_aws.get_object(Bucket="test-bucket", Key="clip.mov")['Body'].read() == data


def test_missing_bucket_fails_without_retry(coordinator, make_file):
    job_ids = coordinator.upload_path(make_file("a.txt", 10), bucket="no-such-bucket")
    coordinator.start()
    assert coordinator.manager.wait_until_idle(timeout=30)

    job = coordinator.manager.get_job(job_ids[0])
    assert job.status == UploadStatus.FAILED
    assert job.retry_attempts == 0
