"""
Module for transferring files to S3 with resumable multipart uploads.
"""
import logging
import math
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Any, List, Optional

import boto3
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import ClientError
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    before_log,
    after_log
)

from .config import EngineConfig, MIB
from .errors import (
    ChecksumMismatch,
    FileTooLarge,
    KeyTooLong,
    SigningError,
    UploadCancelled,
    UploadError,
    UploadPaused,
    classify_error,
    is_retryable_error,
)
from .hashing import content_md5
from .models import CompletedPart, UploadJob
from .signing import CredentialProvider, RequestSigner, SessionCredentialProvider
from .throttle import BandwidthThrottler

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * MIB
MAX_PARTS = 10000
MAX_OBJECT_SIZE = 5 * 1024 * 1024 * MIB
MAX_KEY_LENGTH = 1024

_NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}

JobCallback = Callable[[UploadJob], None]


def compute_part_size(total_bytes: int, requested: int) -> int:
    """Pick a part size that respects the store's minimum and part count limit.

    Args:
        total_bytes: Object size
        requested: Preferred part size

    Returns:
        Part size in bytes, grown in whole MiB when the file would need
        more than MAX_PARTS parts
    """
    part_size = max(requested, MIN_PART_SIZE)
    if total_bytes > part_size * MAX_PARTS:
        needed = math.ceil(total_bytes / MAX_PARTS)
        part_size = math.ceil(needed / MIB) * MIB
    return part_size


def part_count(total_bytes: int, part_size: int) -> int:
    return max(1, math.ceil(total_bytes / part_size))


@dataclass
class TransferResult:
    etag: Optional[str]
    presigned_url: Optional[str] = None


class TransferClient:
    """Performs single PUT and resumable multipart uploads."""

    def __init__(self, s3_client, signer: Optional[RequestSigner] = None,
                 throttler: Optional[BandwidthThrottler] = None,
                 multipart_threshold: int = 16 * MIB, part_size: int = 8 * MIB,
                 max_part_workers: int = 4, verify_checksum: bool = True,
                 presign_expiry: int = 3600, metadata_attempts: int = 3):
        """Initialize the transfer client.

        Args:
            s3_client: boto3 S3 client, already signing through `signer`
            signer: Used for the presigned download URL after completion
            throttler: Shared bandwidth limiter
            multipart_threshold: Files this large or larger use multipart upload
            part_size: Preferred multipart part size in bytes
            max_part_workers: Parts of one file sent concurrently
            verify_checksum: Attach Content-MD5 to every body
            presign_expiry: Lifetime of the download URL in seconds
            metadata_attempts: Attempts for idempotent metadata calls
        """
        if part_size < MIN_PART_SIZE:
            raise ValueError(f"part_size must be at least {MIN_PART_SIZE} bytes")
        self.s3_client = s3_client
        self.signer = signer
        self.throttler = throttler or BandwidthThrottler()
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size
        self.max_part_workers = max(1, max_part_workers)
        self.verify_checksum = verify_checksum
        self.presign_expiry = presign_expiry
        self.metadata_attempts = metadata_attempts

    @classmethod
    def from_config(cls, config: EngineConfig,
                    credential_provider: Optional[CredentialProvider] = None,
                    throttler: Optional[BandwidthThrottler] = None) -> "TransferClient":
        """Build a client whose every request is signed by our RequestSigner."""
        provider = credential_provider or SessionCredentialProvider(config.profile)
        signer = RequestSigner(provider, region=config.region, endpoint_url=config.endpoint_url)

        botocore_config = Config(
            signature_version=UNSIGNED,
            region_name=config.region,
            retries={'total_max_attempts': 1},
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            request_checksum_calculation='when_required',
            response_checksum_validation='when_required',
            s3={'addressing_style': 'path' if config.endpoint_url else 'virtual'}
        )
        s3_client = boto3.client(
            's3',
            region_name=config.region,
            endpoint_url=config.endpoint_url,
            config=botocore_config
        )
        signer.attach(s3_client)

        return cls(
            s3_client,
            signer=signer,
            throttler=throttler or BandwidthThrottler(config.bandwidth_limit),
            multipart_threshold=config.multipart_threshold,
            part_size=config.part_size,
            max_part_workers=config.max_part_workers,
            verify_checksum=config.verify_checksum,
            presign_expiry=config.presign_expiry
        )

    def _metadata_retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.metadata_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            before=before_log(logger, logging.DEBUG),
            after=after_log(logger, logging.DEBUG),
            reraise=True
        )

    def _head_object(self, bucket: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            return self.s3_client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if str(e.response.get('Error', {}).get('Code')) in _NOT_FOUND_CODES:
                return None
            raise

    def head_object(self, bucket: str, key: str) -> Optional[Dict[str, Any]]:
        """Fetch object metadata.

        Returns:
            The HEAD response, or None when the object does not exist

        Raises:
            UploadError: Classified failure after the retry budget is spent
        """
        try:
            return self._metadata_retrying()(self._head_object, bucket, key)
        except Exception as e:
            raise classify_error(e) from e

    def object_exists(self, bucket: str, key: str) -> bool:
        return self.head_object(bucket, key) is not None

    def validate(self, job: UploadJob) -> None:
        """Check the store's limits and that the source is unchanged."""
        if len(job.key.encode('utf-8')) > MAX_KEY_LENGTH:
            raise KeyTooLong(f"{job.key[:64]}... exceeds {MAX_KEY_LENGTH} bytes")

        size = job.source_path.stat().st_size
        if size != job.total_bytes:
            raise ChecksumMismatch(
                f"{job.display_name} changed size since it was queued "
                f"({job.total_bytes} -> {size} bytes)"
            )
        if size > MAX_OBJECT_SIZE:
            raise FileTooLarge(f"{job.display_name} is {size} bytes, maximum is {MAX_OBJECT_SIZE}")

    def upload(self, job: UploadJob, cancel_event: Optional[threading.Event] = None,
               should_pause: Optional[Callable[[], bool]] = None,
               progress_callback: Optional[JobCallback] = None,
               on_state_change: Optional[JobCallback] = None) -> TransferResult:
        """Upload a job's file, resuming any multipart state it carries.

        Args:
            job: The job to transfer
            cancel_event: Set to cancel between parts and during throttle waits
            should_pause: Polled between parts; True parks the job
            progress_callback: Called after every acknowledged body
            on_state_change: Called whenever multipart state must be persisted

        Returns:
            TransferResult with the final ETag and a presigned download URL

        Raises:
            UploadPaused: When should_pause returned True
            UploadError: Classified failure; multipart state is left resumable
        """
        try:
            self.validate(job)
            if job.total_bytes < self.multipart_threshold and job.upload_id is None:
                etag = self._put_single(job, cancel_event, should_pause, progress_callback)
            else:
                etag = self._upload_multipart(
                    job, cancel_event, should_pause, progress_callback, on_state_change
                )
        except (UploadError, UploadPaused):
            raise
        except Exception as e:
            raise classify_error(e) from e

        logger.info(f"Uploaded {job.display_name} to {job.s3_uri}")
        return TransferResult(etag=etag, presigned_url=self._presign(job))

    def _presign(self, job: UploadJob) -> Optional[str]:
        if self.signer is None:
            return None
        try:
            return self.signer.presign_get_object(job.bucket, job.key, self.presign_expiry)
        except SigningError as e:
            logger.warning(f"Could not create download URL for {job.s3_uri}: {e}")
            return None

    @staticmethod
    def _check_interrupt(cancel_event: Optional[threading.Event],
                         should_pause: Optional[Callable[[], bool]]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise UploadCancelled()
        if should_pause is not None and should_pause():
            raise UploadPaused()

    def _put_single(self, job: UploadJob, cancel_event, should_pause,
                    progress_callback) -> Optional[str]:
        self._check_interrupt(cancel_event, should_pause)

        with open(job.source_path, 'rb') as f:
            data = f.read()
        if len(data) != job.total_bytes:
            raise ChecksumMismatch(f"Read {len(data)} of {job.total_bytes} bytes from {job.display_name}")

        self.throttler.wait_for_bytes(len(data), cancel_event)

        params = {'Bucket': job.bucket, 'Key': job.key, 'Body': data}
        if self.verify_checksum:
            params['ContentMD5'] = content_md5(data)
        response = self.s3_client.put_object(**params)

        job.update_progress(len(data))
        if progress_callback:
            progress_callback(job)
        return response.get('ETag')

    def _upload_multipart(self, job: UploadJob, cancel_event, should_pause,
                          progress_callback, on_state_change) -> Optional[str]:
        if job.upload_id is None:
            part_size = compute_part_size(job.total_bytes, self.part_size)
            response = self.s3_client.create_multipart_upload(Bucket=job.bucket, Key=job.key)
            job.begin_multipart(response['UploadId'], part_size)
            logger.info(f"Started multipart upload {job.upload_id} for {job.display_name}")
            if on_state_change:
                on_state_change(job)
        elif job.part_size is None:
            job.begin_multipart(job.upload_id, compute_part_size(job.total_bytes, self.part_size))

        total_parts = part_count(job.total_bytes, job.part_size)
        done = {p.part_number for p in job.completed_parts}
        missing = [n for n in range(1, total_parts + 1) if n not in done]
        if done:
            logger.info(f"Resuming {job.display_name}: {len(done)}/{total_parts} parts already stored")

        try:
            self._send_parts(job, missing, cancel_event, should_pause, progress_callback, on_state_change)

            parts = sorted(job.snapshot().completed_parts, key=lambda p: p.part_number)
            if len(parts) != total_parts:
                raise UploadError(f"Only {len(parts)} of {total_parts} parts stored for {job.display_name}")

            # A cancel that arrived during the last part must not finalize the object.
            self._check_interrupt(cancel_event, None)
            response = self.s3_client.complete_multipart_upload(
                Bucket=job.bucket,
                Key=job.key,
                UploadId=job.upload_id,
                MultipartUpload={'Parts': [
                    {'PartNumber': p.part_number, 'ETag': p.etag} for p in parts
                ]}
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'NoSuchUpload':
                logger.warning(
                    f"Multipart upload {job.upload_id} for {job.display_name} no longer exists, "
                    f"next attempt starts a new one"
                )
                job.clear_multipart()
                if on_state_change:
                    on_state_change(job)
            raise
        return response.get('ETag')

    def _send_parts(self, job: UploadJob, numbers: List[int], cancel_event, should_pause,
                    progress_callback, on_state_change) -> None:
        """Send parts through a bounded window; in-flight parts finish on interruption."""
        if not numbers:
            return

        with ThreadPoolExecutor(max_workers=self.max_part_workers,
                                thread_name_prefix=f"part-{job.id[:8]}") as executor:
            in_flight = set()
            for number in numbers:
                while len(in_flight) >= self.max_part_workers:
                    finished, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in finished:
                        future.result()
                self._check_interrupt(cancel_event, should_pause)
                in_flight.add(executor.submit(
                    self._upload_part, job, number, cancel_event,
                    progress_callback, on_state_change
                ))

            finished, _ = wait(in_flight)
            for future in finished:
                future.result()

    def _upload_part(self, job: UploadJob, part_number: int, cancel_event,
                     progress_callback, on_state_change) -> CompletedPart:
        offset = (part_number - 1) * job.part_size
        length = min(job.part_size, job.total_bytes - offset)

        with open(job.source_path, 'rb') as f:
            f.seek(offset)
            data = f.read(length)
        if len(data) != length:
            raise ChecksumMismatch(f"Short read for part {part_number} of {job.display_name}")

        self.throttler.wait_for_bytes(length, cancel_event)

        params = {
            'Bucket': job.bucket,
            'Key': job.key,
            'UploadId': job.upload_id,
            'PartNumber': part_number,
            'Body': data
        }
        if self.verify_checksum:
            params['ContentMD5'] = content_md5(data)
        response = self.s3_client.upload_part(**params)

        part = CompletedPart(part_number=part_number, etag=response['ETag'], size=length)
        job.add_completed_part(part)
        logger.debug(f"Stored part {part_number} of {job.display_name} ({length} bytes)")

        if on_state_change:
            on_state_change(job)
        if progress_callback:
            progress_callback(job)
        return part

    def abort(self, job: UploadJob) -> None:
        """Release server-side storage of a half-finished multipart upload.

        Only called on explicit cancellation.
        """
        if job.upload_id is None:
            return
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=job.bucket,
                Key=job.key,
                UploadId=job.upload_id
            )
            logger.info(f"Aborted multipart upload {job.upload_id} for {job.display_name}")
        except ClientError as e:
            logger.error(f"Error aborting multipart upload {job.upload_id}: {e}")
        job.clear_multipart()
