"""
Error taxonomy for the transfer engine and classification of store failures.
"""
import logging
import socket
from typing import Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    NoCredentialsError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Base class for upload failures.

    Attributes:
        retryable: Whether the retry policy may attempt the job again
        label: Short prefix used in human-readable messages
    """
    retryable = False
    label = "Unknown error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return f"{self.label}: {self.message}"
        return self.label


class NetworkError(UploadError):
    retryable = True
    label = "Network error"


class UploadTimeout(UploadError):
    retryable = True
    label = "Request timed out"


class MultipartUploadFailed(UploadError):
    retryable = True
    label = "Multipart upload failed"


class AuthenticationError(UploadError):
    label = "Authentication failed"


class AccessDenied(UploadError):
    label = "Access denied"


class BucketNotFound(UploadError):
    label = "Bucket not found"


class KeyTooLong(UploadError):
    label = "Key too long"


class FileTooLarge(UploadError):
    label = "File too large"


class ChecksumMismatch(UploadError):
    label = "Checksum mismatch"


class UploadCancelled(UploadError):
    label = "Upload cancelled"


class UploadPaused(Exception):
    """Raised inside a transfer when the manager asks it to park the job."""


class EnqueueError(ValueError):
    """Raised when a job is rejected before it enters the queue."""


class SigningError(Exception):
    """Base class for request signing failures."""


class NoCredentials(SigningError):
    def __init__(self, message: str = "No credentials configured"):
        super().__init__(message)


class CredentialsExpired(SigningError):
    def __init__(self, message: str = "Credentials have expired"):
        super().__init__(message)


class InvalidURL(SigningError):
    pass


_TIMEOUT_CODES = {
    'RequestTimeout',
    'RequestTimeoutException',
}

_TRANSIENT_CODES = {
    'PriorRequestNotComplete',
    'ConnectionError',
    'ThrottlingException',
    'ThrottledException',
    'ServiceUnavailable',
    'Throttling',
    'SlowDown',
    'InternalError',
    'RequestTimeTooSkewed',
    '5XX',
}

_AUTH_CODES = {
    'InvalidAccessKeyId',
    'SignatureDoesNotMatch',
    'ExpiredToken',
    'InvalidToken',
    'TokenRefreshRequired',
    'AuthorizationHeaderMalformed',
}

_ACCESS_CODES = {'AccessDenied', 'AllAccessDisabled', 'AccountProblem'}

_CHECKSUM_CODES = {'BadDigest', 'InvalidDigest', 'XAmzContentSHA256Mismatch'}

_MULTIPART_CODES = {'NoSuchUpload', 'InvalidPart', 'InvalidPartOrder'}


def _client_error_status(error: ClientError) -> int:
    metadata = error.response.get('ResponseMetadata', {})
    return int(metadata.get('HTTPStatusCode') or 0)


def classify_error(exception: BaseException) -> UploadError:
    """Map any exception raised during a transfer onto the upload taxonomy.

    Args:
        exception: The exception to classify

    Returns:
        An UploadError instance; the original exception is returned
        unchanged when it already is one
    """
    if isinstance(exception, UploadError):
        return exception

    if isinstance(exception, ClientError):
        error = exception.response.get('Error', {})
        code = str(error.get('Code', ''))
        message = error.get('Message') or str(exception)
        status = _client_error_status(exception)

        if code in _TIMEOUT_CODES:
            return UploadTimeout(message)
        if code in _TRANSIENT_CODES:
            return NetworkError(message)
        if code in _AUTH_CODES:
            return AuthenticationError(message)
        if code in _ACCESS_CODES:
            return AccessDenied(message)
        if code == 'NoSuchBucket':
            return BucketNotFound(message)
        if code == 'KeyTooLongError':
            return KeyTooLong(message)
        if code == 'EntityTooLarge':
            return FileTooLarge(message)
        if code in _CHECKSUM_CODES:
            return ChecksumMismatch(message)
        if code in _MULTIPART_CODES:
            return MultipartUploadFailed(message)
        if status >= 500:
            return NetworkError(message)
        if status in (401,):
            return AuthenticationError(message)
        if status == 403:
            return AccessDenied(message)
        if status == 404:
            return BucketNotFound(message)
        return UploadError(message)

    if isinstance(exception, (ConnectTimeoutError, ReadTimeoutError, socket.timeout, TimeoutError)):
        return UploadTimeout(str(exception))
    if isinstance(exception, BotoConnectionError):
        return NetworkError(str(exception))
    if isinstance(exception, NoCredentialsError):
        return AuthenticationError(str(exception))
    if isinstance(exception, SigningError):
        return AuthenticationError(str(exception))
    if isinstance(exception, BotoCoreError):
        return NetworkError(str(exception))
    if isinstance(exception, ConnectionError):
        return NetworkError(str(exception))
    if isinstance(exception, (FileNotFoundError, PermissionError, IsADirectoryError)):
        return UploadError(str(exception))
    if isinstance(exception, OSError):
        return NetworkError(str(exception))

    return UploadError(str(exception))


def is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    return classify_error(exception).retryable


def describe_error(exception: Optional[BaseException]) -> Optional[str]:
    """Human-readable string for an error, or None."""
    if exception is None:
        return None
    return str(classify_error(exception))
