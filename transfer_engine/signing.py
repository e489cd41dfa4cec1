"""
AWS Signature Version 4 request signing and presigned URL generation.

Every request the engine sends to the object store is authorized here:
the boto3 client is created unsigned and the signer rewrites each request
into a query-string presigned URL right before it leaves the process, so
a signature is never reused across calls.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlsplit

import boto3

from .errors import CredentialsExpired, InvalidURL, NoCredentials
from .models import Credentials

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SIGNED_HEADERS = "host"
MAX_PRESIGN_EXPIRY = 7 * 24 * 3600


class CredentialProvider:
    """Source of credential snapshots. Subclasses return None when unauthenticated."""

    def get_credentials(self) -> Optional[Credentials]:
        raise NotImplementedError


class StaticCredentialProvider(CredentialProvider):
    """Provider holding one fixed snapshot, replaceable at runtime."""

    def __init__(self, credentials: Optional[Credentials] = None):
        self._credentials = credentials

    def update(self, credentials: Optional[Credentials]) -> None:
        self._credentials = credentials

    def get_credentials(self) -> Optional[Credentials]:
        return self._credentials


class SessionCredentialProvider(CredentialProvider):
    """Provider backed by a boto3 session (profiles, environment, SSO cache)."""

    def __init__(self, profile_name: Optional[str] = None,
                 session: Optional[boto3.Session] = None):
        self._session = session or boto3.Session(profile_name=profile_name)

    def get_credentials(self) -> Optional[Credentials]:
        credentials = self._session.get_credentials()
        if credentials is None:
            return None
        frozen = credentials.get_frozen_credentials()
        return Credentials(
            access_key_id=frozen.access_key,
            secret_access_key=frozen.secret_key,
            session_token=frozen.token
        )


def uri_encode(value: str) -> str:
    """Percent-encode everything except the RFC 3986 unreserved characters."""
    return quote(str(value), safe="-_.~")


def canonical_query_string(params: Iterable[Tuple[str, str]]) -> str:
    encoded = sorted((uri_encode(k), uri_encode(v)) for k, v in params)
    return "&".join(f"{k}={v}" for k, v in encoded)


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = _hmac(("AWS4" + secret_key).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def build_canonical_request(method: str, path: str, canonical_query: str,
                            canonical_headers: str, signed_headers: str,
                            payload_hash: str) -> str:
    return "\n".join([
        method.upper(),
        path or "/",
        canonical_query,
        canonical_headers,
        signed_headers,
        payload_hash,
    ])


def build_string_to_sign(amz_date: str, credential_scope: str, canonical_request: str) -> str:
    return "\n".join([
        ALGORITHM,
        amz_date,
        credential_scope,
        hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
    ])


def compute_signature(secret_key: str, date_stamp: str, region: str, service: str,
                      string_to_sign: str) -> str:
    signing_key = derive_signing_key(secret_key, date_stamp, region, service)
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def _utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class RequestSigner:
    """Computes SigV4 signatures for the object store.

    Args:
        credential_provider: Supplies a read-only credential snapshot per signature
        region: Signing region
        service: Signing service name
        endpoint_url: Custom S3-compatible endpoint; path-style URLs are used when set
        request_expiry: Lifetime in seconds of the per-request signatures
        clock: Returns the current time, injectable for tests
    """

    def __init__(self, credential_provider: CredentialProvider, region: str = "us-east-1",
                 service: str = "s3", endpoint_url: Optional[str] = None,
                 request_expiry: int = 900,
                 clock: Optional[Callable[[], datetime]] = None):
        self.credential_provider = credential_provider
        self.region = region
        self.service = service
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self.request_expiry = request_expiry
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _snapshot(self, now: datetime, allow_expired: bool) -> Credentials:
        credentials = self.credential_provider.get_credentials()
        if credentials is None:
            raise NoCredentials()
        if not allow_expired and credentials.is_expired(now):
            raise CredentialsExpired(
                f"Credentials for {credentials.access_key_id} expired at "
                f"{credentials.expiration.isoformat()}"
            )
        return credentials

    def _scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/aws4_request"

    def presign_url(self, method: str, url: str, expires_in: Optional[int] = None,
                    now: Optional[datetime] = None, allow_expired: bool = False) -> str:
        """Turn any store URL into a query-string authorized URL.

        Query parameters already present on the URL (uploadId, partNumber,
        uploads, ...) become part of the signed canonical query.

        Raises:
            NoCredentials: If the provider has no credentials
            CredentialsExpired: If the snapshot is expired and allow_expired is False
            InvalidURL: If the URL has no scheme or host
        """
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidURL(f"Cannot sign malformed URL: {url}")

        expires_in = self.request_expiry if expires_in is None else int(expires_in)
        if not 1 <= expires_in <= MAX_PRESIGN_EXPIRY:
            raise ValueError(f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRY} seconds")

        now = _utc(now or self._clock())
        credentials = self._snapshot(now, allow_expired)

        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        credential_scope = self._scope(date_stamp)

        params: List[Tuple[str, str]] = [
            (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k != "X-Amz-Signature"
        ]
        params.extend([
            ("X-Amz-Algorithm", ALGORITHM),
            ("X-Amz-Credential", f"{credentials.access_key_id}/{credential_scope}"),
            ("X-Amz-Date", amz_date),
            ("X-Amz-Expires", str(expires_in)),
            ("X-Amz-SignedHeaders", SIGNED_HEADERS),
        ])
        if credentials.session_token:
            params.append(("X-Amz-Security-Token", credentials.session_token))

        canonical_query = canonical_query_string(params)
        host = parts.netloc.lower()
        canonical_request = build_canonical_request(
            method, parts.path, canonical_query, f"host:{host}\n",
            SIGNED_HEADERS, UNSIGNED_PAYLOAD
        )
        string_to_sign = build_string_to_sign(amz_date, credential_scope, canonical_request)
        signature = compute_signature(
            credentials.secret_access_key, date_stamp, self.region,
            self.service, string_to_sign
        )

        return f"{parts.scheme}://{parts.netloc}{parts.path or '/'}?{canonical_query}&X-Amz-Signature={signature}"

    def sign_headers(self, method: str, url: str, payload_hash: str = UNSIGNED_PAYLOAD,
                     now: Optional[datetime] = None, allow_expired: bool = False) -> Dict[str, str]:
        """Headers authorizing a request with an Authorization header instead of the query."""
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidURL(f"Cannot sign malformed URL: {url}")

        now = _utc(now or self._clock())
        credentials = self._snapshot(now, allow_expired)

        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        credential_scope = self._scope(date_stamp)

        headers = {
            "host": parts.netloc.lower(),
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }
        if credentials.session_token:
            headers["x-amz-security-token"] = credentials.session_token

        names = sorted(headers)
        canonical_headers = "".join(f"{name}:{headers[name].strip()}\n" for name in names)
        signed_headers = ";".join(names)

        canonical_request = build_canonical_request(
            method, parts.path,
            canonical_query_string(parse_qsl(parts.query, keep_blank_values=True)),
            canonical_headers, signed_headers, payload_hash
        )
        string_to_sign = build_string_to_sign(amz_date, credential_scope, canonical_request)
        signature = compute_signature(
            credentials.secret_access_key, date_stamp, self.region,
            self.service, string_to_sign
        )

        headers["authorization"] = (
            f"{ALGORITHM} Credential={credentials.access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return headers

    def object_url(self, bucket: str, key: str) -> str:
        encoded_key = quote(key, safe="/~")
        if self.endpoint_url:
            return f"{self.endpoint_url}/{bucket}/{encoded_key}"
        return f"https://{bucket}.s3.{self.region}.amazonaws.com/{encoded_key}"

    def presign_get_object(self, bucket: str, key: str, expires_in: int = 3600,
                           now: Optional[datetime] = None) -> str:
        return self.presign_url("GET", self.object_url(bucket, key), expires_in, now)

    def presign_put_object(self, bucket: str, key: str, expires_in: int = 3600,
                           now: Optional[datetime] = None) -> str:
        return self.presign_url("PUT", self.object_url(bucket, key), expires_in, now)

    def console_url(self, bucket: str, key: str) -> str:
        return (
            f"https://{self.region}.console.aws.amazon.com/s3/object/{bucket}"
            f"?region={self.region}&prefix={quote(key, safe='')}"
        )

    def attach(self, client) -> None:
        """Sign every request of a boto3 S3 client with this signer."""
        client.meta.events.register_last("request-created.s3", self._sign_request)

    def _sign_request(self, request, operation_name: Optional[str] = None, **kwargs) -> None:
        request.url = self.presign_url(request.method, request.url)
        for header in ("Authorization", "X-Amz-Date", "X-Amz-Security-Token"):
            if header in request.headers:
                del request.headers[header]
        logger.debug(f"Signed {operation_name or request.method} request")
