"""Endpoint probing with retries and concurrent service checks."""

import logging
import os
import re
import socket
import ssl
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from urllib.parse import urlparse

import requests
import urllib3

from .config import EndpointConfig, ServiceConfig
from .models import (
    AttemptResult,
    EndpointCheckResult,
    ServiceCheckResult,
    Status,
    classify_status,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "healthledger/0.1"

# Upper bound on the thread pool when max_workers is not configured.
MAX_DEFAULT_WORKERS = 32

# Response bodies are kept for notifications only; cap what is read.
MAX_BODY_SIZE = 64 * 1024

# Upper bound for a single body read.
READ_CHUNK_SIZE = 8 * 1024

# OpenSSL verify code for "certificate has expired".
_X509_V_ERR_CERT_HAS_EXPIRED = 10


def default_max_workers() -> int:
    """Pool size used when no max_workers is configured."""
    return min(MAX_DEFAULT_WORKERS, (os.cpu_count() or 1) * 4)


def _describe_request_error(e: requests.RequestException, timeout: int) -> str:
    """Turn a transport-level exception into a failure description."""
    if isinstance(e, requests.Timeout):
        return f"Request timeout after {timeout}s"
    if isinstance(e, requests.exceptions.SSLError):
        return f"TLS error: {e}"
    if isinstance(e, requests.ConnectionError):
        return f"Connection failed: {e}"
    return f"Request failed: {e}"


def _evaluate_response(endpoint: EndpointConfig, status_code: int, body: str) -> str | None:
    """Check a response against the endpoint's success criteria.

    Returns:
        None if every configured check passed, otherwise the failure description.
    """
    if endpoint.status_code and status_code != endpoint.status_code:
        return f"Unexpected status code {status_code} (expected {endpoint.status_code})"

    if endpoint.response_regex:
        try:
            matched = re.search(endpoint.response_regex, body) is not None
        except re.error as e:
            return f"Invalid response regex '{endpoint.response_regex}': {e}"
        if not matched:
            return f"Response body does not match regex '{endpoint.response_regex}'"

    return None


def _read_body(response: requests.Response, deadline: float) -> bytes:
    """Read at most MAX_BODY_SIZE bytes of a streamed body before the deadline.

    Each read returns as soon as any data arrives and the socket wait is
    limited to the time left, so a server trickling bytes cannot hold the
    attempt past its timeout.

    Raises:
        TimeoutError: If the deadline passes before the body is read.
    """
    connection = getattr(response.raw, "connection", None)
    sock = getattr(connection, "sock", None)
    original_timeout = sock.gettimeout() if sock is not None else None

    chunks: list[bytes] = []
    size = 0
    while size < MAX_BODY_SIZE:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("deadline exceeded while reading body")
        if sock is not None:
            sock.settimeout(remaining)
        chunk = response.raw.read1(min(READ_CHUNK_SIZE, MAX_BODY_SIZE - size), decode_content=True)
        if not chunk:
            break
        chunks.append(chunk)
        size += len(chunk)

    if sock is not None:
        sock.settimeout(original_timeout)
    return b"".join(chunks)[:MAX_BODY_SIZE]


def _decode_body(response: requests.Response, content: bytes) -> str:
    try:
        return content.decode(response.encoding or "utf-8", errors="replace")
    except LookupError:
        return content.decode("utf-8", errors="replace")


def _run_attempt(session: requests.Session, endpoint: EndpointConfig, timeout: int) -> AttemptResult:
    """Issue one HTTP request and evaluate it. Never raises for network errors.

    The whole attempt, body included, is bounded by timeout. Only the first
    MAX_BODY_SIZE bytes of the body are read; the regex runs against them.
    """
    headers = {"User-Agent": DEFAULT_USER_AGENT, **endpoint.headers}
    start = time.monotonic()

    def _failed(message: str) -> AttemptResult:
        return AttemptResult(
            success=False,
            status_code=None,
            response_body="",
            response_time=timedelta(seconds=time.monotonic() - start),
            error_message=message,
        )

    try:
        with session.request(
            endpoint.method,
            endpoint.url,
            headers=headers,
            data=endpoint.body.encode("utf-8") if endpoint.body else None,
            timeout=timeout,
            stream=True,
        ) as response:
            content = _read_body(response, start + timeout)
            status_code = response.status_code
            body = _decode_body(response, content)
    except requests.RequestException as e:
        return _failed(_describe_request_error(e, timeout))
    except (TimeoutError, urllib3.exceptions.TimeoutError):
        return _failed(f"Request timeout after {timeout}s")
    except urllib3.exceptions.HTTPError as e:
        return _failed(f"Request failed: {e}")
    except OSError as e:
        return _failed(f"Connection failed: {e}")

    elapsed = timedelta(seconds=time.monotonic() - start)
    error_message = _evaluate_response(endpoint, status_code, body)

    return AttemptResult(
        success=error_message is None,
        status_code=status_code,
        response_body=body,
        response_time=elapsed,
        error_message=error_message,
    )


@dataclass(frozen=True)
class CertInspection:
    """Certificate posture of an HTTPS endpoint.

    Attributes:
        expires_at: Certificate notAfter timestamp (UTC), None if unknown.
        remaining_days: Whole days until expiry (negative if expired), None if unknown.
        is_expired: Whether the certificate has expired.
        error: Why inspection failed, None on success.
    """

    expires_at: datetime | None
    remaining_days: int | None
    is_expired: bool
    error: str | None = None


def _inspect_certificate(url: str, timeout: int, now: datetime) -> CertInspection:
    """Read the server certificate of an HTTPS URL over a dedicated TLS connection.

    Args:
        url: The URL to inspect (must be HTTPS).
        timeout: Connection timeout in seconds.
        now: Reference time for the remaining-days calculation.

    Returns:
        CertInspection; failures are reported in its error field.
    """
    parsed = urlparse(url)
    hostname = parsed.hostname
    if not hostname:
        return CertInspection(None, None, False, "Invalid URL: no hostname")

    try:
        port = parsed.port or 443
    except ValueError as e:
        return CertInspection(None, None, False, f"Invalid URL: {e}")

    try:
        context = ssl.create_default_context()

        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as ssl_sock:
                cert = ssl_sock.getpeercert()

        if not cert:
            return CertInspection(None, None, False, "No certificate returned by server")

        # notAfter format: 'Mon DD HH:MM:SS YYYY GMT'
        not_after_raw = cert.get("notAfter")
        if not not_after_raw or not isinstance(not_after_raw, str):
            return CertInspection(None, None, False, "Certificate missing expiration date")

        expires_at = datetime.strptime(not_after_raw, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=UTC)
        remaining_days = (expires_at - now).days

        return CertInspection(expires_at, remaining_days, remaining_days < 0)

    except ssl.SSLCertVerificationError as e:
        # An expired chain fails verification before its dates can be read.
        expired = getattr(e, "verify_code", None) == _X509_V_ERR_CERT_HAS_EXPIRED
        return CertInspection(None, None, expired, f"Certificate verification failed: {e}")
    except ssl.SSLError as e:
        return CertInspection(None, None, False, f"SSL error: {e}")
    except TimeoutError:
        return CertInspection(None, None, False, "SSL connection timeout")
    except socket.gaierror as e:
        return CertInspection(None, None, False, f"DNS resolution failed: {e}")
    except OSError as e:
        return CertInspection(None, None, False, f"Connection failed: {e}")
    except ValueError as e:
        return CertInspection(None, None, False, f"Unparseable certificate date: {e}")


def probe_endpoint(
    endpoint: EndpointConfig,
    timeout: int,
    max_retry_times: int,
    session: requests.Session | None = None,
    now: datetime | None = None,
) -> EndpointCheckResult:
    """Run the retry loop for one endpoint.

    Attempts run back-to-back; every attempt is made even after a success so
    that the PART classification can be observed. Failures never propagate:
    they are recorded as failure details on the result.

    Args:
        endpoint: Endpoint to check.
        timeout: Per-attempt timeout in seconds.
        max_retry_times: Retries after the first attempt.
        session: HTTP session to use; a private one is created when omitted.
        now: Reference time for certificate expiry, defaults to the current time.

    Returns:
        EndpointCheckResult for the whole loop.
    """
    start_time = datetime.now(UTC)
    attempt_total = max_retry_times + 1

    own_session = session is None
    if session is None:
        session = requests.Session()

    try:
        attempts = [_run_attempt(session, endpoint, timeout) for _ in range(attempt_total)]
    finally:
        if own_session:
            session.close()

    failure_details: list[str] = []
    for number, attempt in enumerate(attempts, start=1):
        if not attempt.success:
            failure_details.append(f"Attempt {number}: {attempt.error_message}")
            logger.debug("%s attempt %d/%d failed: %s", endpoint.url, number, attempt_total, attempt.error_message)

    success_count = sum(1 for attempt in attempts if attempt.success)
    last_attempt = attempts[-1]

    result = EndpointCheckResult(
        url=endpoint.url,
        method=endpoint.method,
        status_code=last_attempt.status_code,
        response_time=last_attempt.response_time,
        attempt_count=attempt_total,
        success_count=success_count,
        status=classify_status(success_count, attempt_total),
        start_time=start_time,
        end_time=start_time,
        failure_details=failure_details,
        response_body=last_attempt.response_body,
        display_url=endpoint.display_url,
        highlight_segments=list(endpoint.highlight_segments),
    )

    if endpoint.is_https:
        inspection = _inspect_certificate(endpoint.url, timeout, now or datetime.now(UTC))
        result.is_https = True
        result.is_cert_expired = inspection.is_expired
        result.cert_remaining_days = inspection.remaining_days
        if inspection.error:
            result.cert_error = inspection.error
            result.failure_details.append(f"Certificate: {inspection.error}")
            logger.debug("Certificate inspection failed for %s: %s", endpoint.url, inspection.error)

    result.end_time = datetime.now(UTC)
    return result


def _crashed_result(endpoint: EndpointConfig, error: Exception) -> EndpointCheckResult:
    """Stand-in result for a probe that raised unexpectedly."""
    now = datetime.now(UTC)
    return EndpointCheckResult(
        url=endpoint.url,
        method=endpoint.method,
        status_code=None,
        response_time=timedelta(0),
        attempt_count=1,
        success_count=0,
        status=Status.NONE,
        start_time=now,
        end_time=now,
        failure_details=[f"Check failed: {error}"],
        is_https=endpoint.is_https,
        display_url=endpoint.display_url,
        highlight_segments=list(endpoint.highlight_segments),
    )


def check_services(
    services: list[ServiceConfig],
    max_workers: int | None = None,
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> list[ServiceCheckResult]:
    """Check every endpoint of every service concurrently.

    Results come back in configuration order regardless of completion order.
    A service's status is classified from how many of its endpoints were ALL.

    Args:
        services: Services to check, in configuration order.
        max_workers: Thread pool size; defaults to default_max_workers().
        session_factory: Creates the HTTP session used by each probe.

    Returns:
        One ServiceCheckResult per service, in the same order as services.
    """
    jobs = [
        (service_index, endpoint_index, service, endpoint)
        for service_index, service in enumerate(services)
        for endpoint_index, endpoint in enumerate(service.endpoints)
    ]
    if not jobs:
        return []

    def _probe(service: ServiceConfig, endpoint: EndpointConfig) -> EndpointCheckResult:
        with session_factory() as session:
            return probe_endpoint(endpoint, service.timeout, service.max_retry_times, session=session)

    workers = min(max_workers or default_max_workers(), len(jobs))
    started = time.monotonic()
    endpoint_results: dict[tuple[int, int], EndpointCheckResult] = {}

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
        futures = {
            executor.submit(_probe, service, endpoint): (service_index, endpoint_index, endpoint)
            for service_index, endpoint_index, service, endpoint in jobs
        }

        for future in as_completed(futures):
            service_index, endpoint_index, endpoint = futures[future]
            try:
                endpoint_results[(service_index, endpoint_index)] = future.result()
            except Exception as e:
                logger.error("Failed to check %s: %s", endpoint.url, e)
                endpoint_results[(service_index, endpoint_index)] = _crashed_result(endpoint, e)

    results: list[ServiceCheckResult] = []
    for service_index, service in enumerate(services):
        endpoints = [endpoint_results[(service_index, i)] for i in range(len(service.endpoints))]
        healthy = sum(1 for endpoint in endpoints if endpoint.status == Status.ALL)
        service_result = ServiceCheckResult(
            name=service.name,
            start_time=min(endpoint.start_time for endpoint in endpoints),
            status=classify_status(healthy, len(endpoints)),
            endpoints=endpoints,
        )
        results.append(service_result)
        logger.debug("%s: %s (%d/%d endpoints healthy)", service.name, service_result.status, healthy, len(endpoints))

    logger.info(
        "Checked %d endpoints across %d services in %.1fs",
        len(jobs),
        len(services),
        time.monotonic() - started,
    )
    return results
