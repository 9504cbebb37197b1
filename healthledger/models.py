"""Data models for endpoint checks, persisted history and report views."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

# Persisted timestamps use a fixed-width UTC format so that string order
# matches chronological order.
TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class Status(str, Enum):
    """Outcome of folding several attempts (or endpoints) into one verdict."""

    ALL = "ALL"
    PART = "PART"
    NONE = "NONE"

    def __str__(self) -> str:
        return self.value


def classify_status(success_count: int, attempt_count: int) -> Status:
    """Classify a success/attempt ratio.

    Every attempt succeeded -> ALL, none succeeded -> NONE, otherwise PART.
    """
    if success_count == attempt_count:
        return Status.ALL
    if success_count == 0:
        return Status.NONE
    return Status.PART


def format_time(value: datetime) -> str:
    """Format a datetime as a persisted, lexicographically sortable string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(TIME_FORMAT)


def parse_time(value: str) -> datetime:
    """Parse a persisted timestamp back into an aware UTC datetime.

    Raises:
        ValueError: If the string is not in TIME_FORMAT.
    """
    return datetime.strptime(value, TIME_FORMAT).replace(tzinfo=UTC)


@dataclass(frozen=True)
class HighlightSegment:
    """Piece of a display URL, flagged when it came from a resolved parameter."""

    text: str
    is_highlight: bool = False


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of a single HTTP request within an endpoint's retry loop.

    Attributes:
        success: Whether every configured check passed.
        status_code: HTTP status code, or None on transport failure.
        response_body: Response body, truncated for storage.
        response_time: Time between sending the request and receiving the response.
        error_message: Failure description, None when successful.
    """

    success: bool
    status_code: int | None
    response_body: str
    response_time: timedelta
    error_message: str | None = None


@dataclass
class EndpointCheckResult:
    """Result of one endpoint's complete retry loop.

    Attributes:
        url: Endpoint URL that was checked.
        method: HTTP method used.
        status_code: Status code of the last attempt, or None.
        response_time: Latency of the last attempt.
        attempt_count: Number of attempts made (first try plus retries).
        success_count: Number of successful attempts.
        status: ALL/PART/NONE classification of the attempts.
        start_time: When the retry loop started.
        end_time: When the retry loop (and certificate inspection) finished.
        failure_details: One entry per failed attempt, plus a certificate note.
        response_body: Body of the last attempt.
        is_https: Whether the endpoint uses HTTPS.
        is_cert_expired: Whether the server certificate has expired.
        cert_remaining_days: Whole days until expiry (negative once expired),
            None when the certificate could not be inspected.
        cert_error: Why certificate inspection failed, or None.
        display_url: URL as shown in reports.
        highlight_segments: Display URL split into resolved/static parts.
    """

    url: str
    method: str
    status_code: int | None
    response_time: timedelta
    attempt_count: int
    success_count: int
    status: Status
    start_time: datetime
    end_time: datetime
    failure_details: list[str] = field(default_factory=list)
    response_body: str = ""
    is_https: bool = False
    is_cert_expired: bool = False
    cert_remaining_days: int | None = None
    cert_error: str | None = None
    display_url: str = ""
    highlight_segments: list[HighlightSegment] = field(default_factory=list)

    @property
    def response_time_ms(self) -> int:
        """Latency of the last attempt in whole milliseconds."""
        return int(self.response_time / timedelta(milliseconds=1))


@dataclass
class ServiceCheckResult:
    """Result of checking every endpoint of one service."""

    name: str
    start_time: datetime
    status: Status
    endpoints: list[EndpointCheckResult] = field(default_factory=list)


@dataclass(frozen=True)
class HistoryEntry:
    """One point of a service or endpoint time series."""

    time: str
    status: str
    response_time: int = 0

    def to_dict(self) -> dict:
        return {"Time": self.time, "Status": self.status, "ResponseTime": self.response_time}

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            time=str(data["Time"]),
            status=str(data["Status"]),
            response_time=int(data.get("ResponseTime", 0) or 0),
        )


History = list[HistoryEntry]


@dataclass
class ServiceLog:
    """Persisted history of a service and of each of its endpoints (keyed by URL)."""

    service_history: History = field(default_factory=list)
    endpoints: dict[str, History] = field(default_factory=dict)


PersistedLog = dict[str, ServiceLog]


@dataclass
class EndpointReport:
    """Report view of one endpoint."""

    url: str
    history: History
    is_https: bool = False
    is_cert_expired: bool = False
    cert_remaining_days: int | None = None
    display_url: str = ""
    highlight_segments: list[HighlightSegment] = field(default_factory=list)


@dataclass
class ServiceReport:
    """Report view of one service, in configuration order."""

    name: str
    history: History
    availability: float = 0.0
    endpoints: list[EndpointReport] = field(default_factory=list)
