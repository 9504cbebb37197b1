"""Selection of endpoints worth announcing and the plain-text notify file.

Delivery to chat, email or webhook channels is done by external tools that
pick up the notify file; this module only decides what is reported.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from .models import EndpointCheckResult, ServiceCheckResult, Status

logger = logging.getLogger(__name__)

# Response bodies longer than this are left out of the notify file.
MAX_BODY_IN_MESSAGE = 500

SECTION_RULE = "=" * 50

EndpointsByService = list[tuple[str, list[EndpointCheckResult]]]


class AlertError(Exception):
    """Raised when the notify file cannot be written."""

    pass


def collect_unavailable(results: list[ServiceCheckResult]) -> EndpointsByService:
    """Endpoints where every attempt failed, grouped by service in check order."""
    grouped: EndpointsByService = []
    for service in results:
        endpoints = [endpoint for endpoint in service.endpoints if endpoint.status == Status.NONE]
        if endpoints:
            grouped.append((service.name, endpoints))
    return grouped


def _has_cert_problem(endpoint: EndpointCheckResult, cert_notify_days: int) -> bool:
    if not endpoint.is_https:
        return False
    if endpoint.is_cert_expired:
        return True
    # Unknown remaining days (inspection failed) is not an expiry warning
    return endpoint.cert_remaining_days is not None and endpoint.cert_remaining_days <= cert_notify_days


def collect_cert_problems(results: list[ServiceCheckResult], cert_notify_days: int) -> EndpointsByService:
    """HTTPS endpoints whose certificate has expired or expires within cert_notify_days."""
    grouped: EndpointsByService = []
    for service in results:
        endpoints = [endpoint for endpoint in service.endpoints if _has_cert_problem(endpoint, cert_notify_days)]
        if endpoints:
            grouped.append((service.name, endpoints))
    return grouped


def _count(grouped: EndpointsByService) -> int:
    return sum(len(endpoints) for _, endpoints in grouped)


def _check_time(endpoint: EndpointCheckResult) -> str:
    return f"{endpoint.start_time:%Y-%m-%d %H:%M:%S} - {endpoint.end_time:%Y-%m-%d %H:%M:%S}"


def _unavailable_lines(endpoint: EndpointCheckResult) -> list[str]:
    lines = [f"  • URL: {endpoint.url}", f"    Method: {endpoint.method}"]
    if endpoint.status_code:
        lines.append(f"    Status Code: {endpoint.status_code}")
    if endpoint.response_time_ms > 0:
        lines.append(f"    Response Time: {endpoint.response_time_ms}ms")
    lines.append(f"    Attempts: {endpoint.success_count}/{endpoint.attempt_count} successful")
    lines.append(f"    Check Time: {_check_time(endpoint)}")
    if endpoint.failure_details:
        lines.append("    Failure Details:")
        lines.extend(f"      - {detail}" for detail in endpoint.failure_details)
    body = endpoint.response_body.strip()
    if body and len(endpoint.response_body) < MAX_BODY_IN_MESSAGE:
        lines.append(f"    Response Body: {body}")
    lines.append("")
    return lines


def _cert_status(endpoint: EndpointCheckResult) -> str:
    if endpoint.is_cert_expired:
        return "❌ Certificate Status: EXPIRED"
    if endpoint.cert_remaining_days is not None and endpoint.cert_remaining_days <= 1:
        return "🚨 Certificate Status: EXPIRES IN 1 DAY OR LESS"
    return "⚠️  Certificate Status: EXPIRES SOON"


def _cert_lines(endpoint: EndpointCheckResult) -> list[str]:
    days = "unknown" if endpoint.cert_remaining_days is None else str(endpoint.cert_remaining_days)
    lines = [f"  • URL: {endpoint.url}", f"    {_cert_status(endpoint)}", f"    Days Remaining: {days}"]
    if endpoint.status_code:
        lines.append(f"    Status Code: {endpoint.status_code}")
    lines.append(f"    Check Time: {_check_time(endpoint)}")
    lines.append("")
    return lines


def build_message(
    unavailable: EndpointsByService,
    cert_problems: EndpointsByService,
    now: datetime | None = None,
) -> str:
    """Render the plain-text status report for the selected endpoints."""
    now = now or datetime.now(UTC)
    lines = ["=== Service Status Report ===", f"Generated at: {now:%Y-%m-%d %H:%M:%S}", ""]

    if unavailable:
        lines += ["🔴 UNAVAILABLE SERVICES:", SECTION_RULE]
        for service_name, endpoints in unavailable:
            lines += ["", f"📋 Service: {service_name}"]
            for endpoint in endpoints:
                lines += _unavailable_lines(endpoint)

    if cert_problems:
        lines += ["", "🔐 CERTIFICATE ISSUES:", SECTION_RULE]
        for service_name, endpoints in cert_problems:
            lines += ["", f"📋 Service: {service_name}"]
            for endpoint in endpoints:
                lines += _cert_lines(endpoint)

    unavailable_count = _count(unavailable)
    cert_count = _count(cert_problems)
    lines += [
        "",
        "📊 SUMMARY:",
        SECTION_RULE,
        f"Unavailable Endpoints: {unavailable_count}",
        f"Certificate Issues: {cert_count}",
        f"Total Issues: {unavailable_count + cert_count}",
    ]
    return "\n".join(lines) + "\n"


def write_notifications(
    results: list[ServiceCheckResult],
    cert_notify_days: int,
    path: str,
    now: datetime | None = None,
) -> bool:
    """Write the notify file when any endpoint is down or has a certificate issue.

    A notify file left over from a previous run is removed first, so its
    presence always reflects the latest run.

    Returns:
        True if a notify file was written, False if there was nothing to report.

    Raises:
        AlertError: If the file cannot be removed or written.
    """
    notify_path = Path(path)
    try:
        notify_path.unlink(missing_ok=True)
    except OSError as e:
        raise AlertError(f"Failed to remove notify file {path}: {e}")

    unavailable = collect_unavailable(results)
    cert_problems = collect_cert_problems(results, cert_notify_days)
    if not unavailable and not cert_problems:
        logger.info("No service issues found, skipping notifications")
        return False

    try:
        notify_path.parent.mkdir(parents=True, exist_ok=True)
        notify_path.write_text(build_message(unavailable, cert_problems, now), encoding="utf-8")
    except OSError as e:
        raise AlertError(f"Failed to write notify file {path}: {e}")

    logger.warning(
        "%d unavailable endpoint(s), %d certificate issue(s); details in %s",
        _count(unavailable),
        _count(cert_problems),
        path,
    )
    return True
