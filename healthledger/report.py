"""Report view built from the persisted history, in configuration order."""

import json
import logging
import os
import tempfile
from dataclasses import asdict
from pathlib import Path

from .config import ServiceConfig
from .models import (
    EndpointReport,
    History,
    PersistedLog,
    ServiceCheckResult,
    ServiceReport,
    Status,
)

logger = logging.getLogger(__name__)


class ReportError(Exception):
    """Raised when the report cannot be written."""

    pass


def trim_history(history: History, display_num: int) -> History:
    """Sort a history by time and keep only the latest display_num entries."""
    ordered = sorted(history, key=lambda entry: entry.time)
    if len(ordered) > display_num:
        ordered = ordered[len(ordered) - display_num :]
    return ordered


def calculate_availability(history: History) -> float:
    """Fraction of entries with status ALL; 0.0 for an empty history."""
    if not history:
        return 0.0
    healthy = sum(1 for entry in history if entry.status == Status.ALL.value)
    return healthy / len(history)


def _apply_cert_status(report: list[ServiceReport], results: list[ServiceCheckResult]) -> None:
    """Copy the latest certificate posture and display URL onto the report."""
    latest = {
        (result.name, endpoint.url): endpoint for result in results for endpoint in result.endpoints
    }
    for service in report:
        for endpoint_report in service.endpoints:
            endpoint = latest.get((service.name, endpoint_report.url))
            if endpoint is None:
                continue
            endpoint_report.is_https = endpoint.is_https
            endpoint_report.is_cert_expired = endpoint.is_cert_expired
            endpoint_report.cert_remaining_days = endpoint.cert_remaining_days
            endpoint_report.display_url = endpoint.display_url or endpoint.url
            endpoint_report.highlight_segments = list(endpoint.highlight_segments)


def build_report(
    log: PersistedLog,
    services: list[ServiceConfig],
    results: list[ServiceCheckResult],
    display_num: int,
) -> list[ServiceReport]:
    """Build the report view for the configured services.

    Services and endpoints are emitted in configuration order. Those without
    history are skipped. Each history is trimmed to the display window and
    availability is computed over the trimmed service history.

    Args:
        log: Persisted log after this run's merge.
        services: Configured services, which define the display order.
        results: Results of this run, used for the certificate overlay.
        display_num: Number of most recent entries to keep per history.

    Returns:
        Ordered list of ServiceReport.
    """
    report: list[ServiceReport] = []

    for service in services:
        service_log = log.get(service.name)
        if service_log is None or not service_log.service_history:
            logger.info("No history data for service %s", service.name)
            continue

        endpoints = [
            EndpointReport(
                url=endpoint.url,
                history=trim_history(service_log.endpoints[endpoint.url], display_num),
                display_url=endpoint.display_url,
                highlight_segments=list(endpoint.highlight_segments),
            )
            for endpoint in service.endpoints
            if endpoint.url in service_log.endpoints
        ]

        history = trim_history(service_log.service_history, display_num)
        report.append(
            ServiceReport(
                name=service.name,
                history=history,
                availability=calculate_availability(history),
                endpoints=endpoints,
            )
        )

    _apply_cert_status(report, results)
    return report


def latest_update_time(report: list[ServiceReport]) -> str:
    """Most recent service history timestamp in the report, or an empty string."""
    times = [entry.time for service in report for entry in service.history]
    return max(times, default="")


def report_to_dict(report: list[ServiceReport], display_num: int) -> dict:
    """Convert the report view to the JSON document consumed by renderers."""
    return {
        "updated_at": latest_update_time(report),
        "display_num": display_num,
        "services": [asdict(service) for service in report],
    }


def write_report(report: list[ServiceReport], path: str, display_num: int) -> None:
    """Write the report view as JSON, replacing any previous report atomically.

    Raises:
        ReportError: If the report cannot be written.
    """
    report_path = Path(path)
    tmp_name: str | None = None
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=report_path.parent,
            prefix=f".{report_path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_name = f.name
            json.dump(report_to_dict(report, display_num), f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, report_path)
        tmp_name = None
    except (OSError, TypeError, ValueError) as e:
        raise ReportError(f"Failed to write report {path}: {e}")
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
