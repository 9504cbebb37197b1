"""JSON-file persistence of service and endpoint status history.

The log is a mapping of service name to its service-level history and to the
history of each endpoint URL. Each run performs one read-modify-write cycle:
load, drop series that are no longer configured, append the new results,
prune entries older than the retention window, save.
"""

import json
import logging
import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import (
    History,
    HistoryEntry,
    PersistedLog,
    ServiceCheckResult,
    ServiceLog,
    format_time,
    parse_time,
)

logger = logging.getLogger(__name__)


class HistoryError(Exception):
    """Raised when the history log cannot be read or written."""

    pass


def _parse_history(data: object, where: str) -> History:
    if not isinstance(data, list):
        raise HistoryError(f"History for {where} must be a list")
    try:
        return [HistoryEntry.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise HistoryError(f"Malformed history entry for {where}: {e}")


def log_from_dict(data: object) -> PersistedLog:
    """Build a PersistedLog from its decoded JSON form.

    Raises:
        HistoryError: If the structure does not match the log format.
    """
    if not isinstance(data, dict):
        raise HistoryError("History log must be a JSON object")

    log: PersistedLog = {}
    for service_name, service_data in data.items():
        if not isinstance(service_data, dict):
            raise HistoryError(f"Entry for service '{service_name}' must be an object")

        endpoints_data = service_data.get("Endpoints") or {}
        if not isinstance(endpoints_data, dict):
            raise HistoryError(f"Endpoints of service '{service_name}' must be an object")

        log[service_name] = ServiceLog(
            service_history=_parse_history(service_data.get("ServiceHistory") or [], f"service '{service_name}'"),
            endpoints={
                url: _parse_history(history or [], f"endpoint '{url}'") for url, history in endpoints_data.items()
            },
        )
    return log


def log_to_dict(log: PersistedLog) -> dict:
    """Convert a PersistedLog to its JSON-serializable form."""
    return {
        service_name: {
            "ServiceHistory": [entry.to_dict() for entry in service_log.service_history],
            "Endpoints": {
                url: [entry.to_dict() for entry in history] for url, history in service_log.endpoints.items()
            },
        }
        for service_name, service_log in log.items()
    }


def load_log(path: str) -> PersistedLog:
    """Load the history log from disk.

    Args:
        path: Path to the JSON log file.

    Returns:
        The persisted log; empty if the file does not exist.

    Raises:
        HistoryError: If the file exists but cannot be read or parsed.
    """
    log_path = Path(path)
    if not log_path.exists():
        logger.info("No history log at %s, starting fresh", path)
        return {}

    try:
        with open(log_path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise HistoryError(f"Failed to parse history log {path}: {e}")
    except OSError as e:
        raise HistoryError(f"Failed to read history log {path}: {e}")

    return log_from_dict(data)


def save_log(log: PersistedLog, path: str) -> None:
    """Write the complete history log, replacing the previous file atomically.

    The content goes to a temporary file in the same directory which is then
    renamed over the target, so a crash mid-write leaves the old file intact.

    Raises:
        HistoryError: If the log cannot be written.
    """
    log_path = Path(path)
    tmp_name: str | None = None
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=log_path.parent,
            prefix=f".{log_path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_name = f.name
            json.dump(log_to_dict(log), f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, log_path)
        tmp_name = None
    except (OSError, TypeError, ValueError) as e:
        raise HistoryError(f"Failed to write history log {path}: {e}")
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)


def filter_log(previous: PersistedLog, results: list[ServiceCheckResult]) -> PersistedLog:
    """Drop history for services and endpoints that are no longer configured.

    A service whose endpoints were all removed is dropped entirely. The input
    log is not modified.
    """
    current = {result.name: {endpoint.url for endpoint in result.endpoints} for result in results}

    filtered: PersistedLog = {}
    for service_name, service_log in previous.items():
        if service_name not in current:
            logger.debug("Dropping history of removed service '%s'", service_name)
            continue

        endpoints = {
            url: list(history) for url, history in service_log.endpoints.items() if url in current[service_name]
        }
        if not endpoints:
            logger.debug("Dropping history of service '%s': no configured endpoints left", service_name)
            continue

        filtered[service_name] = ServiceLog(service_history=list(service_log.service_history), endpoints=endpoints)

    return filtered


def _is_retained(entry: HistoryEntry, cutoff: datetime, horizon: datetime) -> bool:
    try:
        entry_time = parse_time(entry.time)
    except ValueError:
        logger.warning("Discarding history entry with invalid time %r", entry.time)
        return False
    if entry_time > horizon:
        logger.warning("Discarding history entry from the future %r", entry.time)
        return False
    return entry_time >= cutoff


def prune_history(
    history: History,
    max_log_days: int,
    now: datetime,
    latest: datetime | None = None,
) -> History:
    """Keep entries within [now - max_log_days, now] (both ends included).

    Args:
        history: Entries to prune.
        max_log_days: Retention window in days.
        now: Reference time of the run.
        latest: Time of the newest entry appended by the run; it widens the
            upper bound when checks finished after now.
    """
    # Persisted times have second precision
    cutoff = now.replace(microsecond=0) - timedelta(days=max_log_days)
    horizon = max(now, latest) if latest is not None else now
    return [entry for entry in history if _is_retained(entry, cutoff, horizon)]


def merge_log(
    filtered: PersistedLog,
    results: list[ServiceCheckResult],
    max_log_days: int,
    now: datetime | None = None,
) -> PersistedLog:
    """Append the latest results to the log and prune expired entries.

    Args:
        filtered: Previous log, already passed through filter_log().
        results: Results of the current run.
        max_log_days: Retention window in days.
        now: Reference time for pruning, defaults to the current time.

    Returns:
        The merged log. The input log is not modified.
    """
    now = now or datetime.now(UTC)
    merged: PersistedLog = {
        name: ServiceLog(
            service_history=list(service_log.service_history),
            endpoints={url: list(history) for url, history in service_log.endpoints.items()},
        )
        for name, service_log in filtered.items()
    }

    for result in results:
        service_log = merged.setdefault(result.name, ServiceLog())

        service_log.service_history.append(
            HistoryEntry(time=format_time(result.start_time), status=str(result.status))
        )
        service_log.service_history = prune_history(
            service_log.service_history, max_log_days, now, latest=result.start_time
        )

        for endpoint in result.endpoints:
            history = service_log.endpoints.get(endpoint.url, [])
            history.append(
                HistoryEntry(
                    time=format_time(endpoint.start_time),
                    status=str(endpoint.status),
                    response_time=endpoint.response_time_ms,
                )
            )
            service_log.endpoints[endpoint.url] = prune_history(
                history, max_log_days, now, latest=endpoint.start_time
            )

    return merged


def update_log(
    path: str,
    results: list[ServiceCheckResult],
    max_log_days: int,
    now: datetime | None = None,
) -> PersistedLog:
    """Load, filter, merge and save the log in a single pass.

    Raises:
        HistoryError: If the log cannot be read or written.
    """
    previous = load_log(path)
    merged = merge_log(filter_log(previous, results), results, max_log_days, now)
    save_log(merged, path)
    logger.info("History log written to %s (%d services)", path, len(merged))
    return merged
