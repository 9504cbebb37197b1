"""Tests for the report module."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from healthledger.config import EndpointConfig, ServiceConfig
from healthledger.models import (
    EndpointCheckResult,
    HighlightSegment,
    HistoryEntry,
    ServiceCheckResult,
    ServiceLog,
    Status,
)
from healthledger.report import (
    ReportError,
    build_report,
    calculate_availability,
    latest_update_time,
    trim_history,
    write_report,
)

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)


def _history(*statuses: str) -> list[HistoryEntry]:
    """One entry per status, an hour apart, oldest first."""
    return [
        HistoryEntry(time=f"2026-10-18T{hour:02d}:00:00Z", status=status, response_time=100)
        for hour, status in enumerate(statuses)
    ]


def _service_config(name: str, *urls: str) -> ServiceConfig:
    return ServiceConfig(name=name, endpoints=[EndpointConfig(url=url) for url in urls])


def _result(name: str, *endpoints: EndpointCheckResult) -> ServiceCheckResult:
    return ServiceCheckResult(name=name, start_time=NOW, status=Status.ALL, endpoints=list(endpoints))


def _endpoint(url: str, **kwargs) -> EndpointCheckResult:
    return EndpointCheckResult(
        url=url,
        method="GET",
        status_code=200,
        response_time=timedelta(milliseconds=80),
        attempt_count=1,
        success_count=1,
        status=Status.ALL,
        start_time=NOW,
        end_time=NOW,
        **kwargs,
    )


class TestTrimHistory:
    """Tests for trim_history function."""

    def test_keeps_latest_entries(self) -> None:
        """Only the last display_num entries survive."""
        trimmed = trim_history(_history("ALL", "NONE", "ALL", "ALL", "PART"), 2)
        assert [entry.status for entry in trimmed] == ["ALL", "PART"]

    def test_sorts_before_trimming(self) -> None:
        """Unsorted input is ordered by time before the cut."""
        history = _history("NONE", "PART", "ALL")
        trimmed = trim_history([history[2], history[0], history[1]], 2)
        assert [entry.status for entry in trimmed] == ["PART", "ALL"]

    def test_shorter_history_unchanged(self) -> None:
        """Histories within the window are kept whole."""
        history = _history("ALL", "NONE")
        assert trim_history(history, 72) == history


class TestCalculateAvailability:
    """Tests for calculate_availability function."""

    def test_fraction_of_all(self) -> None:
        """PART and NONE both count as unavailable."""
        assert calculate_availability(_history("ALL", "PART")) == 0.5
        assert calculate_availability(_history("ALL", "ALL", "NONE", "ALL")) == 0.75

    def test_empty_history(self) -> None:
        """No entries means zero availability."""
        assert calculate_availability([]) == 0.0

    @pytest.mark.parametrize("statuses", [("ALL",), ("NONE",), ("PART", "ALL", "NONE")])
    def test_bounds(self, statuses: tuple[str, ...]) -> None:
        """Availability stays within [0, 1]."""
        assert 0.0 <= calculate_availability(_history(*statuses)) <= 1.0


class TestBuildReport:
    """Tests for build_report function."""

    def test_trims_and_computes_availability(self) -> None:
        """With display_num=2 the last two entries decide availability."""
        log = {
            "S": ServiceLog(
                service_history=_history("ALL", "NONE", "ALL", "ALL", "PART"),
                endpoints={"https://a.example.com": _history("ALL", "NONE", "ALL", "ALL", "PART")},
            )
        }

        report = build_report(log, [_service_config("S", "https://a.example.com")], [], display_num=2)

        assert [entry.status for entry in report[0].history] == ["ALL", "PART"]
        assert report[0].availability == 0.5
        assert len(report[0].endpoints[0].history) == 2

    def test_configuration_order(self) -> None:
        """Services and endpoints follow configuration order, not log order."""
        log = {
            "B": ServiceLog(
                service_history=_history("ALL"),
                endpoints={"https://b2.example.com": _history("ALL"), "https://b1.example.com": _history("ALL")},
            ),
            "A": ServiceLog(service_history=_history("ALL"), endpoints={"https://a.example.com": _history("ALL")}),
        }
        services = [
            _service_config("A", "https://a.example.com"),
            _service_config("B", "https://b1.example.com", "https://b2.example.com"),
        ]

        report = build_report(log, services, [], display_num=72)

        assert [service.name for service in report] == ["A", "B"]
        assert [endpoint.url for endpoint in report[1].endpoints] == ["https://b1.example.com", "https://b2.example.com"]

    def test_skips_services_without_history(self) -> None:
        """Configured services missing from the log, or with empty history, are left out."""
        log = {
            "Empty": ServiceLog(service_history=[], endpoints={"https://e.example.com": []}),
            "S": ServiceLog(service_history=_history("ALL"), endpoints={"https://a.example.com": _history("ALL")}),
        }
        services = [
            _service_config("Missing", "https://m.example.com"),
            _service_config("Empty", "https://e.example.com"),
            _service_config("S", "https://a.example.com"),
        ]

        report = build_report(log, services, [], display_num=72)

        assert [service.name for service in report] == ["S"]

    def test_skips_endpoints_not_in_log(self) -> None:
        """Configured endpoints without history are left out."""
        log = {"S": ServiceLog(service_history=_history("ALL"), endpoints={"https://a.example.com": _history("ALL")})}

        report = build_report(log, [_service_config("S", "https://a.example.com", "https://new.example.com")], [], 72)

        assert [endpoint.url for endpoint in report[0].endpoints] == ["https://a.example.com"]

    def test_certificate_overlay(self) -> None:
        """Certificate posture of the current run is copied onto matching endpoints."""
        log = {
            "S": ServiceLog(
                service_history=_history("ALL"),
                endpoints={"https://a.example.com": _history("ALL"), "https://b.example.com": _history("ALL")},
            )
        }
        results = [
            _result(
                "S",
                _endpoint("https://a.example.com", is_https=True, cert_remaining_days=12),
                _endpoint("https://b.example.com", is_https=True, is_cert_expired=True, cert_remaining_days=-3),
            )
        ]

        report = build_report(log, [_service_config("S", "https://a.example.com", "https://b.example.com")], results, 72)

        first, second = report[0].endpoints
        assert first.is_https is True
        assert first.cert_remaining_days == 12
        assert first.is_cert_expired is False
        assert second.is_cert_expired is True
        assert second.cert_remaining_days == -3

    def test_overlay_matches_by_service(self) -> None:
        """The same URL under another service does not leak certificate data."""
        log = {"S": ServiceLog(service_history=_history("ALL"), endpoints={"https://a.example.com": _history("ALL")})}
        results = [_result("Other", _endpoint("https://a.example.com", is_https=True, is_cert_expired=True))]

        report = build_report(log, [_service_config("S", "https://a.example.com")], results, 72)

        assert report[0].endpoints[0].is_cert_expired is False

    def test_display_data_carried(self) -> None:
        """Display URL and highlight segments reach the report."""
        segments = (HighlightSegment("https://a.example.com/"), HighlightSegment("2026", is_highlight=True))
        service = ServiceConfig(
            name="S",
            endpoints=[
                EndpointConfig(
                    url="https://a.example.com/2026",
                    display_url="https://a.example.com/2026",
                    highlight_segments=segments,
                )
            ],
        )
        log = {"S": ServiceLog(service_history=_history("ALL"), endpoints={"https://a.example.com/2026": _history("ALL")})}

        report = build_report(log, [service], [], 72)

        assert report[0].endpoints[0].highlight_segments == list(segments)

    def test_history_never_exceeds_display_num(self) -> None:
        """Every history in the report is at most display_num long."""
        statuses = ["ALL", "NONE", "PART"] * 10
        log = {"S": ServiceLog(service_history=_history(*statuses[:24]), endpoints={"https://a.example.com": _history(*statuses[:24])})}

        report = build_report(log, [_service_config("S", "https://a.example.com")], [], display_num=5)

        assert len(report[0].history) == 5
        assert len(report[0].endpoints[0].history) == 5


class TestLatestUpdateTime:
    """Tests for latest_update_time function."""

    def test_most_recent_service_entry(self) -> None:
        """The newest service history time across all services is returned."""
        log = {
            "A": ServiceLog(service_history=_history("ALL", "ALL"), endpoints={"https://a.example.com": _history("ALL")}),
            "B": ServiceLog(service_history=_history("ALL", "ALL", "ALL"), endpoints={"https://b.example.com": _history("ALL")}),
        }
        services = [_service_config("A", "https://a.example.com"), _service_config("B", "https://b.example.com")]

        report = build_report(log, services, [], 72)

        assert latest_update_time(report) == "2026-10-18T02:00:00Z"

    def test_empty_report(self) -> None:
        """An empty report has no update time."""
        assert latest_update_time([]) == ""


class TestWriteReport:
    """Tests for write_report function."""

    def test_writes_json(self, tmp_path: Path) -> None:
        """The report document lists services with histories and availability."""
        log = {"S": ServiceLog(service_history=_history("ALL", "NONE"), endpoints={"https://a.example.com": _history("ALL", "NONE")})}
        report = build_report(log, [_service_config("S", "https://a.example.com")], [], 72)
        path = tmp_path / "out" / "report.json"

        write_report(report, str(path), 72)

        data = json.loads(path.read_text())
        assert data["updated_at"] == "2026-10-18T01:00:00Z"
        assert data["display_num"] == 72
        service = data["services"][0]
        assert service["name"] == "S"
        assert service["availability"] == 0.5
        assert service["history"][1] == {"time": "2026-10-18T01:00:00Z", "status": "NONE", "response_time": 100}
        assert service["endpoints"][0]["url"] == "https://a.example.com"
        assert [p.name for p in path.parent.iterdir()] == ["report.json"]

    def test_unwritable_location(self, tmp_path: Path) -> None:
        """Failures surface as ReportError."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        with pytest.raises(ReportError, match="Failed to write report"):
            write_report([], str(blocker / "report.json"), 72)
