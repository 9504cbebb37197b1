"""Configuration loader with type-safe dataclasses."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import HighlightSegment


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_TIMEOUT = 5
DEFAULT_MAX_RETRY_TIMES = 2
DEFAULT_MAX_LOG_DAYS = 3
DEFAULT_CERT_NOTIFY_DAYS = 7
DEFAULT_DISPLAY_NUM = 72

DEFAULT_LOG_PATH = "data/ponghub_log.json"
DEFAULT_REPORT_PATH = "data/report.json"
DEFAULT_NOTIFY_PATH = "data/notify.txt"

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


@dataclass(frozen=True)
class EndpointConfig:
    """Configuration for a single endpoint, with parameters already resolved.

    Success criteria:
    - status_code: Expected HTTP status code (0 disables the check).
    - response_regex: Pattern the response body must match (empty disables the check).

    Display:
    - display_url: URL shown in reports (defaults to url).
    - highlight_segments: Parts of display_url produced by parameter resolution.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    status_code: int = 0
    response_regex: str = ""
    display_url: str = ""
    highlight_segments: tuple[HighlightSegment, ...] = ()

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Endpoint URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Endpoint URL must start with http:// or https://, got '{self.url}'")
        if self.method.upper() not in HTTP_METHODS:
            raise ConfigError(f"Unsupported HTTP method '{self.method}' for '{self.url}'")
        if self.status_code and not (100 <= self.status_code <= 599):
            raise ConfigError(f"Invalid HTTP status code: {self.status_code} for '{self.url}' (must be 100-599)")
        if self.response_regex:
            try:
                re.compile(self.response_regex)
            except re.error as e:
                raise ConfigError(f"Invalid response_regex for '{self.url}': {e}")
        if not self.display_url:
            object.__setattr__(self, "display_url", self.url)

    @property
    def is_https(self) -> bool:
        return self.url.lower().startswith("https://")


@dataclass(frozen=True)
class ServiceConfig:
    """Configuration for a named group of endpoints checked together."""

    name: str
    endpoints: list[EndpointConfig]
    timeout: int = DEFAULT_TIMEOUT  # seconds per attempt
    max_retry_times: int = DEFAULT_MAX_RETRY_TIMES  # attempts = max_retry_times + 1

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("Service name cannot be empty")
        if not self.endpoints:
            raise ConfigError(f"Service '{self.name}' must have at least one endpoint")
        if self.timeout < 1:
            raise ConfigError(f"Timeout must be at least 1 second for '{self.name}'")
        if self.max_retry_times < 0:
            raise ConfigError(f"max_retry_times must be non-negative for '{self.name}'")
        urls = [endpoint.url for endpoint in self.endpoints]
        duplicates = [url for url in urls if urls.count(url) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate endpoint URLs in service '{self.name}': {set(duplicates)}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    services: list[ServiceConfig]
    max_log_days: int = DEFAULT_MAX_LOG_DAYS
    cert_notify_days: int = DEFAULT_CERT_NOTIFY_DAYS
    display_num: int = DEFAULT_DISPLAY_NUM
    max_workers: int | None = None  # None lets the checker pick a pool size
    log_path: str = DEFAULT_LOG_PATH
    report_path: str = DEFAULT_REPORT_PATH
    notify_path: str = DEFAULT_NOTIFY_PATH

    def __post_init__(self) -> None:
        if not self.services:
            raise ConfigError("At least one service must be configured")
        names = [service.name for service in self.services]
        duplicates = [name for name in names if names.count(name) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate service names found: {set(duplicates)}")
        if self.max_log_days < 1:
            raise ConfigError(f"max_log_days must be at least 1 (got {self.max_log_days})")
        if self.cert_notify_days < 0:
            raise ConfigError(f"cert_notify_days must be non-negative (got {self.cert_notify_days})")
        if self.display_num < 1:
            raise ConfigError(f"display_num must be at least 1 (got {self.display_num})")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1 (got {self.max_workers})")


def _parse_int(value: object, name: str) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be an integer, got {value!r}")


def _parse_headers(data: object, url: str) -> dict[str, str]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"'headers' for '{url}' must be a dictionary")
    return {str(key): str(value) for key, value in data.items()}


def _parse_highlight_segments(data: object, url: str) -> tuple[HighlightSegment, ...]:
    if data is None:
        return ()
    if not isinstance(data, list):
        raise ConfigError(f"'highlight_segments' for '{url}' must be a list")
    segments = []
    for item in data:
        if not isinstance(item, dict) or "text" not in item:
            raise ConfigError(f"Invalid highlight segment for '{url}': {item!r}")
        segments.append(HighlightSegment(text=str(item["text"]), is_highlight=bool(item.get("is_highlight", False))))
    return tuple(segments)


def _parse_endpoint_config(data: dict, service_name: str, index: int) -> EndpointConfig:
    """Parse a single endpoint configuration entry."""
    if isinstance(data, str):
        data = {"url": data}
    if not isinstance(data, dict):
        raise ConfigError(f"Endpoint {index} of service '{service_name}' must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Endpoint {index} of service '{service_name}' is missing 'url' field")
    url = str(url)

    return EndpointConfig(
        url=url,
        method=str(data.get("method") or "GET").upper(),
        headers=_parse_headers(data.get("headers"), url),
        body=str(data.get("body") or ""),
        status_code=_parse_int(data.get("status_code") or 0, "status_code"),
        response_regex=str(data.get("response_regex") or ""),
        display_url=str(data.get("display_url") or ""),
        highlight_segments=_parse_highlight_segments(data.get("highlight_segments"), url),
    )


def _parse_service_config(data: dict, index: int, default_timeout: int, default_retries: int) -> ServiceConfig:
    """Parse a single service configuration entry, applying top-level defaults."""
    if not isinstance(data, dict):
        raise ConfigError(f"Service entry {index} must be a dictionary")

    name = data.get("name")
    if name is None:
        raise ConfigError(f"Service entry {index} is missing 'name' field")
    name = str(name)

    endpoints_data = data.get("endpoints")
    if endpoints_data is None:
        raise ConfigError(f"Service '{name}' is missing 'endpoints' field")
    if not isinstance(endpoints_data, list):
        raise ConfigError(f"'endpoints' of service '{name}' must be a list")

    # Zero or missing values fall back to the top-level defaults
    timeout = data.get("timeout") or default_timeout
    retries = data.get("max_retry_times")
    if retries is None:
        retries = default_retries

    return ServiceConfig(
        name=name,
        endpoints=[_parse_endpoint_config(entry, name, i) for i, entry in enumerate(endpoints_data)],
        timeout=_parse_int(timeout, "timeout"),
        max_retry_times=_parse_int(retries, "max_retry_times"),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - HEALTHLEDGER_MAX_LOG_DAYS: Override max_log_days
    - HEALTHLEDGER_DISPLAY_NUM: Override display_num
    - HEALTHLEDGER_MAX_WORKERS: Override max_workers
    - HEALTHLEDGER_LOG_PATH: Override log_path
    - HEALTHLEDGER_REPORT_PATH: Override report_path
    - HEALTHLEDGER_NOTIFY_PATH: Override notify_path
    """
    for key in ("max_log_days", "display_num", "max_workers"):
        value = os.environ.get(f"HEALTHLEDGER_{key.upper()}")
        if value is not None:
            config_data[key] = _parse_int(value, f"HEALTHLEDGER_{key.upper()}")

    for key in ("log_path", "report_path", "notify_path"):
        value = os.environ.get(f"HEALTHLEDGER_{key.upper()}")
        if value is not None:
            config_data[key] = value

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    services_data = data.get("services")
    if not services_data:
        raise ConfigError("No services defined in the configuration file")
    if not isinstance(services_data, list):
        raise ConfigError("'services' must be a list")

    default_timeout = _parse_int(data.get("timeout") or DEFAULT_TIMEOUT, "timeout")
    default_retries = data.get("max_retry_times")
    default_retries = DEFAULT_MAX_RETRY_TIMES if default_retries is None else _parse_int(default_retries, "max_retry_times")

    services = [
        _parse_service_config(service_data, i, default_timeout, default_retries)
        for i, service_data in enumerate(services_data)
    ]

    max_workers = data.get("max_workers")

    return Config(
        services=services,
        max_log_days=_parse_int(data.get("max_log_days") or DEFAULT_MAX_LOG_DAYS, "max_log_days"),
        cert_notify_days=_parse_int(data.get("cert_notify_days") or DEFAULT_CERT_NOTIFY_DAYS, "cert_notify_days"),
        display_num=_parse_int(data.get("display_num") or DEFAULT_DISPLAY_NUM, "display_num"),
        max_workers=_parse_int(max_workers, "max_workers") if max_workers is not None else None,
        log_path=str(data.get("log_path") or DEFAULT_LOG_PATH),
        report_path=str(data.get("report_path") or DEFAULT_REPORT_PATH),
        notify_path=str(data.get("notify_path") or DEFAULT_NOTIFY_PATH),
    )
