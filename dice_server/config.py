"""
Configuration loading and validation for dice-server.

Centralises config parsing so it happens once at startup rather than
redundantly in every component constructor.  Telemetry settings can be
overridden with the usual ``OTEL_*`` environment variables.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from dotenv import load_dotenv

from .constants import (
    APP_NAME,
    DEFAULT_CONFIG_PATH,
    DEFAULT_EXPORT_INTERVAL_SECONDS,
    DEFAULT_MAX_EXPORT_BATCH_SIZE,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_OTLP_ENDPOINT,
    DEFAULT_OTLP_PROTOCOL,
    DEFAULT_OTLP_TIMEOUT_SECONDS,
    DEFAULT_SCHEDULE_DELAY_SECONDS,
    OTLP_PROTOCOL_GRPC,
    OTLP_PROTOCOLS,
)

# Required top-level keys and the sub-keys that must exist within them.
_REQUIRED_SCHEMA: Dict[str, List[str]] = {
    "server": ["host", "port"],
    "telemetry": ["service_name"],
}

_VALID_TEMPORALITIES = ("cumulative", "delta")
_VALID_DISTRIBUTIONS = ("zipf", "uniform")


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a JSON file and resolve ``${ENV_VAR:-default}``
    placeholders in all string values.

    A ``.env`` file in the working directory is loaded first so its values
    are visible to the placeholders.

    Args:
        config_path: Path to the config file (relative to project root,
            or absolute).

    Returns:
        Fully-resolved configuration dictionary.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    load_dotenv()

    base_dir = Path(__file__).parent.parent
    full_path = base_dir / config_path

    if not full_path.exists():
        raise ConfigError(f"Configuration file not found: {full_path}")

    try:
        with open(full_path, "r") as f:
            config = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {full_path}: {exc}") from exc

    return _resolve(config)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a config dict against the required schema.

    Returns:
        A list of human-readable error strings.  Empty means valid.
    """
    errors: List[str] = []

    for section, sub_keys in _REQUIRED_SCHEMA.items():
        if section not in config:
            errors.append(f"Missing required config section: '{section}'")
            continue
        for sub in sub_keys:
            if sub not in config[section]:
                errors.append(f"Missing required key '{sub}' in config section '{section}'")

    port = config.get("server", {}).get("port")
    if port is not None:
        try:
            if not 0 < int(port) < 65536:
                errors.append(f"server.port out of range: {port}")
        except (TypeError, ValueError):
            errors.append(f"server.port is not an integer: '{port}'")

    telemetry = config.get("telemetry", {})
    interval = telemetry.get("export_interval_seconds", DEFAULT_EXPORT_INTERVAL_SECONDS)
    if not _is_positive_number(interval):
        errors.append(f"telemetry.export_interval_seconds must be positive: '{interval}'")

    delay = telemetry.get("batch", {}).get("schedule_delay_seconds", DEFAULT_SCHEDULE_DELAY_SECONDS)
    if not _is_positive_number(delay):
        errors.append(f"telemetry.batch.schedule_delay_seconds must be positive: '{delay}'")

    temporality = telemetry.get("otlp", {}).get("temporality", "delta")
    if temporality not in _VALID_TEMPORALITIES:
        errors.append(
            f"telemetry.otlp.temporality must be one of {_VALID_TEMPORALITIES}: '{temporality}'"
        )

    # Environment overrides are checked here so bad values fail at startup
    if not errors:
        try:
            telemetry_settings(config)
        except ConfigError as e:
            errors.append(str(e))

    dice = config.get("dice", {})
    distribution = dice.get("distribution", "zipf")
    if distribution not in _VALID_DISTRIBUTIONS:
        errors.append(
            f"dice.distribution must be one of {_VALID_DISTRIBUTIONS}: '{distribution}'"
        )
    forbidden = dice.get("forbidden_values", [])
    if not isinstance(forbidden, list) or not all(isinstance(v, int) for v in forbidden):
        errors.append("dice.forbidden_values must be a list of integers")

    return errors


# ── Telemetry settings ───────────────────────────────────────────


def otlp_url(endpoint: str, signal: str, protocol: str = DEFAULT_OTLP_PROTOCOL) -> str:
    """Target for ``signal`` given a base collector endpoint.

    OTLP/HTTP appends ``/v1/<signal>``; gRPC addresses the collector itself.
    """
    endpoint = endpoint.rstrip("/")
    if protocol == OTLP_PROTOCOL_GRPC:
        return endpoint
    return f"{endpoint}/v1/{signal}"


@dataclass
class SignalOverride:
    """Per-signal collector address; empty fields fall back to the shared ones."""

    endpoint: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class TelemetrySettings:
    """Effective telemetry configuration after environment overrides."""

    service_name: str = APP_NAME
    enabled: bool = True
    export_interval_seconds: float = DEFAULT_EXPORT_INTERVAL_SECONDS
    console_enabled: bool = True
    console_pretty: bool = True
    otlp_enabled: bool = True
    otlp_protocol: str = DEFAULT_OTLP_PROTOCOL
    otlp_endpoint: str = DEFAULT_OTLP_ENDPOINT
    otlp_headers: Dict[str, str] = field(default_factory=dict)
    otlp_traces: SignalOverride = field(default_factory=SignalOverride)
    otlp_metrics: SignalOverride = field(default_factory=SignalOverride)
    otlp_timeout_seconds: float = DEFAULT_OTLP_TIMEOUT_SECONDS
    otlp_temporality: str = "delta"
    max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE
    schedule_delay_seconds: float = DEFAULT_SCHEDULE_DELAY_SECONDS
    max_export_batch_size: int = DEFAULT_MAX_EXPORT_BATCH_SIZE

    def otlp_target(self, signal: str) -> Tuple[str, Dict[str, str]]:
        """``(endpoint, headers)`` for the ``traces`` or ``metrics`` collector sink.

        A per-signal endpoint is used as given; otherwise the shared
        endpoint is expanded with ``otlp_url``.  Per-signal headers are
        layered over the shared ones.
        """
        override = self.otlp_traces if signal == "traces" else self.otlp_metrics
        headers = dict(self.otlp_headers)
        headers.update(override.headers)
        if override.endpoint:
            return override.endpoint, headers
        return otlp_url(self.otlp_endpoint, signal, self.otlp_protocol), headers


def telemetry_settings(config: Dict[str, Any]) -> TelemetrySettings:
    """Build ``TelemetrySettings`` from the ``telemetry`` config section.

    ``OTEL_*`` environment variables take precedence over the file.

    Raises:
        ConfigError: An environment override is malformed (non-numeric or
            non-positive interval, unknown protocol).
    """
    tel = config.get("telemetry", {})
    console = tel.get("console", {})
    otlp = tel.get("otlp", {})
    batch = tel.get("batch", {})

    settings = TelemetrySettings(
        service_name=tel.get("service_name") or APP_NAME,
        export_interval_seconds=float(
            tel.get("export_interval_seconds", DEFAULT_EXPORT_INTERVAL_SECONDS)
        ),
        console_enabled=_as_bool(console.get("enabled", True)),
        console_pretty=_as_bool(console.get("pretty", True)),
        otlp_enabled=_as_bool(otlp.get("enabled", True)),
        otlp_protocol=otlp.get("protocol") or DEFAULT_OTLP_PROTOCOL,
        otlp_endpoint=otlp.get("endpoint") or DEFAULT_OTLP_ENDPOINT,
        otlp_headers=_headers(otlp.get("headers", {})),
        otlp_traces=_signal_override(otlp.get("traces", {})),
        otlp_metrics=_signal_override(otlp.get("metrics", {})),
        otlp_timeout_seconds=float(otlp.get("timeout_seconds", DEFAULT_OTLP_TIMEOUT_SECONDS)),
        otlp_temporality=otlp.get("temporality", "delta"),
        max_queue_size=int(batch.get("max_queue_size", DEFAULT_MAX_QUEUE_SIZE)),
        schedule_delay_seconds=float(
            batch.get("schedule_delay_seconds", DEFAULT_SCHEDULE_DELAY_SECONDS)
        ),
        max_export_batch_size=int(
            batch.get("max_export_batch_size", DEFAULT_MAX_EXPORT_BATCH_SIZE)
        ),
    )

    env = os.environ
    if env.get("OTEL_SDK_DISABLED", "").lower() == "true":
        settings.enabled = False
    if env.get("OTEL_SERVICE_NAME"):
        settings.service_name = env["OTEL_SERVICE_NAME"]
    if env.get("OTEL_EXPORTER_OTLP_PROTOCOL"):
        settings.otlp_protocol = env["OTEL_EXPORTER_OTLP_PROTOCOL"]
    if env.get("OTEL_EXPORTER_OTLP_ENDPOINT"):
        settings.otlp_endpoint = env["OTEL_EXPORTER_OTLP_ENDPOINT"]
    if env.get("OTEL_EXPORTER_OTLP_HEADERS"):
        settings.otlp_headers.update(parse_headers(env["OTEL_EXPORTER_OTLP_HEADERS"]))
    for signal, override in (("TRACES", settings.otlp_traces), ("METRICS", settings.otlp_metrics)):
        if env.get(f"OTEL_EXPORTER_OTLP_{signal}_ENDPOINT"):
            override.endpoint = env[f"OTEL_EXPORTER_OTLP_{signal}_ENDPOINT"]
        if env.get(f"OTEL_EXPORTER_OTLP_{signal}_HEADERS"):
            override.headers.update(parse_headers(env[f"OTEL_EXPORTER_OTLP_{signal}_HEADERS"]))

    interval = _env_millis("OTEL_METRIC_EXPORT_INTERVAL")
    if interval is not None:
        settings.export_interval_seconds = interval
    delay = _env_millis("OTEL_BSP_SCHEDULE_DELAY")
    if delay is not None:
        settings.schedule_delay_seconds = delay

    if settings.otlp_protocol not in OTLP_PROTOCOLS:
        raise ConfigError(
            f"OTLP protocol must be one of {OTLP_PROTOCOLS}: '{settings.otlp_protocol}'"
        )
    settings.otlp_endpoint = settings.otlp_endpoint.rstrip("/")
    return settings


def parse_headers(raw: str) -> Dict[str, str]:
    """Parse ``key=value,key2=value2`` (the ``OTEL_EXPORTER_OTLP_HEADERS`` format).

    Values are URL-decoded; malformed entries without ``=`` are skipped.
    """
    headers: Dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip()] = unquote(value.strip())
    return headers


# ── Private helpers ──────────────────────────────────────────────

_PLACEHOLDER_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _resolve(obj: Any) -> Any:
    """Recursively resolve ``${ENV_VAR:-default}`` in string values."""
    if isinstance(obj, str):
        return _PLACEHOLDER_RE.sub(_replace_match, obj)
    elif isinstance(obj, dict):
        return {k: _resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_resolve(v) for v in obj]
    return obj


def _replace_match(m: re.Match) -> str:
    var = m.group(1)
    default = m.group(2) if m.group(2) is not None else ""
    return os.environ.get(var, default)


def _as_bool(value: Any) -> bool:
    # Placeholders resolve to strings, so "false" must be handled
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _is_positive_number(value: Any) -> bool:
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False


def _headers(value: Any) -> Dict[str, str]:
    if isinstance(value, str):
        return parse_headers(value)
    return dict(value or {})


def _signal_override(section: Dict[str, Any]) -> SignalOverride:
    return SignalOverride(
        endpoint=section.get("endpoint") or "",
        headers=_headers(section.get("headers", {})),
    )


def _env_millis(name: str) -> Optional[float]:
    """Read a positive millisecond env var as seconds; ``None`` when unset."""
    raw = os.environ.get(name)
    if not raw:
        return None
    if not _is_positive_number(raw):
        raise ConfigError(f"{name} must be a positive number of milliseconds: '{raw}'")
    return float(raw) / 1000.0
