"""
Relay Settings

All tunables come from environment variables so the same image can run as
an API sidecar, a standalone dispatcher or a scheduled worker.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def is_outbox_enabled() -> bool:
    """Check if the outbox runs in this instance (OUTBOX_ENABLED)."""
    return _env_bool("OUTBOX_ENABLED", True)


def is_outbox_processor_enabled() -> bool:
    """Check if the background dispatcher should run in this process."""
    return _env_bool("OUTBOX_PROCESSOR_ENABLED", True)


def outbox_max_retries() -> int:
    """Delivery attempts before a message is dead-lettered (OUTBOX_MAX_RETRIES)."""
    return _env_int("OUTBOX_MAX_RETRIES", 3)


@dataclass
class RelaySettings:
    """Outbox, DLQ, cleanup and reconciliation settings."""

    # Dispatcher
    dispatch_mode: str = "continuous"  # continuous | scheduled
    batch_size: int = 50
    max_retries: int = 3
    lease_seconds: int = 60
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    max_consecutive_errors: int = 5
    dispatch_interval_seconds: int = 5

    # Cleanup
    processed_retention_days: int = 7
    failed_retention_days: int = 30
    cleanup_batch_size: int = 1000
    cleanup_batch_delay_seconds: float = 0.1

    # DLQ / reconciliation
    dlq_retention_days: int = 30
    orphan_age_minutes: int = 30
    scheduler_enabled: bool = True

    # Startup hook that registers event types and bus handlers
    bootstrap: str = ""

    # Observability
    service_name: str = "eventrelay"
    log_level: str = "INFO"
    log_format: str = "json"
    otlp_endpoint: str = field(default="http://localhost:4317")
    tracing_enabled: bool = False
    metrics_enabled: bool = False

    @classmethod
    def from_env(cls) -> "RelaySettings":
        return cls(
            dispatch_mode=os.getenv("OUTBOX_DISPATCH_MODE", "continuous").lower(),
            batch_size=_env_int("OUTBOX_BATCH_SIZE", 50),
            max_retries=outbox_max_retries(),
            lease_seconds=_env_int("OUTBOX_LEASE_SECONDS", 60),
            base_delay_seconds=_env_float("OUTBOX_BASE_DELAY_SECONDS", 5.0),
            max_delay_seconds=_env_float("OUTBOX_MAX_DELAY_SECONDS", 60.0),
            max_consecutive_errors=_env_int("OUTBOX_MAX_CONSECUTIVE_ERRORS", 5),
            dispatch_interval_seconds=_env_int("OUTBOX_DISPATCH_INTERVAL_SECONDS", 5),
            processed_retention_days=_env_int("OUTBOX_PROCESSED_RETENTION_DAYS", 7),
            failed_retention_days=_env_int("OUTBOX_FAILED_RETENTION_DAYS", 30),
            cleanup_batch_size=_env_int("OUTBOX_CLEANUP_BATCH_SIZE", 1000),
            cleanup_batch_delay_seconds=_env_float("OUTBOX_CLEANUP_BATCH_DELAY_SECONDS", 0.1),
            dlq_retention_days=_env_int("OUTBOX_DLQ_RETENTION_DAYS", 30),
            orphan_age_minutes=_env_int("OUTBOX_ORPHAN_AGE_MINUTES", 30),
            scheduler_enabled=_env_bool("OUTBOX_SCHEDULER_ENABLED", True),
            bootstrap=os.getenv("OUTBOX_BOOTSTRAP", ""),
            service_name=os.getenv("OTEL_SERVICE_NAME", "eventrelay"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317"),
            tracing_enabled=_env_bool("OTEL_TRACING_ENABLED", False),
            metrics_enabled=_env_bool("OTEL_METRICS_ENABLED", False),
        )
