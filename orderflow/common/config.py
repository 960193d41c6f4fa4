from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Sequence

STORE_BACKENDS = frozenset({"memory", "postgres"})
QUEUE_BACKENDS = frozenset({"memory", "postgres"})
BUS_BACKENDS = frozenset({"memory", "pubsub"})
FAILURE_POLICIES = frozenset({"retain", "mark_failed"})

DEFAULT_VENUE_PRIORITY = ("meteora", "raydium")


def _str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip()


def _optional_str(*names: str) -> Optional[str]:
    for name in names:
        v = os.getenv(name)
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


def _bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        return float(str(v).strip())
    except ValueError:
        return default


def _optional_float(name: str) -> Optional[float]:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return None
    try:
        f = float(str(v).strip())
    except ValueError:
        return None
    return f if f > 0 else None


def _csv(name: str, default: Sequence[str]) -> tuple[str, ...]:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return tuple(default)
    return tuple(p.strip().lower() for p in str(v).split(",") if p.strip())


def _choice(name: str, value: str, allowed: frozenset[str]) -> str:
    s = str(value).strip().lower()
    if s not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}, got {value!r}")
    return s


@dataclass(frozen=True)
class Settings:
    """
    Process configuration, read once at startup.

    Backends default to in-memory so a single process runs without external
    services; `postgres` / `pubsub` select the durable / cross-process variants.
    """

    service_name: str = "orderflow"
    env: str = "local"
    log_level: str = "INFO"

    store_backend: str = "memory"
    queue_backend: str = "memory"
    bus_backend: str = "memory"
    database_url: Optional[str] = None
    gcp_project: Optional[str] = None
    pubsub_topic: str = "order-updates"
    pubsub_subscription: Optional[str] = None

    worker_concurrency: int = 5
    run_workers: bool = True
    job_max_attempts: int = 3
    backoff_base_s: float = 2.0
    backoff_max_s: float = 30.0
    queue_poll_s: float = 1.0
    job_lease_s: float = 300.0
    completed_retention_s: float = 3600.0

    failure_policy: str = "retain"
    stage_timeout_s: Optional[float] = None
    shutdown_drain_s: float = 8.0

    venue_priority: tuple[str, ...] = field(default_factory=lambda: DEFAULT_VENUE_PRIORITY)
    quote_delay_s: float = 0.2
    settlement_delay_s: float = 2.0

    host: str = "0.0.0.0"
    port: int = 3000

    def __post_init__(self) -> None:
        _choice("ORDERFLOW_STORE_BACKEND", self.store_backend, STORE_BACKENDS)
        _choice("ORDERFLOW_QUEUE_BACKEND", self.queue_backend, QUEUE_BACKENDS)
        _choice("ORDERFLOW_BUS_BACKEND", self.bus_backend, BUS_BACKENDS)
        _choice("ORDERFLOW_FAILURE_POLICY", self.failure_policy, FAILURE_POLICIES)
        if self.worker_concurrency < 1:
            raise ValueError("ORDERFLOW_WORKER_CONCURRENCY must be >= 1")
        if self.job_max_attempts < 1:
            raise ValueError("ORDERFLOW_JOB_MAX_ATTEMPTS must be >= 1")
        if "postgres" in (self.store_backend, self.queue_backend) and not self.database_url:
            raise RuntimeError("Missing required env vars: DATABASE_URL")
        if self.bus_backend == "pubsub" and not self.gcp_project:
            raise RuntimeError("Missing required env vars: GCP_PROJECT")

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            service_name=_str("SERVICE_NAME", "orderflow"),
            env=_str("ENV", "local"),
            log_level=_str("LOG_LEVEL", "INFO").upper(),
            store_backend=_str("ORDERFLOW_STORE_BACKEND", "memory").lower(),
            queue_backend=_str("ORDERFLOW_QUEUE_BACKEND", "memory").lower(),
            bus_backend=_str("ORDERFLOW_BUS_BACKEND", "memory").lower(),
            database_url=_optional_str("DATABASE_URL"),
            gcp_project=_optional_str("GCP_PROJECT", "GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT", "GCP_PROJECT_ID"),
            pubsub_topic=_str("ORDERFLOW_PUBSUB_TOPIC", "order-updates"),
            pubsub_subscription=_optional_str("ORDERFLOW_PUBSUB_SUBSCRIPTION"),
            worker_concurrency=_int("ORDERFLOW_WORKER_CONCURRENCY", 5),
            run_workers=_bool("ORDERFLOW_RUN_WORKERS", True),
            job_max_attempts=_int("ORDERFLOW_JOB_MAX_ATTEMPTS", 3),
            backoff_base_s=_float("ORDERFLOW_BACKOFF_BASE_S", 2.0),
            backoff_max_s=_float("ORDERFLOW_BACKOFF_MAX_S", 30.0),
            queue_poll_s=_float("ORDERFLOW_QUEUE_POLL_S", 1.0),
            job_lease_s=_float("ORDERFLOW_JOB_LEASE_S", 300.0),
            completed_retention_s=_float("ORDERFLOW_COMPLETED_RETENTION_S", 3600.0),
            failure_policy=_str("ORDERFLOW_FAILURE_POLICY", "retain").lower(),
            stage_timeout_s=_optional_float("ORDERFLOW_STAGE_TIMEOUT_S"),
            shutdown_drain_s=_float("ORDERFLOW_SHUTDOWN_DRAIN_S", 8.0),
            venue_priority=_csv("ORDERFLOW_VENUE_PRIORITY", DEFAULT_VENUE_PRIORITY),
            quote_delay_s=_float("ORDERFLOW_QUOTE_DELAY_S", 0.2),
            settlement_delay_s=_float("ORDERFLOW_SETTLEMENT_DELAY_S", 2.0),
            host=_str("HOST", "0.0.0.0"),
            port=_int("PORT", 3000),
        )
