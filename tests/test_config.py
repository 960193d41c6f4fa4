import pytest

from orderflow.common.config import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    s = Settings.from_env()
    assert (s.store_backend, s.queue_backend, s.bus_backend) == ("memory", "memory", "memory")
    assert s.worker_concurrency == 5
    assert s.job_max_attempts == 3
    assert (s.backoff_base_s, s.backoff_max_s) == (2.0, 30.0)
    assert s.failure_policy == "retain"
    assert s.stage_timeout_s is None
    assert s.venue_priority == ("meteora", "raydium")
    assert s.port == 3000


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORDERFLOW_WORKER_CONCURRENCY", "9")
    monkeypatch.setenv("ORDERFLOW_FAILURE_POLICY", "MARK_FAILED")
    monkeypatch.setenv("ORDERFLOW_VENUE_PRIORITY", "Raydium, meteora")
    monkeypatch.setenv("ORDERFLOW_STAGE_TIMEOUT_S", "12.5")
    monkeypatch.setenv("ORDERFLOW_RUN_WORKERS", "false")
    monkeypatch.setenv("ORDERFLOW_JOB_MAX_ATTEMPTS", "not-a-number")

    s = Settings.from_env()

    assert s.worker_concurrency == 9
    assert s.failure_policy == "mark_failed"
    assert s.venue_priority == ("raydium", "meteora")
    assert s.stage_timeout_s == 12.5
    assert s.run_workers is False
    assert s.job_max_attempts == 3


def test_unknown_backend_fails_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORDERFLOW_QUEUE_BACKEND", "bullmq")
    with pytest.raises(ValueError, match="ORDERFLOW_QUEUE_BACKEND"):
        Settings.from_env()


def test_postgres_requires_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORDERFLOW_STORE_BACKEND", "postgres")
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        Settings.from_env()
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/orderflow")
    assert Settings.from_env().database_url == "postgresql://localhost/orderflow"


def test_pubsub_project_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORDERFLOW_BUS_BACKEND", "pubsub")
    with pytest.raises(RuntimeError, match="GCP_PROJECT"):
        Settings.from_env()
    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "demo-project")
    assert Settings.from_env().gcp_project == "demo-project"


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError):
        Settings(worker_concurrency=0)
