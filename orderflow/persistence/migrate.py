"""
Apply the orderflow Postgres schema.

Usage:
  DATABASE_URL=postgresql://... python -m orderflow.persistence.migrate
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Callable

from orderflow.common.logging import init_structured_logging, log_event

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS orders (
      order_id VARCHAR(64) PRIMARY KEY,
      from_token VARCHAR(50) NOT NULL,
      to_token VARCHAR(50) NOT NULL,
      amount NUMERIC(20, 8) NOT NULL CHECK (amount > 0),
      status VARCHAR(20) NOT NULL DEFAULT 'pending',
      selected_venue VARCHAR(50),
      output_amount NUMERIC(20, 8),
      settlement_reference VARCHAR(255),
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders (created_at)",
    """
    CREATE TABLE IF NOT EXISTS order_jobs (
      job_id VARCHAR(64) PRIMARY KEY,
      payload JSONB NOT NULL,
      state VARCHAR(20) NOT NULL DEFAULT 'waiting',
      attempts INTEGER NOT NULL DEFAULT 0,
      max_attempts INTEGER NOT NULL,
      backoff_base_s DOUBLE PRECISION NOT NULL,
      backoff_max_s DOUBLE PRECISION NOT NULL,
      available_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      locked_until TIMESTAMPTZ,
      last_error TEXT,
      retry_delays JSONB NOT NULL DEFAULT '[]'::jsonb,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CHECK (attempts <= max_attempts)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_jobs_deliverable ON order_jobs (state, available_at)",
)


def apply_schema(connect: Callable[[], Any]) -> int:
    with connect() as conn:
        for stmt in SCHEMA_STATEMENTS:
            conn.execute(stmt)
        row = conn.execute("SELECT COUNT(*) AS n FROM orders").fetchone()
    return int(row["n"]) if row else 0


def main() -> int:
    from orderflow.persistence.postgres_order_store import psycopg_connector

    init_structured_logging(service="orderflow-migrate")
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        log_event(logger, "migrate.config_missing", severity="CRITICAL", missing_env=["DATABASE_URL"])
        return 2
    try:
        n = apply_schema(psycopg_connector(database_url))
    except Exception:
        log_event(logger, "migrate.failed", severity="ERROR", exc_info=True)
        return 1
    log_event(logger, "migrate.completed", orders_rows=n)
    return 0


if __name__ == "__main__":
    sys.exit(main())
