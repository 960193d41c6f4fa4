from __future__ import annotations

import os

import pytest

from orderflow.common.config import Settings
from tests.fakes import fast_settings


@pytest.fixture
def settings() -> Settings:
    return fast_settings()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Settings.from_env() must only see what a test sets.
    for name in list(os.environ):
        if name.startswith("ORDERFLOW_"):
            monkeypatch.delenv(name, raising=False)
    for name in ("DATABASE_URL", "GCP_PROJECT", "GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT", "GCP_PROJECT_ID", "PORT", "HOST"):
        monkeypatch.delenv(name, raising=False)
