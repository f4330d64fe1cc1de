from __future__ import annotations

import os

# Point the engine at a throwaway SQLite file before any orgguard module reads settings.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./orgguard_test.db"

import pytest

from orgguard.core.config import get_settings
from orgguard.services.payments import reset_payment_client


@pytest.fixture(autouse=True)
def reset_cached_settings() -> None:
    # Tests override settings through env vars; drop cached copies on both sides.
    get_settings.cache_clear()
    reset_payment_client()
    yield
    get_settings.cache_clear()
    reset_payment_client()
