from __future__ import annotations

import pytest

from orgguard.domain.models import Base
from orgguard.persistence.db import engine


@pytest.fixture(autouse=True)
async def fresh_schema_per_test() -> None:
    # Rebuild every table so rows never leak between tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
