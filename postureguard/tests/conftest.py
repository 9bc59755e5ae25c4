from __future__ import annotations

import os
import tempfile

# Settings are read once at import time; point the app at a throwaway database first.
_DB_DIR = tempfile.mkdtemp(prefix="postureguard-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/postureguard.db")
os.environ.setdefault("EVALUATION_EXECUTION_MODE", "inline")
os.environ.setdefault("EVALUATION_LOCK_BACKEND", "local")
os.environ.setdefault("EVALUATION_LOCK_WAIT_S", "0.5")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/15")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from postureguard.core.config import get_settings  # noqa: E402
from postureguard.domain.models import Base  # noqa: E402
from postureguard.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Every test starts from an empty schema so account ids can be reused freely.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Tests that monkeypatch env vars rebuild settings; later tests see the defaults again.
    yield
    get_settings.cache_clear()
