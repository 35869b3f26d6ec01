from __future__ import annotations

import os
import tempfile


# Settings and the engine are built at import time, so the environment must be set first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="creditgate-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_DIR}/creditgate.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CREDENTIAL_HASH_ITERATIONS"] = "1000"
os.environ["UPSTREAM_BASE_URL"] = "https://upstream.test"
os.environ["OAUTH_TOKEN_URL"] = "https://auth.test/v1/oauth/token"

import pytest  # noqa: E402

from creditgate.apps.api.rate_limit import reset_rate_limiter_state  # noqa: E402
from creditgate.core.config import get_settings  # noqa: E402
from creditgate.domain.models import Base  # noqa: E402
from creditgate.persistence.db import engine  # noqa: E402
from creditgate.services.quota import reset_quota_service  # noqa: E402
from creditgate.services.upstream.tokens import reset_token_manager  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild the schema per test so ledger state never leaks between cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_service_singletons() -> None:
    reset_quota_service()
    reset_token_manager()
    reset_rate_limiter_state()
    yield
    # Drop settings cached while a test had env overrides applied.
    get_settings.cache_clear()
    reset_quota_service()
    reset_token_manager()
    reset_rate_limiter_state()
