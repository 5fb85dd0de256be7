# tests/conftest.py
import os

# Keep tests in a predictable local path: no file logs, in-memory DB for the
# app lifespan (request handlers get the per-test SQLite file via overrides).
os.environ.setdefault("APP_ENVIRONMENT", "local")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

# Load all shared fixtures as pytest plugins
pytest_plugins = [
    "tests.fixtures.db_fixtures",          # file-backed SQLite engine, sessions, dependency overrides
    "tests.fixtures.http_client",          # ASGI httpx AsyncClient (lifespan-aware)
    "tests.fixtures.redis_fixtures",       # fake_redis + override_redis_dep
    "tests.fixtures.upstream_fixtures",    # FakeCertifiedClient + override
    "tests.fixtures.background_tasks",     # poll registry + override
    "tests.fixtures.settings_fixtures",    # fast poller timings
]
