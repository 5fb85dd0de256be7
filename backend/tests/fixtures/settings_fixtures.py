# backend/tests/fixtures/settings_fixtures.py

import pytest
from app.core.config import settings


@pytest.fixture
def fast_generation(monkeypatch):
    """
    Shrink poller timings so background polling finishes within a test.

    `settings` is a module-level singleton; monkeypatch reverts the changes
    after the test.
    """
    def _apply(*, timeout_s: float = 0.5, interval_s: float = 0.01):
        monkeypatch.setattr(settings.generation, "poll_timeout_s", timeout_s)
        monkeypatch.setattr(settings.generation, "poll_interval_s", interval_s)
        return settings.generation
    return _apply
