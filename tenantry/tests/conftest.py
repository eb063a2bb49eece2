from __future__ import annotations

import pytest

from tenantry.core.config import get_settings


@pytest.fixture(autouse=True)
def fresh_settings() -> None:
    # Environment overrides made with monkeypatch must not leak into the next test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
