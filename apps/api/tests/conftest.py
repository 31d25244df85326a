from unittest.mock import patch

import pytest

from config import settings
from main import app
from routers import rate_limit


@pytest.fixture(autouse=True)
def isolated_rate_limits():
    """Rate limits off by default; in-memory counters reset per test."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def offline_research_provider():
    """Tests patch in fake clients explicitly; never reach the real API."""
    with patch.object(settings, "ANTHROPIC_API_KEY", ""), patch.object(settings, "EXPANSION_SEARCH_DELAY_SECONDS", 0.0):
        yield
