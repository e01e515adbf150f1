"""
Shared pytest fixtures for all tests.
"""
import pytest

from form_discovery.config import build_config


@pytest.fixture
def fast_config():
    """Short polling and bounds so timing-based tests finish quickly."""
    return build_config({
        "timeouts": {
            "settle": 2000,
            "option_resolution": 1000,
            "overlay_close": 300,
            "confirmation": 1000,
            "manual_submission": 1000,
        },
        "polling": {"poll_interval": 10, "quiet_interval": 30},
        "limits": {"max_retries": 1},
    })
