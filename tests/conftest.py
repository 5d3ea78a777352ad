"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from lifecycle.config import EngineConfig  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine timings that keep polling and retry loops short."""
    return EngineConfig(
        poll_interval_seconds=0,
        initial_delay_seconds=0,
        retry_base_delay_seconds=0.01,
        retry_delay_increment_seconds=0,
        retry_deadline_seconds=2,
        create_timeout_seconds=5,
        update_timeout_seconds=5,
        delete_timeout_seconds=5,
    )
