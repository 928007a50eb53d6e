"""
pytest configuration for reminder pipeline tests.

Adds src directory to Python path for imports and sets up test environment.
"""

import os
import sys
from pathlib import Path

import pytest

# Set test environment variables BEFORE any imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JSON_LOGS", "false")

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

_CONFIG_ENV_PREFIXES = ("KAFKA_", "REMINDER_")


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch):
    """Keep developer shell settings out of config tests."""
    for name in list(os.environ):
        if name.startswith(_CONFIG_ENV_PREFIXES) or name == "TASK_STORE_URL":
            monkeypatch.delenv(name, raising=False)

    from reminder_pipeline.config import reset_config
    from reminder_pipeline.common.resilience.circuit_breaker import reset_circuit_breakers

    reset_config()
    reset_circuit_breakers()
    yield
    reset_config()
    reset_circuit_breakers()
