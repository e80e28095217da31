import os
import sys

import pytest


def pytest_configure(config):
    # Register custom marks used by some tests to silence warnings
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )


# Ensure project root is on sys.path so tests run from a plain checkout
ROOT = os.path.dirname(os.path.abspath(__file__))
PROJ = os.path.abspath(os.path.join(ROOT, os.pardir))
if PROJ not in sys.path:
    sys.path.insert(0, PROJ)
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Force tests that touch Ray to start a local cluster on an uncommon port
os.environ.setdefault("RAY_ADDRESS", "local")
os.environ.setdefault("RAY_DASHBOARD_PORT", "8299")


@pytest.fixture(autouse=True)
def _isolate_agent_env(monkeypatch):
    """Keep host overrides from leaking into config and telemetry tests."""
    for key in list(os.environ):
        if key.startswith(("LINK_ASSISTANT_AGENT_", "AGENT_")):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("RELAY_AGENT_TELEMETRY_PATH", raising=False)
