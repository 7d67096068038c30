# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic settings for import-time initialization, regardless of shell env.
os.environ["ENVIRONMENT"] = "test"
os.environ["POOL_API_KEY"] = "test-pool-key-0123456789-abcdef"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TICK_ENABLED"] = "false"
os.environ["TICK_LOCK_REDIS_URL"] = ""
os.environ["RAILWAY_API_TOKEN"] = ""
os.environ["OPENROUTER_MANAGEMENT_KEY"] = ""
os.environ["AGENTMAIL_API_KEY"] = ""
os.environ["TELNYX_API_KEY"] = ""
