"""Shared test fixtures for Habit Lab tests.

- Every test gets its own temporary SQLite database
- Fixed clock values so day boundaries are deterministic
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

# Point the app at a throwaway database before anything imports db.
os.environ.setdefault(
    "HABITLAB_DB_PATH", os.path.join(tempfile.gettempdir(), "habitlab-test-import.db")
)

import db  # noqa: E402


@pytest.fixture(autouse=True)
def temp_db(tmp_path: Path, monkeypatch):
    """Isolated, initialized database for each test."""
    db_path = tmp_path / "habitlab.db"
    monkeypatch.setattr(db, "DATABASE_PATH", str(db_path))
    db.init_db()
    yield db_path


@pytest.fixture
def user_id():
    return "user-123"


@pytest.fixture
def now():
    """Mid-morning on a fixed day."""
    return datetime(2026, 3, 10, 10, 30)


@pytest.fixture
def settings_form():
    return {
        "strategy": "environment_design",
        "action": "Put running shoes by the door",
        "duration_days": 14,
        "notification_time": "07:30",
    }


@pytest.fixture
def carried_out_input():
    return {
        "carried_out": True,
        "started_time": "morning",
        "duration_time": 30,
        "interrupted": True,
        "interruption_reason": "Phone call",
        "concentration": 4,
        "accomplishment": 5,
        "fatigue": 2,
        "memo": "Went well",
    }


@pytest.fixture
def session(user_id):
    import lifecycle

    return lifecycle.SessionContext(user_id)
