from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from interview_autopilot.database import Database


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        database = Database(db_path)
        yield database
        database.close()
