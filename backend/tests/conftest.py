from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read on first import of `config`, so the environment must be set first.
_TMP_DIR = tempfile.mkdtemp(prefix="yearcompass-tests-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATA_DIR", _TMP_DIR)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_DIR}/test.db")

from config import settings  # noqa: E402


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "ANALYSIS_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(settings, "ANALYSIS_TIMEOUT_SECONDS", 2.0)
