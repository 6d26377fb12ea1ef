# Ensure the `backend` directory is importable so `policyglass` resolves
from __future__ import annotations

import sys
from pathlib import Path

# Add the backend directory to PYTHONPATH so imports like `from policyglass.*` work
ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT_DIR))

# Use an in-memory SQLite DB during tests unless overridden
import os
import tempfile
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DB_ECHO", "0")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "policyglass-test-logs"))
