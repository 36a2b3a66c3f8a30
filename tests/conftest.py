"""Pytest configuration for root-level integration tests.

Adds the statement import service's src directory and the services root (for
the `shared` package) to sys.path.
"""

import os
import sys
from pathlib import Path

SERVICES_ROOT = Path(__file__).resolve().parents[1] / "services"

SERVICE_PATHS = [
    SERVICES_ROOT,
    SERVICES_ROOT / "statement-import-service" / "src",
]

for path in SERVICE_PATHS:
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

os.environ.setdefault("IMPORT_DB_URL", "sqlite:///:memory:")
