"""Pytest configuration for statement-import-service tests.

Puts this service's src directory first on sys.path, makes the `shared`
package importable from the services root, and keeps the module-level engine
off the on-disk default database.
"""

import os
import sys
from pathlib import Path

SERVICE_SRC = Path(__file__).resolve().parents[1] / "src"
SERVICES_ROOT = Path(__file__).resolve().parents[2]

for path in (SERVICES_ROOT, SERVICE_SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("IMPORT_DB_URL", "sqlite:///:memory:")
