import os
import sys

import pytest

# Ensure project root on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from prospecting_api import config, store  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    # Each test gets its own sqlite file
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "prospecting.db"))
    monkeypatch.setattr(config, "API_TOKEN", "test-token")
    monkeypatch.setattr(config, "TENANT_TIMEZONE", "America/Sao_Paulo")
    store.init_db()
