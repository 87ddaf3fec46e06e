import os
import sys
from pathlib import Path
from typing import Dict, List

import pytest

# Ensure project root on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from report_sync import CanonicalRecord, Config  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "http: tests around HTTP clients")
    config.addinivalue_line("markers", "browser: tests around the portal session")
    config.addinivalue_line("markers", "e2e: full-run scenarios with fakes")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    # Never pick up a developer's .env during tests
    monkeypatch.setenv("REPORT_SYNC_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setenv("PORTAL_USERNAME", "portal_user")
    monkeypatch.setenv("PORTAL_PASSWORD", "portal_pass")
    monkeypatch.setenv("ZOHO_WEBHOOK", "http://localhost/webhook")
    monkeypatch.setenv("SUPABASE_PROJECT_ID", "testproject")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "test_anon_key")
    monkeypatch.setenv("DOWNLOAD_DIR", str(tmp_path / "downloads"))
    monkeypatch.setenv("HTTP_MAX_RETRIES", "1")


@pytest.fixture
def base_config() -> Config:
    return Config()


@pytest.fixture
def sample_records() -> List[CanonicalRecord]:
    return [
        CanonicalRecord(account_name="Acme Corp", contact_email="a@x.com"),
        CanonicalRecord(account_name="Globex Industries", contact_email="ops@globex.com"),
        CanonicalRecord(account_name="Initech", contact_email="Bill@Initech.com "),
    ]


@pytest.fixture
def write_export():
    """Write a semicolon-delimited export the way the portal produces it."""

    def _write(path: Path, rows: List[Dict[str, str]], header: List[str] = None) -> Path:
        header = header or ["Date", "Agent", "File"]
        lines = [";".join(header)]
        for row in rows:
            lines.append(";".join(row.get(column, "") for column in header))
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
