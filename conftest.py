"""
Pytest configuration and shared fixtures.

- MemoryStore seeded with one label client, one email-matched client and an admin
- FlakyStore wrapper that makes chosen store calls fail
- Fake archive standing in for the GCS module
- Flask test client wired to the seeded store
"""

import os
from datetime import date, datetime

import pytest

# Keep the app on the in-memory store and away from GCS
os.environ.pop("DB_HOST", None)
os.environ.pop("GCS_BUCKET", None)

from errors import StoreUnavailable
from memory_store import MemoryStore

NOW = datetime(2026, 10, 18, 12, 0, 0)


class FlakyStore:
    """Delegates to a real store, raising StoreUnavailable for the named calls ('*' = all)."""

    def __init__(self, inner, failing=("*",)):
        self.inner = inner
        self.failing = set(failing)

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if callable(attr) and ("*" in self.failing or name in self.failing):
            def _fail(*args, **kwargs):
                raise StoreUnavailable(f"{name} failed")
            return _fail
        return attr


class FakeArchive:
    """Records uploads and deletes instead of talking to GCS."""

    def __init__(self, available=True, delete_ok=True):
        self.available = available
        self.delete_ok = delete_ok
        self.files = {}
        self.deleted = []

    def is_available(self):
        return self.available

    def report_path(self, client_id, filename):
        return f"reports/{client_id}/1700000000000_{filename}"

    def upload_report_file(self, gcs_path, filename, source):
        self.files[gcs_path] = source.read() if hasattr(source, "read") else source
        return gcs_path

    def blob_exists(self, gcs_path):
        return gcs_path in self.files

    def download_to_bytes(self, gcs_path):
        return self.files[gcs_path]

    def delete_blob(self, gcs_path):
        self.deleted.append(gcs_path)
        if not self.delete_ok:
            return False
        self.files.pop(gcs_path, None)
        return True


@pytest.fixture
def store():
    """Fresh store: client 1 (20% by id), client 2 (35% by email), admin 3."""
    s = MemoryStore()
    s.add_client("Aria Records", "aria@example.com")
    s.add_client("Basalt Sound", "basalt@example.com")
    s.add_client("Label Owner", "owner@example.com", role="Owner")
    s.add_label("Aria Label", 1, 20)
    s.add_label("Basalt Label", "BASALT@Example.com", 35)
    return s


def add_report(store, client_id, start, end, total, rows=()):
    """Insert an already-expanded report row directly (bypasses ingestion)."""
    return store.insert_report({
        "user_id": client_id,
        "start_date": start,
        "end_date": end,
        "total_revenue": total,
        "file_url": f"reports/{client_id}/{start.isoformat()}.xlsx",
        "filename": f"{start.isoformat()}.xlsx",
        "ledger_expanded": True,
    })


def add_withdrawal(store, client_id, amount, status="pending"):
    wid = store.insert_withdrawal(client_id, amount)
    if status != "pending":
        store.update_withdrawal_status(wid, status, date(2026, 10, 1))
    return wid


@pytest.fixture
def scenario_store(store):
    """Client 1: share 20%, reports 10,000, approved 1,000, pending 500."""
    add_report(store, 1, date(2026, 9, 1), date(2026, 9, 30), 6000)
    add_report(store, 1, date(2026, 10, 1), date(2026, 10, 31), 4000)
    add_withdrawal(store, 1, 1000, "approved")
    add_withdrawal(store, 1, 500, "pending")
    return store


@pytest.fixture
def archive():
    return FakeArchive()


@pytest.fixture
def flask_app(scenario_store, archive):
    import app as app_module

    flask_app = app_module.app
    flask_app.config["TESTING"] = True
    flask_app.config["STORE"] = scenario_store
    flask_app.config["ARCHIVE"] = archive
    return flask_app


@pytest.fixture
def flask_client(flask_app):
    return flask_app.test_client()
