from __future__ import annotations

import os
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from gwsync import db  # noqa: E402
from gwsync.registry import ServiceRecord  # noqa: E402
from gwsync.apimanager import ServiceMapping  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the event log and mapping store at a per-test sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "gwsync.db")))
    db.init_db()
    return tmp_path / "gwsync.db"


class RecordingPublisher:
    def __init__(self):
        self.calls: list[tuple] = []

    def update_mapping_rules(self, is_removal, identity, targets=None, params=None, meta=None):
        self.calls.append((is_removal, identity, targets, params, meta))

    @property
    def adds(self) -> list[str]:
        return [c[1] for c in self.calls if not c[0]]

    @property
    def removes(self) -> list[str]:
        return [c[1] for c in self.calls if c[0]]


class FakeRegistry:
    """Returns ``services`` or raises ``error`` when set."""

    def __init__(self, services=None):
        self.services: list[ServiceRecord] = list(services or [])
        self.error: Exception | None = None
        self.connected = False
        self.closed = False
        self.fetches = 0

    def connect(self):
        self.connected = True

    def fetch(self):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return list(self.services)

    def close(self):
        self.closed = True


class FakeApiManager:
    def __init__(self, registered=()):
        self.registered = set(registered)

    def get_service_mapping(self, identity):
        if identity in self.registered:
            return ServiceMapping(identity=identity)
        return None


def svc(identity: str, base_url: str = "http://10.0.0.1:80", **labels: str) -> ServiceRecord:
    return ServiceRecord(identity=identity, labels=labels, base_url=base_url)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def registry():
    return FakeRegistry()


class FakeContainer:
    def __init__(self, name, labels):
        self.name = name
        self.labels = labels


class FakeContainers:
    def __init__(self, items, error=None):
        self.items = items
        self.error = error
        self.filters = None

    def list(self, filters=None):
        self.filters = filters
        if self.error:
            raise self.error
        return self.items


class FakeDockerClient:
    def __init__(self, containers):
        self.containers = containers
        self.closed = False

    def close(self):
        self.closed = True
