"""Shared fakes for the tunnel test suite."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from tunnel_backend.errors import PersistenceError, SessionError, SettingsApplyError
from tunnel_backend.models import TunnelStatus
from tunnel_backend.state import STORE_FILE, ConfigStore


class FakeApplier:
    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.applied = []

    def apply(self, settings):
        if self.error:
            raise SettingsApplyError(self.error)
        self.applied.append(settings)


class FakeFlow:
    """Yields the given batches once, then ends (host teardown)."""

    def __init__(self, batches: Optional[List[List[bytes]]] = None):
        self._batches = batches or []

    def batches(self):
        for batch in self._batches:
            yield batch


class FakeManager:
    """In-memory tunnel manager driven by synthetic status events."""

    def __init__(self):
        self.calls: List[str] = []
        self.status = TunnelStatus.DISCONNECTED
        self.connected_date: Optional[float] = None
        self.last_disconnect_error: Optional[str] = None
        self.descriptor = None
        self.fail_on: Optional[str] = None
        self.responses: List[Optional[bytes]] = []
        self.sent: List[bytes] = []
        self._observers = []

    async def load_all(self):
        self.calls.append("load_all")
        if self.fail_on == "load_all":
            raise PersistenceError("load failed")
        return self.descriptor

    async def save(self, descriptor):
        self.calls.append("save")
        if self.fail_on == "save":
            raise PersistenceError("save failed")
        self.descriptor = descriptor

    async def reload(self):
        self.calls.append("reload")
        if self.fail_on == "reload":
            raise PersistenceError("reload failed")
        return self.descriptor

    def start_tunnel(self):
        self.calls.append("start_tunnel")
        if self.fail_on == "start_tunnel":
            raise SessionError("start rejected")
        self.emit(TunnelStatus.CONNECTING)

    def stop_tunnel(self):
        self.calls.append("stop_tunnel")

    async def send_message(self, data: bytes):
        self.sent.append(data)
        return self.responses.pop(0) if self.responses else None

    def add_status_observer(self, observer):
        self._observers.append(observer)

    def remove_status_observer(self, observer):
        self._observers.remove(observer)

    def emit(self, status: TunnelStatus):
        self.status = status
        for observer in list(self._observers):
            observer(status)


@pytest.fixture
def store(tmp_path: Path) -> ConfigStore:
    return ConfigStore(tmp_path / STORE_FILE)


@pytest.fixture
def fake_manager() -> FakeManager:
    return FakeManager()
