from __future__ import annotations

import asyncio
import os
import sys

import pytest

from tunnel_backend import session as session_mod
from tunnel_backend.errors import PersistenceError, SessionError
from tunnel_backend.models import TunnelDescriptor, TunnelStatus
from tunnel_backend.session import PID_FILE, TunnelManager
from tunnel_backend.state import (
    DESCRIPTOR_FILE,
    KEY_TUNNEL_ACTIVE,
    KEY_TUNNEL_LAST_ERROR,
    KEY_TUNNEL_START_TIME,
)


def _descriptor(enabled=True):
    return TunnelDescriptor(
        provider_configuration={"proxyHost": "192.168.1.50", "proxyPort": 8081},
        server_address="192.168.1.50:8081",
        enabled=enabled,
    )


class FakePopen:
    """Processus runtime simulé : vivant tant que returncode vaut None."""

    launched = []

    def __init__(self, cmd, start_new_session=False):
        self.cmd = cmd
        self.pid = 4242
        self.returncode = None
        FakePopen.launched.append(self)

    def poll(self):
        return self.returncode


@pytest.fixture
def manager(tmp_path, store, monkeypatch):
    FakePopen.launched = []
    monkeypatch.setattr(session_mod.subprocess, "Popen", FakePopen)
    return TunnelManager(tmp_path, store, interface="ptun-test")


# ---------- Descripteur ----------

def test_save_then_reload(manager, tmp_path):
    descriptor = _descriptor()

    async def main():
        await manager.save(descriptor)
        return await manager.reload()

    assert asyncio.run(main()) == descriptor
    assert (tmp_path / DESCRIPTOR_FILE).exists()


def test_reload_without_saved_descriptor(manager):
    with pytest.raises(PersistenceError):
        asyncio.run(manager.reload())


def test_load_all_without_descriptor_is_invalid(manager):
    assert asyncio.run(manager.load_all()) is None
    assert manager.status is TunnelStatus.INVALID


def test_load_all_with_descriptor_is_disconnected(manager):
    async def main():
        await manager.save(_descriptor())
        fresh = TunnelManager(manager.data_dir, manager.store)
        await fresh.load_all()
        return fresh

    fresh = asyncio.run(main())
    assert fresh.descriptor == _descriptor()
    assert fresh.status is TunnelStatus.DISCONNECTED


# ---------- Démarrage / arrêt ----------

def test_start_without_descriptor(manager):
    with pytest.raises(SessionError):
        manager.start_tunnel()
    assert FakePopen.launched == []


def test_start_with_disabled_descriptor(manager):
    asyncio.run(manager.save(_descriptor(enabled=False)))
    with pytest.raises(SessionError, match="disabled"):
        manager.start_tunnel()


def test_start_launches_runtime(manager, tmp_path, store):
    store.set(KEY_TUNNEL_LAST_ERROR, "previous failure")
    seen = []
    manager.add_status_observer(seen.append)
    asyncio.run(manager.save(_descriptor()))

    manager.start_tunnel()

    (process,) = FakePopen.launched
    assert process.cmd[:3] == [sys.executable, "-m", "tunnel_backend.daemon"]
    assert process.cmd[3:] == ["--data-dir", str(tmp_path), "--interface", "ptun-test"]
    assert (tmp_path / PID_FILE).read_text(encoding="utf-8") == "4242"
    assert manager.status is TunnelStatus.CONNECTING
    assert seen == [TunnelStatus.CONNECTING]
    assert manager.last_disconnect_error is None
    assert store.get_bool(KEY_TUNNEL_ACTIVE) is False

    with pytest.raises(SessionError, match="already running"):
        manager.start_tunnel()


def test_status_follows_runtime(manager, tmp_path, store):
    asyncio.run(manager.save(_descriptor()))
    manager.start_tunnel()
    process = FakePopen.launched[0]

    store.set(KEY_TUNNEL_ACTIVE, True)
    assert manager.refresh_status() is TunnelStatus.CONNECTED

    process.returncode = 1
    store.set(KEY_TUNNEL_LAST_ERROR, "No valid proxy host configured")
    assert manager.refresh_status() is TunnelStatus.DISCONNECTED
    assert manager.last_disconnect_error == "No valid proxy host configured"
    assert not (tmp_path / PID_FILE).exists()


def test_status_from_pid_file_of_previous_invocation(manager, tmp_path, store):
    asyncio.run(manager.save(_descriptor()))
    (tmp_path / PID_FILE).write_text(str(os.getpid()), encoding="utf-8")

    assert manager.refresh_status() is TunnelStatus.CONNECTING
    store.set(KEY_TUNNEL_ACTIVE, True)
    assert manager.refresh_status() is TunnelStatus.CONNECTED


def test_stop_when_nothing_runs(manager):
    asyncio.run(manager.save(_descriptor()))
    manager.stop_tunnel()
    assert manager.status is TunnelStatus.DISCONNECTED


def test_stop_signals_runtime(manager, monkeypatch):
    signals = []
    monkeypatch.setattr(session_mod.os, "kill", lambda pid, sig: signals.append((pid, sig)))
    asyncio.run(manager.save(_descriptor()))
    manager.start_tunnel()

    manager.stop_tunnel()

    assert signals == [(4242, session_mod.signal.SIGTERM)]
    assert manager.status is TunnelStatus.DISCONNECTING
    assert manager.refresh_status() is TunnelStatus.DISCONNECTING


def test_connected_date(manager, store):
    assert manager.connected_date is None
    store.set(KEY_TUNNEL_START_TIME, 1234.5)
    assert manager.connected_date == 1234.5


def test_removed_observer_is_not_called(manager):
    seen = []
    manager.add_status_observer(seen.append)
    manager.remove_status_observer(seen.append)
    asyncio.run(manager.load_all())
    assert seen == []
