from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeManager
from tunnel_backend import controller as controller_mod
from tunnel_backend.controller import TunnelController
from tunnel_backend.errors import SessionError
from tunnel_backend.messages import Command, TunnelStats, decode_message, decode_update, encode_stats
from tunnel_backend.models import TunnelState, TunnelStatus
from tunnel_backend.state import KEY_PROXY_HOST, KEY_PROXY_PORT, STORE_FILE, ConfigStore


def _controller(store, manager, host="192.168.1.50", port=8081):
    ctl = TunnelController(store, manager)
    ctl.state.proxy_host = host
    ctl.state.proxy_port = port
    return ctl


def _stats(bytes_in, bytes_out=0, uptime=1.0):
    return encode_stats(TunnelStats(bytes_in=bytes_in, bytes_out=bytes_out, uptime=uptime))


# ---------- Bootstrap ----------

def test_defaults_from_store(store):
    store.set(KEY_PROXY_HOST, "proxy.lab")
    store.set(KEY_PROXY_PORT, 9090)
    ctl = TunnelController(store)
    assert (ctl.state.proxy_host, ctl.state.proxy_port) == ("proxy.lab", 9090)


def test_default_port_when_store_empty(store):
    ctl = TunnelController(store)
    assert (ctl.state.proxy_host, ctl.state.proxy_port) == ("", 8080)
    assert ctl.state.tunnel_state is TunnelState.IDLE


def test_load_failure_sets_error(store, fake_manager):
    fake_manager.fail_on = "load_all"
    ctl = TunnelController(store, fake_manager)
    asyncio.run(ctl.load())
    assert ctl.state.last_error == "load failed"
    assert ctl.state.tunnel_state is TunnelState.IDLE


# ---------- Validation ----------

def test_connect_with_empty_host_stays_idle(store, fake_manager):
    ctl = _controller(store, fake_manager, host="")
    seen = []
    ctl.subscribe(seen.append)

    asyncio.run(ctl.connect())

    assert ctl.state.tunnel_state is TunnelState.IDLE
    assert not ctl.state.is_connecting
    assert ctl.state.last_error
    assert fake_manager.calls == []
    assert all(s.tunnel_state is TunnelState.IDLE for s in seen)


@pytest.mark.parametrize("port", [0, 65536])
def test_connect_with_bad_port_fails_fast(store, fake_manager, port):
    ctl = _controller(store, fake_manager, port=port)
    asyncio.run(ctl.connect())
    assert ctl.state.last_error == "Enter a valid port (1-65535)"
    assert fake_manager.calls == []
    assert store.get(KEY_PROXY_PORT) is None


def test_connect_without_manager(store):
    ctl = _controller(store, None)
    asyncio.run(ctl.connect())
    assert ctl.state.last_error == "Tunnel manager not initialized"
    assert ctl.state.tunnel_state is TunnelState.IDLE


# ---------- Séquence ----------

def test_connect_sequence_order(store, fake_manager):
    ctl = _controller(store, fake_manager)
    states = []
    ctl.subscribe(lambda s: states.append(s.tunnel_state))

    asyncio.run(ctl.connect())

    assert fake_manager.calls == ["save", "reload", "start_tunnel"]
    assert states[0] is TunnelState.LOADING
    assert TunnelState.CONNECTING in states
    assert ctl.state.is_connecting
    assert ctl.state.last_error is None
    # configuration persistée
    assert store.get_str(KEY_PROXY_HOST) == "192.168.1.50"
    assert store.get_int(KEY_PROXY_PORT) == 8081
    # descripteur enregistré
    assert fake_manager.descriptor.provider_configuration == {"proxyHost": "192.168.1.50", "proxyPort": 8081}
    assert fake_manager.descriptor.server_address == "192.168.1.50:8081"
    assert fake_manager.descriptor.disconnect_on_sleep is False


@pytest.mark.parametrize(
    "stage,expected_calls",
    [
        ("save", ["save"]),
        ("reload", ["save", "reload"]),
        ("start_tunnel", ["save", "reload", "start_tunnel"]),
    ],
)
def test_stage_failure_aborts_and_resets(store, fake_manager, stage, expected_calls):
    fake_manager.fail_on = stage
    ctl = _controller(store, fake_manager)

    asyncio.run(ctl.connect())

    assert fake_manager.calls == expected_calls
    assert ctl.state.tunnel_state is TunnelState.IDLE
    assert ctl.state.is_connecting is False
    assert ctl.state.is_connected is False
    assert ctl.state.last_error
    assert not ctl.is_polling
    # un nouvel essai est possible
    fake_manager.fail_on = None
    fake_manager.calls.clear()
    asyncio.run(ctl.connect())
    assert fake_manager.calls == ["save", "reload", "start_tunnel"]


def test_second_connect_in_flight_is_ignored(store, fake_manager):
    ctl = _controller(store, fake_manager)

    async def main():
        release = asyncio.Event()
        original_save = fake_manager.save

        async def slow_save(descriptor):
            await release.wait()
            await original_save(descriptor)

        fake_manager.save = slow_save
        first = asyncio.create_task(ctl.connect())
        await asyncio.sleep(0)
        await ctl.connect()
        release.set()
        await first

    asyncio.run(main())
    assert fake_manager.calls == ["save", "reload", "start_tunnel"]


# ---------- Statut et relevés ----------

def test_connected_event_starts_polling_and_disconnect_stops_it(store, fake_manager, monkeypatch):
    monkeypatch.setattr(controller_mod, "STATS_INTERVAL", 0.01)
    fake_manager.connected_date = 1234.0
    fake_manager.responses = [_stats(100), _stats(250, 10)]
    ctl = _controller(store, fake_manager)

    async def main():
        await ctl.connect()
        fake_manager.emit(TunnelStatus.CONNECTED)
        assert ctl.state.is_connected and ctl.is_polling
        assert ctl.state.connected_date == 1234.0
        for _ in range(100):
            if ctl.state.bytes_in == 250:
                break
            await asyncio.sleep(0.01)
        fake_manager.emit(TunnelStatus.DISCONNECTING)
        assert not ctl.is_polling
        fake_manager.emit(TunnelStatus.DISCONNECTED)

    asyncio.run(main())

    assert (ctl.state.bytes_in, ctl.state.bytes_out) == (250, 10)
    assert ctl.state.tunnel_state is TunnelState.IDLE
    assert ctl.state.connected_date is None
    assert not ctl.state.is_connected


@pytest.mark.parametrize(
    "status,state",
    [
        (TunnelStatus.CONNECTING, TunnelState.CONNECTING),
        (TunnelStatus.REASSERTING, TunnelState.REASSERTING),
        (TunnelStatus.DISCONNECTING, TunnelState.DISCONNECTING),
        (TunnelStatus.INVALID, TunnelState.INVALID),
        (TunnelStatus.DISCONNECTED, TunnelState.IDLE),
    ],
)
def test_status_mapping(store, fake_manager, status, state):
    ctl = _controller(store, fake_manager)

    async def main():
        await ctl.load()
        fake_manager.emit(status)

    asyncio.run(main())
    assert ctl.state.tunnel_state is state
    assert ctl.state.status is status
    assert not ctl.is_polling


def test_runtime_failure_reason_surfaces(store, fake_manager):
    ctl = _controller(store, fake_manager)

    async def main():
        await ctl.connect()
        fake_manager.last_disconnect_error = "No valid proxy host configured"
        fake_manager.emit(TunnelStatus.DISCONNECTED)

    asyncio.run(main())
    assert ctl.state.last_error == "No valid proxy host configured"
    assert not ctl.state.is_connecting
    assert ctl.state.tunnel_state is TunnelState.IDLE


def test_refresh_stats_silent_on_failure(store, fake_manager):
    ctl = _controller(store, fake_manager)
    ctl.state.bytes_in, ctl.state.bytes_out = 7, 3
    fake_manager.responses = [None, b"not json"]

    asyncio.run(ctl.refresh_stats())
    asyncio.run(ctl.refresh_stats())

    assert (ctl.state.bytes_in, ctl.state.bytes_out) == (7, 3)
    assert ctl.state.last_error is None
    assert decode_message(fake_manager.sent[0]).command is Command.GET_STATS


def test_refresh_stats_updates_counters(store, fake_manager):
    ctl = _controller(store, fake_manager)
    fake_manager.responses = [_stats(4096, 12)]
    asyncio.run(ctl.refresh_stats())
    assert (ctl.state.bytes_in, ctl.state.bytes_out) == (4096, 12)


# ---------- Toggle / disconnect / update ----------

def test_toggle(store, fake_manager):
    ctl = _controller(store, fake_manager)

    async def main():
        await ctl.toggle()
        fake_manager.emit(TunnelStatus.CONNECTED)
        await ctl.toggle()

    asyncio.run(main())
    assert fake_manager.calls == ["save", "reload", "start_tunnel", "stop_tunnel"]
    assert not ctl.is_polling


def test_disconnect_does_not_wait(store, fake_manager):
    ctl = _controller(store, fake_manager)
    ctl.disconnect()
    assert fake_manager.calls == ["stop_tunnel"]
    # l'état ne change qu'à réception de l'événement système
    assert ctl.state.tunnel_state is TunnelState.IDLE


def test_set_proxy_persists_only_valid_values_while_disconnected(store, fake_manager):
    ctl = TunnelController(store, fake_manager)
    assert ctl.set_proxy("proxy.lab", 3128)
    assert store.get_str(KEY_PROXY_HOST) == "proxy.lab"

    assert not ctl.set_proxy("bad host", 3128)
    assert store.get_str(KEY_PROXY_HOST) == "proxy.lab"

    ctl.state.is_connected = True
    assert not ctl.set_proxy("other.lab", 3128)
    assert store.get_str(KEY_PROXY_HOST) == "proxy.lab"
    assert ctl.state.proxy_host == "other.lab"


def test_push_proxy_update_when_connected(store, fake_manager):
    ctl = _controller(store, fake_manager)
    ctl.state.is_connected = True
    ctl.state.proxy_host, ctl.state.proxy_port = "10.0.0.9", 3128

    asyncio.run(ctl.push_proxy_update())

    message = decode_message(fake_manager.sent[0])
    assert message.command is Command.UPDATE_PROXY
    assert json.loads(message.payload) == {"host": "10.0.0.9", "port": 3128}
    assert decode_update(message.payload).port == 3128


def test_push_proxy_update_ignored_when_disconnected(store, fake_manager):
    ctl = _controller(store, fake_manager)
    asyncio.run(ctl.push_proxy_update())
    assert fake_manager.sent == []


def test_close_unsubscribes(store, fake_manager):
    ctl = _controller(store, fake_manager)
    asyncio.run(ctl.load())
    ctl.close()
    fake_manager.emit(TunnelStatus.CONNECTING)
    assert ctl.state.tunnel_state is TunnelState.IDLE


class SingleStartManager(FakeManager):
    """Refuse un second démarrage tant que le runtime précédent est vivant."""

    def start_tunnel(self):
        if self.status in (TunnelStatus.CONNECTING, TunnelStatus.CONNECTED):
            self.calls.append("start_tunnel")
            raise SessionError("Tunnel runtime already running")
        super().start_tunnel()


def test_connect_while_starting_keeps_connecting_state(store):
    manager = SingleStartManager()
    ctl = _controller(store, manager)

    async def main():
        await ctl.connect()
        await ctl.connect()

    asyncio.run(main())

    assert manager.calls == ["save", "reload", "start_tunnel"]
    assert ctl.state.tunnel_state is TunnelState.CONNECTING
    assert ctl.state.is_connecting
    assert ctl.state.last_error is None


def test_connect_while_connected_is_ignored(store):
    manager = SingleStartManager()
    ctl = _controller(store, manager)

    async def main():
        await ctl.connect()
        manager.emit(TunnelStatus.CONNECTED)
        await ctl.connect()
        ctl.close()

    asyncio.run(main())

    assert manager.calls == ["save", "reload", "start_tunnel"]
    assert ctl.state.tunnel_state is TunnelState.CONNECTED
    assert ctl.state.is_connected
    assert ctl.state.last_error is None


def test_connect_guard_released_once_tunnel_settles(store):
    manager = SingleStartManager()
    ctl = _controller(store, manager)

    async def main():
        await ctl.connect()
        manager.emit(TunnelStatus.DISCONNECTED)
        await ctl.connect()

    asyncio.run(main())

    assert manager.calls == ["save", "reload", "start_tunnel"] * 2
    assert ctl.state.tunnel_state is TunnelState.CONNECTING


# ---------- Store non inscriptible ----------

def _unwritable_store(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    return ConfigStore(blocker / "data" / STORE_FILE)


def test_unwritable_store_fails_connect_with_error(tmp_path, fake_manager):
    ctl = _controller(_unwritable_store(tmp_path), fake_manager)

    asyncio.run(ctl.connect())

    assert "Cannot write store" in ctl.state.last_error
    assert fake_manager.calls == []
    assert ctl.state.tunnel_state is TunnelState.IDLE
    assert not ctl.state.is_connecting


def test_unwritable_store_fails_set_proxy_with_error(tmp_path, fake_manager):
    ctl = TunnelController(_unwritable_store(tmp_path), fake_manager)
    assert not ctl.set_proxy("proxy.lab", 3128)
    assert "Cannot write store" in ctl.state.last_error
