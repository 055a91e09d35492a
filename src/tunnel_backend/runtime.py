# src/tunnel_backend/runtime.py
from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigurationError, IPCError, PersistenceError, SettingsApplyError
from .logging_utils import get_logger
from .messages import (
    Command,
    TunnelStats,
    decode_message,
    decode_update,
    encode_stats,
)
from .models import DEFAULT_PROXY_PORT, NetworkSettings, TrafficCounters, TunnelConfiguration
from .settings import build_network_settings
from .state import (
    KEY_PROXY_HOST,
    KEY_PROXY_PORT,
    KEY_TUNNEL_ACTIVE,
    KEY_TUNNEL_START_TIME,
    ConfigStore,
)
from .validation import is_valid_host, is_valid_port


ERR_NO_HOST = 1
ERR_BAD_PORT = 2

log = get_logger("ptun.runtime")


class RuntimeState(Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURING = "configuring"
    SETTINGS_APPLIED = "settings_applied"
    ACTIVE = "active"
    FAILED = "failed"
    STOPPING = "stopping"


class TunnelRuntime:
    """
    Côté processus isolé : possède l'interface, applique les réglages réseau
    et compte le trafic.

    `applier` doit exposer apply(NetworkSettings) et lever SettingsApplyError.
    `packet_flow` doit exposer batches() -> itérable de listes de paquets.
    """

    def __init__(
        self,
        store: ConfigStore,
        applier: Any,
        packet_flow: Any,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.applier = applier
        self.packet_flow = packet_flow
        self.clock = clock
        self.state = RuntimeState.UNINITIALIZED

        self._proxy_lock = threading.Lock()
        self._proxy_host = ""
        self._proxy_port = DEFAULT_PROXY_PORT

        self.counters = TrafficCounters()
        self._packet_thread: Optional[threading.Thread] = None

    # ---------- Configuration de travail ----------

    @property
    def proxy(self) -> Tuple[str, int]:
        with self._proxy_lock:
            return self._proxy_host, self._proxy_port

    def _set_proxy(self, host: str, port: int) -> None:
        with self._proxy_lock:
            self._proxy_host = host
            self._proxy_port = port

    def _resolve_config(self, provider_configuration: Optional[Dict[str, Any]]) -> TunnelConfiguration:
        host = ""
        port: Any = DEFAULT_PROXY_PORT
        if provider_configuration:
            host = provider_configuration.get("proxyHost") or ""
            port = provider_configuration.get("proxyPort", DEFAULT_PROXY_PORT)

        if not host:
            # repli complet sur le store partagé
            host = self.store.get_str(KEY_PROXY_HOST)
            saved_port = self.store.get_int(KEY_PROXY_PORT)
            if saved_port > 0:
                port = saved_port
        return TunnelConfiguration(host, port)

    # ---------- Cycle de vie ----------

    def start_tunnel(self, provider_configuration: Optional[Dict[str, Any]] = None) -> NetworkSettings:
        log.info("starting tunnel")
        self.state = RuntimeState.CONFIGURING

        config = self._resolve_config(provider_configuration)
        host, port = config.host, config.port

        if not isinstance(host, str) or not is_valid_host(host):
            self.state = RuntimeState.FAILED
            log.error("no valid proxy host configured")
            raise ConfigurationError("No valid proxy host configured", code=ERR_NO_HOST)
        if not is_valid_port(port):
            self.state = RuntimeState.FAILED
            log.error("invalid proxy port", extra={"port": port})
            raise ConfigurationError("Invalid proxy port", code=ERR_BAD_PORT)

        self._set_proxy(host, port)
        self.counters = TrafficCounters(start_time=self.clock())

        settings = self.network_settings()
        try:
            self.applier.apply(settings)
        except SettingsApplyError as e:
            self.state = RuntimeState.FAILED
            log.error("failed to set tunnel settings", extra={"error": str(e)})
            raise
        self.state = RuntimeState.SETTINGS_APPLIED

        log.info("tunnel active, all traffic routed to proxy", extra={"proxy": f"{host}:{port}"})
        self._start_packet_loop()

        try:
            self.store.set(KEY_TUNNEL_ACTIVE, True)
            self.store.set(KEY_TUNNEL_START_TIME, self.clock())
        except PersistenceError as e:
            self.state = RuntimeState.FAILED
            log.error("cannot report tunnel activation", extra={"error": str(e)})
            raise
        self.state = RuntimeState.ACTIVE
        return settings

    def stop_tunnel(self, reason: Optional[str] = None) -> None:
        # La boucle de lecture meurt avec le processus hôte
        log.info("stopping tunnel", extra={"reason": reason})
        self.state = RuntimeState.STOPPING
        self.store.set(KEY_TUNNEL_ACTIVE, False)
        self.store.remove(KEY_TUNNEL_START_TIME)
        self.state = RuntimeState.UNINITIALIZED

    def network_settings(self) -> NetworkSettings:
        host, port = self.proxy
        return build_network_settings(host, port)

    # ---------- Boucle de paquets ----------

    def _start_packet_loop(self) -> None:
        self._packet_thread = threading.Thread(
            target=self.count_packets,
            args=(self.packet_flow.batches(),),
            name="packet-loop",
            daemon=True,
        )
        self._packet_thread.start()

    def count_packets(self, batches: Iterable[List[bytes]]) -> None:
        """Compte uniquement : les paquets ne sont jamais réémis."""
        for packets in batches:
            self.counters.add(sum(len(p) for p in packets), 0)
        log.info("packet flow closed")

    # ---------- Messages du controller ----------

    def handle_message(self, data: bytes) -> Optional[bytes]:
        """Réponse encodée, ou None (message illisible, update-proxy)."""
        try:
            message = decode_message(data)
        except IPCError as e:
            log.warning("dropping control message", extra={"error": str(e)})
            return None

        if message.command is Command.GET_STATS:
            return encode_stats(self.stats())

        if message.command is Command.UPDATE_PROXY:
            self._handle_update(message.payload)
        return None

    def stats(self) -> TunnelStats:
        bytes_in, bytes_out = self.counters.snapshot()
        stored_start = self.store.get_float(KEY_TUNNEL_START_TIME)
        start = max(stored_start, self.counters.start_time)
        uptime = max(0.0, self.clock() - start) if start > 0 else 0.0
        return TunnelStats(bytes_in=bytes_in, bytes_out=bytes_out, uptime=uptime)

    def _handle_update(self, payload: Optional[bytes]) -> None:
        try:
            update = decode_update(payload)
        except IPCError as e:
            log.error("invalid proxy update rejected", extra={"error": str(e)})
            return
        if not is_valid_host(update.host) or not is_valid_port(update.port):
            log.error("invalid proxy update rejected", extra={"host": update.host, "port": update.port})
            return
        self._set_proxy(update.host, update.port)
        log.info("proxy configuration updated", extra={"proxy": f"{update.host}:{update.port}"})
