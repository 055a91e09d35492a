# src/tunnel_backend/controller.py
from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .errors import PersistenceError, TunnelError
from .logging_utils import get_logger
from .messages import Command, TunnelMessage, decode_stats, encode_message, make_update_message
from .models import (
    DEFAULT_PROXY_PORT,
    STATUS_TO_STATE,
    TunnelDescriptor,
    TunnelState,
    TunnelStatus,
)
from .state import KEY_PROXY_HOST, KEY_PROXY_PORT, ConfigStore
from .validation import is_valid_host, is_valid_port


STATS_INTERVAL = 2.0
DESCRIPTION = "Proxy Tunnel"

ACTIVE_STATUSES = (TunnelStatus.CONNECTING, TunnelStatus.REASSERTING, TunnelStatus.CONNECTED)
SETTLED_STATUSES = (TunnelStatus.CONNECTED, TunnelStatus.DISCONNECTED, TunnelStatus.INVALID)

log = get_logger("ptun.controller")


@dataclass
class ControllerState:
    tunnel_state: TunnelState = TunnelState.IDLE
    status: TunnelStatus = TunnelStatus.DISCONNECTED
    is_connected: bool = False
    is_connecting: bool = False
    connected_date: Optional[float] = None
    last_error: Optional[str] = None
    bytes_in: int = 0
    bytes_out: int = 0
    proxy_host: str = ""
    proxy_port: int = DEFAULT_PROXY_PORT


Subscriber = Callable[[ControllerState], None]


class TunnelController:
    """
    Côté utilisateur : séquence connect/disconnect, état observable et
    relevé périodique des compteurs.

    Toutes les mutations d'état se font sur la boucle asyncio de l'appelant.
    `manager` suit l'interface de session.TunnelManager (save, reload,
    start_tunnel, stop_tunnel, status, observateurs, send_message).
    """

    def __init__(self, store: ConfigStore, manager: Any = None):
        self.store = store
        self.manager = manager
        saved = store.load_config()
        self.state = ControllerState(
            proxy_host=saved.proxy_host,
            proxy_port=saved.proxy_port or DEFAULT_PROXY_PORT,
        )
        self._subscribers: List[Subscriber] = []
        self._stats_task: Optional[asyncio.Task] = None
        self._connect_in_flight = False
        self._observing = False

    # ---------- Observateurs ----------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = dataclasses.replace(self.state)
        for callback in list(self._subscribers):
            callback(snapshot)

    # ---------- Configuration ----------

    def set_proxy(self, host: str, port: int) -> bool:
        """
        Modifie la configuration de travail. Enregistrée dans le store
        uniquement si elle est valide et que le tunnel est déconnecté.
        """
        self.state.proxy_host = host
        self.state.proxy_port = port
        self._publish()
        if self.state.is_connected or not (is_valid_host(host) and is_valid_port(port)):
            return False
        try:
            self._persist_config()
        except PersistenceError as e:
            log.error("failed to save proxy configuration", extra={"error": str(e)})
            self.state.last_error = str(e)
            self._publish()
            return False
        return True

    def _persist_config(self) -> None:
        self.store.set(KEY_PROXY_HOST, self.state.proxy_host)
        self.store.set(KEY_PROXY_PORT, self.state.proxy_port)

    def _descriptor(self) -> TunnelDescriptor:
        host, port = self.state.proxy_host, self.state.proxy_port
        return TunnelDescriptor(
            provider_configuration={"proxyHost": host, "proxyPort": port},
            server_address=f"{host}:{port}",
            localized_description=DESCRIPTION,
            enabled=True,
            disconnect_on_sleep=False,
        )

    # ---------- Chargement ----------

    async def load(self) -> None:
        if self.manager is None:
            return
        try:
            await self.manager.load_all()
        except TunnelError as e:
            log.error("failed to load tunnel manager", extra={"error": str(e)})
            self.state.last_error = str(e)
            self._publish()
        self._observe()
        self._update_status()

    def _observe(self) -> None:
        if not self._observing:
            self.manager.add_status_observer(self._on_status_change)
            self._observing = True

    # ---------- Connexion ----------

    async def connect(self) -> None:
        if self._connect_in_flight:
            log.warning("connect already in progress, ignored")
            return
        if self.manager is not None and self.manager.status in ACTIVE_STATUSES:
            log.warning("tunnel already started, connect ignored", extra={"status": self.manager.status.value})
            return

        host, port = self.state.proxy_host, self.state.proxy_port
        if not is_valid_host(host):
            self.state.last_error = "Enter a valid IP address or hostname"
            self._publish()
            return
        if not is_valid_port(port):
            self.state.last_error = "Enter a valid port (1-65535)"
            self._publish()
            return
        if self.manager is None:
            self.state.last_error = "Tunnel manager not initialized"
            self._publish()
            return

        self._connect_in_flight = True
        succeeded = False
        self.state.tunnel_state = TunnelState.LOADING
        self.state.is_connecting = True
        self.state.last_error = None
        self._publish()

        try:
            self._persist_config()
            self._observe()

            # save -> reload -> start, chaque étape attend la précédente
            await self.manager.save(self._descriptor())
            await self.manager.reload()

            self.state.tunnel_state = TunnelState.CONNECTING
            self._publish()
            self.manager.start_tunnel()
            log.info("tunnel start requested", extra={"proxy": f"{host}:{port}"})
            succeeded = True
        except TunnelError as e:
            log.error("failed to start tunnel", extra={"error": str(e)})
            self.state.last_error = str(e)
        finally:
            # en cas de succès le verrou tombe avec le statut final (_update_status)
            if not succeeded:
                self._connect_in_flight = False
                self.state.is_connecting = False
                self.state.tunnel_state = TunnelState.IDLE
                self._publish()

    def disconnect(self) -> None:
        if self.manager is None:
            return
        self.manager.stop_tunnel()
        self._stop_stats_polling()
        log.info("tunnel stop requested")

    async def toggle(self) -> None:
        if self.state.is_connected:
            self.disconnect()
        else:
            await self.connect()

    async def push_proxy_update(self) -> None:
        """Envoie la configuration courante au runtime ; la réponse est ignorée."""
        host, port = self.state.proxy_host, self.state.proxy_port
        if self.manager is None or not self.state.is_connected:
            return
        if not (is_valid_host(host) and is_valid_port(port)):
            self.state.last_error = "Enter a valid IP address or hostname"
            self._publish()
            return
        await self.manager.send_message(encode_message(make_update_message(host, port)))

    # ---------- Statistiques ----------

    async def refresh_stats(self) -> None:
        if self.manager is None:
            return
        data = await self.manager.send_message(encode_message(TunnelMessage(command=Command.GET_STATS)))
        stats = decode_stats(data)
        if stats is None:
            return
        self.state.bytes_in = stats.bytes_in
        self.state.bytes_out = stats.bytes_out
        self._publish()

    async def _poll_stats(self) -> None:
        while True:
            await asyncio.sleep(STATS_INTERVAL)
            await self.refresh_stats()

    def _start_stats_polling(self) -> None:
        if self._stats_task is None or self._stats_task.done():
            self._stats_task = asyncio.get_running_loop().create_task(self._poll_stats())

    def _stop_stats_polling(self) -> None:
        if self._stats_task is not None:
            self._stats_task.cancel()
            self._stats_task = None

    @property
    def is_polling(self) -> bool:
        return self._stats_task is not None and not self._stats_task.done()

    # ---------- Statut ----------

    def _on_status_change(self, status: TunnelStatus) -> None:
        self._update_status()

    def _update_status(self) -> None:
        if self.manager is None:
            return
        status = self.manager.status
        self.state.status = status
        self.state.tunnel_state = STATUS_TO_STATE[status]

        if status in SETTLED_STATUSES:
            self._connect_in_flight = False

        if status is TunnelStatus.CONNECTED:
            self.state.is_connected = True
            self.state.is_connecting = False
            self.state.connected_date = self.manager.connected_date
            self.state.last_error = None
            self._start_stats_polling()
        elif status in (TunnelStatus.CONNECTING, TunnelStatus.REASSERTING):
            self.state.is_connected = False
            self.state.is_connecting = True
            self._stop_stats_polling()
        elif status in (TunnelStatus.DISCONNECTED, TunnelStatus.INVALID):
            self.state.is_connected = False
            self.state.is_connecting = False
            self.state.connected_date = None
            self._stop_stats_polling()
            error = self.manager.last_disconnect_error
            if error:
                self.state.last_error = error
        elif status is TunnelStatus.DISCONNECTING:
            self.state.is_connecting = False
            self._stop_stats_polling()

        self._publish()

    def close(self) -> None:
        self._stop_stats_polling()
        if self.manager is not None and self._observing:
            self.manager.remove_status_observer(self._on_status_change)
            self._observing = False
