# src/tunnel_backend/session.py
from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional

from .control import SOCKET_NAME, ControlClient
from .errors import PersistenceError, SessionError
from .logging_utils import get_logger
from .models import TunnelDescriptor, TunnelStatus
from .netconfig import DEFAULT_INTERFACE
from .state import (
    DEFAULT_DATA_DIR,
    DESCRIPTOR_FILE,
    KEY_TUNNEL_ACTIVE,
    KEY_TUNNEL_LAST_ERROR,
    KEY_TUNNEL_START_TIME,
    STORE_FILE,
    ConfigStore,
    load_descriptor,
    save_descriptor,
)

PID_FILE = "runtime.pid"
STATUS_POLL_INTERVAL = 0.5

StatusObserver = Callable[[TunnelStatus], None]

log = get_logger("ptun.session")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TunnelManager:
    """
    Gestionnaire du tunnel côté système : enregistre le descripteur, lance le
    runtime dans son propre processus et publie les changements de statut.

    Le statut se déduit du processus (vivant ou non) et de `tunnel_active`
    écrit par le runtime dans le store partagé.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        store: Optional[ConfigStore] = None,
        interface: str = DEFAULT_INTERFACE,
    ):
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self.store = store or ConfigStore(self.data_dir / STORE_FILE)
        self.interface = interface
        self.descriptor_path = self.data_dir / DESCRIPTOR_FILE
        self.pid_path = self.data_dir / PID_FILE
        self.client = ControlClient(self.data_dir / SOCKET_NAME)

        self.descriptor: Optional[TunnelDescriptor] = None
        self.status = TunnelStatus.INVALID
        self._process: Optional[subprocess.Popen] = None
        self._stop_requested = False
        self._observers: List[StatusObserver] = []
        self._watcher: Optional[asyncio.Task] = None

    # ---------- Descripteur ----------

    async def load_all(self) -> Optional[TunnelDescriptor]:
        self.descriptor = await asyncio.to_thread(load_descriptor, self.descriptor_path)
        if self.refresh_status() not in (TunnelStatus.DISCONNECTED, TunnelStatus.INVALID):
            # runtime lancé par une invocation précédente
            self._ensure_watcher()
        return self.descriptor

    async def save(self, descriptor: TunnelDescriptor) -> None:
        await asyncio.to_thread(save_descriptor, descriptor, self.descriptor_path)
        self.descriptor = descriptor

    async def reload(self) -> TunnelDescriptor:
        descriptor = await asyncio.to_thread(load_descriptor, self.descriptor_path)
        if descriptor is None:
            raise PersistenceError(f"Tunnel descriptor missing after save: {self.descriptor_path}")
        self.descriptor = descriptor
        return descriptor

    # ---------- Session ----------

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _runtime_alive(self) -> bool:
        if self._process is not None:
            # poll() récolte le zombie, os.kill(pid, 0) le verrait encore vivant
            return self._process.poll() is None
        pid = self._read_pid()
        return pid is not None and _pid_alive(pid)

    def start_tunnel(self) -> None:
        if self.descriptor is None:
            raise SessionError("No tunnel descriptor saved")
        if not self.descriptor.enabled:
            raise SessionError("Tunnel descriptor is disabled")
        if self._runtime_alive():
            raise SessionError("Tunnel runtime already running")

        self.store.remove(KEY_TUNNEL_LAST_ERROR)
        self.store.set(KEY_TUNNEL_ACTIVE, False)

        cmd = [
            sys.executable, "-m", "tunnel_backend.daemon",
            "--data-dir", str(self.data_dir),
            "--interface", self.interface,
        ]
        try:
            self._process = subprocess.Popen(cmd, start_new_session=True)
            self.pid_path.write_text(str(self._process.pid), encoding="utf-8")
        except OSError as e:
            raise SessionError(f"Cannot launch tunnel runtime: {e}") from e

        log.info("tunnel runtime launched", extra={"pid": self._process.pid})
        self._stop_requested = False
        self._set_status(TunnelStatus.CONNECTING)
        self._ensure_watcher()

    def stop_tunnel(self) -> None:
        pid = self._process.pid if self._process is not None else self._read_pid()
        if pid is None or not self._runtime_alive():
            self.refresh_status()
            return
        self._stop_requested = True
        self._set_status(TunnelStatus.DISCONNECTING)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            log.error("cannot signal tunnel runtime", extra={"pid": pid, "error": str(e)})
        self._ensure_watcher()

    @property
    def connected_date(self) -> Optional[float]:
        start = self.store.get_float(KEY_TUNNEL_START_TIME)
        return start or None

    @property
    def last_disconnect_error(self) -> Optional[str]:
        return self.store.get_str(KEY_TUNNEL_LAST_ERROR) or None

    async def send_message(self, data: bytes) -> Optional[bytes]:
        return await self.client.send(data)

    # ---------- Statut ----------

    def add_status_observer(self, observer: StatusObserver) -> None:
        self._observers.append(observer)

    def remove_status_observer(self, observer: StatusObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _compute_status(self) -> TunnelStatus:
        if self.descriptor is None and not self._runtime_alive():
            return TunnelStatus.INVALID
        if not self._runtime_alive():
            return TunnelStatus.DISCONNECTED
        if self._stop_requested:
            return TunnelStatus.DISCONNECTING
        if self.store.get_bool(KEY_TUNNEL_ACTIVE):
            return TunnelStatus.CONNECTED
        return TunnelStatus.CONNECTING

    def refresh_status(self) -> TunnelStatus:
        status = self._compute_status()
        if status in (TunnelStatus.DISCONNECTED, TunnelStatus.INVALID):
            self._cleanup_dead_runtime()
        self._set_status(status)
        return status

    def _cleanup_dead_runtime(self) -> None:
        if self._process is not None:
            self._process = None
        self._stop_requested = False
        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass

    def _set_status(self, status: TunnelStatus) -> None:
        if status is self.status:
            return
        self.status = status
        log.info("tunnel status changed", extra={"status": status.value})
        for observer in list(self._observers):
            observer(status)

    def _ensure_watcher(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._watcher is None or self._watcher.done():
            self._watcher = loop.create_task(self._watch())

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(STATUS_POLL_INTERVAL)
            status = self.refresh_status()
            if status in (TunnelStatus.DISCONNECTED, TunnelStatus.INVALID):
                return

    async def close(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None
