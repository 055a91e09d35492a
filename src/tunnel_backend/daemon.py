# src/tunnel_backend/daemon.py
"""
Processus hôte du runtime, lancé par TunnelManager.start_tunnel() :

    python -m tunnel_backend.daemon --data-dir data --interface ptun0

Ouvre l'interface TUN, démarre le runtime, sert le canal de contrôle
jusqu'à SIGTERM/SIGINT puis démonte le tout.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from .control import SOCKET_NAME, ControlServer
from .errors import PersistenceError, TunnelError
from .logging_utils import get_logger
from .netconfig import DEFAULT_ENV_PATH, DEFAULT_INTERFACE, LinuxSettingsApplier
from .packet_flow import TunDevice
from .runtime import TunnelRuntime
from .settings import TUNNEL_MTU
from .state import (
    DEFAULT_DATA_DIR,
    DESCRIPTOR_FILE,
    KEY_TUNNEL_LAST_ERROR,
    STORE_FILE,
    ConfigStore,
    load_descriptor,
)

log = get_logger("ptun.daemon")


def _record_error(store: ConfigStore, message: str) -> None:
    try:
        store.set(KEY_TUNNEL_LAST_ERROR, message)
    except PersistenceError as e:
        log.error("cannot record tunnel error", extra={"error": str(e), "reason": message})


async def serve(runtime: TunnelRuntime, socket_path: Path, provider_configuration: Optional[dict]) -> int:
    # avant start_tunnel : un SIGTERM reçu pendant l'application des routes
    # aboutit à stop_tunnel puis revert()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        runtime.start_tunnel(provider_configuration)
    except TunnelError as e:
        _record_error(runtime.store, str(e))
        return 1

    server = await ControlServer(runtime.handle_message, socket_path).start()
    try:
        await stop.wait()
    finally:
        try:
            runtime.stop_tunnel(reason="signal")
        except PersistenceError as e:
            log.error("cannot record tunnel stop", extra={"error": str(e)})
        await server.close()
    return 0


def run(data_dir: Path, interface: str, env_path: Path) -> int:
    store = ConfigStore(data_dir / STORE_FILE)
    try:
        store.remove(KEY_TUNNEL_LAST_ERROR)
    except PersistenceError as e:
        log.error("store not writable", extra={"error": str(e)})
        return 1

    try:
        descriptor = load_descriptor(data_dir / DESCRIPTOR_FILE)
    except PersistenceError as e:
        log.error("cannot load tunnel descriptor", extra={"error": str(e)})
        _record_error(store, str(e))
        return 1
    provider_configuration = descriptor.provider_configuration if descriptor else None

    try:
        tun = TunDevice(interface, mtu=TUNNEL_MTU)
    except OSError as e:
        message = f"Cannot open TUN device '{interface}' (root or CAP_NET_ADMIN required): {e}"
        log.error("cannot open TUN device", extra={"interface": interface, "error": str(e)})
        _record_error(store, message)
        return 1

    applier = LinuxSettingsApplier(tun.name, env_path)
    runtime = TunnelRuntime(store, applier, tun)
    try:
        return asyncio.run(serve(runtime, data_dir / SOCKET_NAME, provider_configuration))
    finally:
        applier.revert()
        tun.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="ptun-runtime")
    parser.add_argument("--data-dir", type=Path, default=DEFAULT_DATA_DIR)
    parser.add_argument("--interface", default=DEFAULT_INTERFACE)
    parser.add_argument("--env-file", type=Path, default=DEFAULT_ENV_PATH)
    args = parser.parse_args(argv)
    return run(args.data_dir, args.interface, args.env_file)


if __name__ == "__main__":
    sys.exit(main())
