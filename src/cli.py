import argparse
import asyncio
import time
from pathlib import Path

import qrcode

from core.config_builder import generate_settings_summary
from tunnel_backend import daemon
from tunnel_backend.controller import TunnelController
from tunnel_backend.errors import PersistenceError, ValidationError
from tunnel_backend.init_store import init_store
from tunnel_backend.models import DEFAULT_PROXY_PORT, TunnelStatus
from tunnel_backend.monitor import NetworkMonitor
from tunnel_backend.netconfig import DEFAULT_INTERFACE
from tunnel_backend.session import TunnelManager
from tunnel_backend.settings import build_network_settings
from tunnel_backend.state import DEFAULT_DATA_DIR, STORE_FILE, ConfigStore
from tunnel_backend.validation import is_valid_host, is_valid_port


def _store(args):
    return ConfigStore(args.data_dir / STORE_FILE)


def _controller(args):
    store = _store(args)
    manager = TunnelManager(args.data_dir, store, interface=args.interface)
    return TunnelController(store, manager), manager


def _fmt_bytes(n):
    for unit in ("B", "KB", "MB", "GB"):
        if n < 1024 or unit == "GB":
            return f"{n:.0f} {unit}" if unit == "B" else f"{n:.1f} {unit}"
        n /= 1024


def _fmt_uptime(seconds):
    seconds = int(seconds)
    h, rest = divmod(seconds, 3600)
    m, s = divmod(rest, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


# ---------------------------------------------------
# Commande : init
# ---------------------------------------------------

def cmd_init(args):
    print("[*] Initialisation du store...")
    try:
        cfg = init_store(args.host, args.port, args.data_dir)
    except (ValidationError, PersistenceError) as e:
        print(f"[ERREUR] {e}")
        return 1

    print(f"[+] Store initialisé : {args.data_dir / STORE_FILE}")
    print(f"[+] Proxy : {cfg.proxy_host or '(non défini)'}:{cfg.proxy_port}")
    return 0


# ---------------------------------------------------
# Commande : set-proxy
# ---------------------------------------------------

async def _set_proxy(args):
    controller, manager = _controller(args)
    await controller.load()
    saved = controller.set_proxy(args.host, args.port)
    controller.close()
    await manager.close()
    return saved, controller.state


def cmd_set_proxy(args):
    if not is_valid_host(args.host):
        print("[ERREUR] Adresse IP ou nom d'hôte invalide.")
        return 1
    if not is_valid_port(args.port):
        print("[ERREUR] Port invalide (1-65535).")
        return 1

    saved, state = asyncio.run(_set_proxy(args))
    if not saved:
        if state.is_connected:
            print("[!] Tunnel connecté : configuration non enregistrée.")
        else:
            print(f"[ERREUR] {state.last_error}")
        return 1

    print(f"[+] Proxy enregistré : {args.host}:{args.port}")
    return 0


# ---------------------------------------------------
# Commande : show-settings
# ---------------------------------------------------

def cmd_show_settings(args):
    cfg = _store(args).load_config()
    if not is_valid_host(cfg.proxy_host):
        print("[ERREUR] Aucun proxy configuré (ptun set-proxy HOST PORT).")
        return 1

    settings = build_network_settings(cfg.proxy_host, cfg.proxy_port or DEFAULT_PROXY_PORT)
    print(generate_settings_summary(settings))
    return 0


# ---------------------------------------------------
# Commande : connect / disconnect
# ---------------------------------------------------

async def _connect(args):
    controller, manager = _controller(args)
    await controller.load()
    if controller.state.is_connected:
        print("[!] Tunnel déjà connecté.")
        return controller.state

    await controller.connect()

    deadline = time.monotonic() + args.wait
    while controller.state.is_connecting and time.monotonic() < deadline:
        await asyncio.sleep(0.2)

    state = controller.state
    controller.close()
    await manager.close()
    return state


def cmd_connect(args):
    state = asyncio.run(_connect(args))

    if state.is_connected:
        print(f"[+] Tunnel connecté, trafic redirigé vers {state.proxy_host}:{state.proxy_port}")
        return 0
    if state.is_connecting:
        print("[!] Toujours en cours de connexion, voir 'ptun status'.")
        return 0
    print(f"[ERREUR] {state.last_error or 'Connexion impossible.'}")
    return 1


async def _disconnect(args):
    controller, manager = _controller(args)
    await controller.load()
    if manager.status in (TunnelStatus.DISCONNECTED, TunnelStatus.INVALID):
        return False

    controller.disconnect()
    deadline = time.monotonic() + args.wait
    while manager.refresh_status() is not TunnelStatus.DISCONNECTED and time.monotonic() < deadline:
        await asyncio.sleep(0.2)

    controller.close()
    await manager.close()
    return True


def cmd_disconnect(args):
    if not asyncio.run(_disconnect(args)):
        print("[!] Aucun tunnel actif.")
        return 0
    print("[OK] Tunnel arrêté.")
    return 0


# ---------------------------------------------------
# Commande : status / stats / watch
# ---------------------------------------------------

async def _status(args):
    controller, manager = _controller(args)
    await controller.load()
    await controller.refresh_stats()
    controller.close()
    await manager.close()
    return controller.state


def cmd_status(args):
    state = asyncio.run(_status(args))
    reach = NetworkMonitor().refresh()

    print("=== Tunnel ===")
    print(f"Statut    : {state.tunnel_state.value}")
    print(f"Proxy     : {state.proxy_host or '-'}:{state.proxy_port}")
    if state.connected_date:
        print(f"Uptime    : {_fmt_uptime(time.time() - state.connected_date)}")
    if state.is_connected:
        print(f"Trafic    : {_fmt_bytes(state.bytes_in)} entrant / {_fmt_bytes(state.bytes_out)} sortant")
    if state.last_error:
        print(f"Erreur    : {state.last_error}")

    print("\n=== Réseau ===")
    if reach.is_connected:
        print(f"Interface : {reach.interface} ({reach.interface_name})")
    else:
        print("Hors ligne.")
    return 0


def cmd_stats(args):
    state = asyncio.run(_status(args))
    if not state.is_connected:
        print("[!] Aucun tunnel actif.")
        return 1
    print(f"bytes_in  : {state.bytes_in}")
    print(f"bytes_out : {state.bytes_out}")
    return 0


async def _watch(args):
    controller, manager = _controller(args)
    await controller.load()
    if not controller.state.is_connected:
        print("[!] Aucun tunnel actif.")
        return 1

    last = [None]

    def on_change(state):
        current = (state.bytes_in, state.bytes_out)
        if current != last[0]:
            last[0] = current
            print(f"[{time.strftime('%H:%M:%S')}] in={_fmt_bytes(state.bytes_in)} out={_fmt_bytes(state.bytes_out)}")

    unsubscribe = controller.subscribe(on_change)
    try:
        while controller.state.is_connected:
            await asyncio.sleep(0.5)
    finally:
        unsubscribe()
        controller.close()
        await manager.close()

    print("[!] Tunnel déconnecté.")
    return 0


def cmd_watch(args):
    try:
        return asyncio.run(_watch(args))
    except KeyboardInterrupt:
        return 0


# ---------------------------------------------------
# Commande : generate-qr
# ---------------------------------------------------

def cmd_generate_qr(args):
    cfg = _store(args).load_config()
    if not is_valid_host(cfg.proxy_host):
        print("[ERREUR] Aucun proxy configuré.")
        return 1

    url = f"http://{cfg.proxy_host}:{cfg.proxy_port or DEFAULT_PROXY_PORT}"
    img = qrcode.make(url)

    path = Path(args.output)
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(str(path))

    print(f"[OK] QR code généré : {path} ({url})")
    return 0


# ---------------------------------------------------
# Commande : runtime (processus hôte, premier plan)
# ---------------------------------------------------

def cmd_runtime(args):
    return daemon.main(["--data-dir", str(args.data_dir), "--interface", args.interface])


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser():
    parser = argparse.ArgumentParser(prog="ptun")
    parser.add_argument("--data-dir", type=Path, default=DEFAULT_DATA_DIR)
    parser.add_argument("--interface", default=DEFAULT_INTERFACE)
    sub = parser.add_subparsers(dest="cmd")

    # init
    p_init = sub.add_parser("init")
    p_init.add_argument("--host", default="")
    p_init.add_argument("--port", type=int, default=DEFAULT_PROXY_PORT)
    p_init.set_defaults(func=cmd_init)

    # set-proxy
    p_set = sub.add_parser("set-proxy")
    p_set.add_argument("host")
    p_set.add_argument("port", type=int)
    p_set.set_defaults(func=cmd_set_proxy)

    p_show = sub.add_parser("show-settings")
    p_show.set_defaults(func=cmd_show_settings)

    # connect / disconnect
    p_conn = sub.add_parser("connect")
    p_conn.add_argument("--wait", type=float, default=10.0)
    p_conn.set_defaults(func=cmd_connect)

    p_disc = sub.add_parser("disconnect")
    p_disc.add_argument("--wait", type=float, default=5.0)
    p_disc.set_defaults(func=cmd_disconnect)

    p_status = sub.add_parser("status")
    p_status.set_defaults(func=cmd_status)

    p_stats = sub.add_parser("stats")
    p_stats.set_defaults(func=cmd_stats)

    p_watch = sub.add_parser("watch")
    p_watch.set_defaults(func=cmd_watch)

    # generate-qr
    p_qr = sub.add_parser("generate-qr")
    p_qr.add_argument("--output", default="configs/proxy.png")
    p_qr.set_defaults(func=cmd_generate_qr)

    p_rt = sub.add_parser("runtime")
    p_rt.set_defaults(func=cmd_runtime)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
