# src/tunnel_backend/netconfig.py
from __future__ import annotations

import ipaddress
import os
import shutil
import socket
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from core.config_builder import generate_proxy_env

from .errors import SettingsApplyError
from .logging_utils import get_logger
from .models import IPv4Route, NetworkSettings
from .settings import prefix_length


DEFAULT_INTERFACE = os.environ.get("PTUN_INTERFACE", "ptun0")
DEFAULT_ENV_PATH = Path(os.environ.get("PTUN_ENV_FILE", "configs/proxy.env"))

# Deux demi-routes plutôt que "default" : la route par défaut réelle reste
# en place et sert aux routes exclues.
SPLIT_DEFAULT_ROUTES = ("0.0.0.0/1", "128.0.0.0/1")

log = get_logger("ptun.netconfig")


# -----------------------------
# Low-level helpers
# -----------------------------

def _which(binary: str) -> str:
    path = shutil.which(binary)
    if path is None:
        raise RuntimeError(f"'{binary}' not found in PATH.")
    return path


def run_cmd(cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
    log.debug("exec", extra={"cmd": cmd})
    return subprocess.run(cmd, check=check, text=True, capture_output=True)


def _ip(*args: str, check: bool = True) -> str:
    _which("ip")
    return run_cmd(["ip", *args], check=check).stdout


def detect_default_route() -> Tuple[Optional[str], str]:
    """
    Retourne (gateway, interface) de la route par défaut.
    gateway vaut None pour un lien point-à-point (pas de 'via').
    """
    out = _ip("route", "show", "default").strip()
    line = next((l for l in out.splitlines() if l.strip()), "")
    if not line:
        raise RuntimeError("Cannot detect default route (no 'ip route show default' output).")
    parts = line.split()
    if "dev" not in parts:
        raise RuntimeError(f"Cannot parse default route line: {line}")
    idx = parts.index("dev")
    if idx + 1 >= len(parts):
        raise RuntimeError(f"Cannot parse WAN iface from: {line}")
    gateway = None
    if "via" in parts and parts.index("via") + 1 < len(parts):
        gateway = parts[parts.index("via") + 1]
    return gateway, parts[idx + 1]


def resolve_ipv4(host: str) -> str:
    try:
        return str(ipaddress.IPv4Address(host))
    except ipaddress.AddressValueError:
        pass
    try:
        return socket.gethostbyname(host)
    except (socket.gaierror, UnicodeError) as e:
        raise RuntimeError(f"Cannot resolve proxy host '{host}': {e}") from e


# -----------------------------
# Public API
# -----------------------------

class LinuxSettingsApplier:
    """
    Applique NetworkSettings sur une interface TUN déjà créée :
    adresse + MTU, routes, DNS (systemd-resolved) et fichier d'environnement
    proxy.
    """

    def __init__(self, interface: str = DEFAULT_INTERFACE, env_path: Optional[Path] = None):
        self.interface = interface
        self.env_path = env_path or DEFAULT_ENV_PATH
        self._excluded: List[str] = []

    def apply(self, settings: NetworkSettings) -> None:
        try:
            self._apply_address(settings)
            self._apply_routes(settings)
            self._apply_dns(settings)
            self._apply_proxy(settings)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise SettingsApplyError(f"Command failed: {' '.join(e.cmd)}: {stderr}") from e
        except (RuntimeError, OSError) as e:
            raise SettingsApplyError(str(e)) from e

        log.info("network settings applied", extra={"interface": self.interface})

    def _apply_address(self, settings: NetworkSettings) -> None:
        dev = self.interface
        for address, mask in zip(settings.ipv4.addresses, settings.ipv4.subnet_masks):
            _ip("addr", "replace", f"{address}/{prefix_length(mask)}", "dev", dev)
        _ip("link", "set", "dev", dev, "mtu", str(settings.mtu), "up")

    def _apply_routes(self, settings: NetworkSettings) -> None:
        # Exclusions d'abord : elles doivent exister avant la capture du trafic
        if settings.ipv4.excluded_routes:
            gateway, wan = detect_default_route()
            for route in settings.ipv4.excluded_routes:
                dest = self._route_destination(route)
                cmd = ["route", "replace", dest]
                if gateway:
                    cmd += ["via", gateway]
                cmd += ["dev", wan]
                _ip(*cmd)
                self._excluded.append(dest)

        for route in settings.ipv4.included_routes:
            if route.is_default:
                for half in SPLIT_DEFAULT_ROUTES:
                    _ip("route", "replace", half, "dev", self.interface)
            else:
                _ip("route", "replace", self._route_destination(route), "dev", self.interface)

    @staticmethod
    def _route_destination(route: IPv4Route) -> str:
        address = resolve_ipv4(route.destination)
        network = ipaddress.IPv4Network(f"{address}/{route.subnet_mask}", strict=False)
        return str(network)

    def _apply_dns(self, settings: NetworkSettings) -> None:
        if not settings.dns.servers:
            return
        _which("resolvectl")
        run_cmd(["resolvectl", "dns", self.interface, *settings.dns.servers])
        if settings.dns.match_domains == [""]:
            # "~." = domaine de routage racine, toutes les requêtes passent ici
            run_cmd(["resolvectl", "domain", self.interface, "~."])
        elif settings.dns.match_domains:
            run_cmd(["resolvectl", "domain", self.interface, *settings.dns.match_domains])

    def _apply_proxy(self, settings: NetworkSettings) -> None:
        proxy = settings.proxy
        if not (proxy.http_enabled or proxy.https_enabled):
            return
        self.env_path.parent.mkdir(parents=True, exist_ok=True)
        self.env_path.write_text(generate_proxy_env(settings), encoding="utf-8")
        self.env_path.chmod(0o644)

    def revert(self) -> None:
        """Best effort : l'interface TUN emporte ses propres routes à sa fermeture."""
        for dest in self._excluded:
            try:
                _ip("route", "del", dest)
            except (subprocess.CalledProcessError, RuntimeError, OSError) as e:
                log.warning("cannot remove excluded route", extra={"route": dest, "error": str(e)})
        self._excluded.clear()

        try:
            self.env_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("cannot remove proxy env file", extra={"path": str(self.env_path), "error": str(e)})
