# src/tunnel_backend/monitor.py
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .netconfig import detect_default_route

SYS_CLASS_NET = Path("/sys/class/net")


class InterfaceKind(Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    OTHER = "other"


INTERFACE_NAMES = {
    InterfaceKind.WIFI: "Wi-Fi",
    InterfaceKind.CELLULAR: "Cellular",
    InterfaceKind.ETHERNET: "Ethernet",
    InterfaceKind.OTHER: "Unknown",
}


@dataclass(frozen=True)
class Reachability:
    is_connected: bool = True
    interface_kind: InterfaceKind = InterfaceKind.OTHER
    interface: Optional[str] = None

    @property
    def interface_name(self) -> str:
        return INTERFACE_NAMES[self.interface_kind]


def classify_interface(name: str, sys_root: Path = SYS_CLASS_NET) -> InterfaceKind:
    if (sys_root / name / "wireless").exists() or name.startswith("wl"):
        return InterfaceKind.WIFI
    if name.startswith(("wwan", "rmnet", "ppp")):
        return InterfaceKind.CELLULAR
    if name.startswith(("eth", "en")):
        return InterfaceKind.ETHERNET
    return InterfaceKind.OTHER


class NetworkMonitor:
    """Joignabilité déduite de la route par défaut du système."""

    def __init__(self, sys_root: Path = SYS_CLASS_NET):
        self.sys_root = sys_root
        self.current = Reachability()
        self._subscribers: List[Callable[[Reachability], None]] = []

    def subscribe(self, callback: Callable[[Reachability], None]) -> None:
        self._subscribers.append(callback)

    def refresh(self) -> Reachability:
        try:
            _, iface = detect_default_route()
        except (RuntimeError, OSError, subprocess.CalledProcessError):
            snapshot = Reachability(is_connected=False)
        else:
            snapshot = Reachability(True, classify_interface(iface, self.sys_root), iface)

        if snapshot != self.current:
            self.current = snapshot
            for callback in list(self._subscribers):
                callback(snapshot)
        return snapshot
