
# src/tunnel_backend/models.py
from __future__ import annotations
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_PROXY_PORT = 8080


class TunnelState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REASSERTING = "reasserting"
    DISCONNECTING = "disconnecting"
    INVALID = "invalid"


class TunnelStatus(Enum):
    """Statut publié par le gestionnaire de tunnel (côté système)."""
    INVALID = "invalid"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REASSERTING = "reasserting"
    DISCONNECTING = "disconnecting"


STATUS_TO_STATE = {
    TunnelStatus.INVALID: TunnelState.INVALID,
    TunnelStatus.DISCONNECTED: TunnelState.IDLE,
    TunnelStatus.CONNECTING: TunnelState.CONNECTING,
    TunnelStatus.CONNECTED: TunnelState.CONNECTED,
    TunnelStatus.REASSERTING: TunnelState.REASSERTING,
    TunnelStatus.DISCONNECTING: TunnelState.DISCONNECTING,
}


@dataclass(frozen=True)
class TunnelConfiguration:
    host: str
    port: int = DEFAULT_PROXY_PORT


@dataclass
class StoredConfig:
    proxy_host: str = ""
    proxy_port: int = 0          # 0 = jamais enregistré
    active: bool = False
    start_time: float = 0.0      # epoch, 0 = absent


@dataclass
class TunnelDescriptor:
    provider_configuration: Dict[str, Any]  # {"proxyHost": ..., "proxyPort": ...}
    server_address: str                     # ex "192.168.1.50:8081"
    localized_description: str = "Proxy Tunnel"
    enabled: bool = True
    disconnect_on_sleep: bool = False


class TrafficCounters:
    """
    Compteurs cumulés du runtime. Un seul verrou protège le couple
    (bytes_in, bytes_out), tenu le temps d'une lecture ou d'une écriture.
    """

    def __init__(self, start_time: float = 0.0):
        self.start_time = start_time
        self._lock = threading.Lock()
        self._bytes_in = 0
        self._bytes_out = 0

    def add(self, in_bytes: int, out_bytes: int = 0) -> None:
        with self._lock:
            self._bytes_in += in_bytes
            self._bytes_out += out_bytes

    def snapshot(self) -> Tuple[int, int]:
        with self._lock:
            return self._bytes_in, self._bytes_out

    @property
    def bytes_in(self) -> int:
        return self.snapshot()[0]

    @property
    def bytes_out(self) -> int:
        return self.snapshot()[1]


# ---------- Réglages réseau du tunnel ----------

@dataclass(frozen=True)
class IPv4Route:
    destination: str             # ex "0.0.0.0" pour la route par défaut
    subnet_mask: str             # ex "255.255.255.255" pour une route hôte

    @classmethod
    def default(cls) -> "IPv4Route":
        return cls("0.0.0.0", "0.0.0.0")

    @property
    def is_default(self) -> bool:
        return self.destination == "0.0.0.0" and self.subnet_mask == "0.0.0.0"


@dataclass
class IPv4Settings:
    addresses: List[str]
    subnet_masks: List[str]
    included_routes: List[IPv4Route] = field(default_factory=list)
    excluded_routes: List[IPv4Route] = field(default_factory=list)


@dataclass
class DNSSettings:
    servers: List[str]
    match_domains: List[str] = field(default_factory=list)  # [""] = tous les domaines


@dataclass(frozen=True)
class ProxyServer:
    address: str
    port: int

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass
class ProxySettings:
    http_enabled: bool = False
    http_server: Optional[ProxyServer] = None
    https_enabled: bool = False
    https_server: Optional[ProxyServer] = None
    match_domains: List[str] = field(default_factory=list)
    exclude_simple_hostnames: bool = True


@dataclass
class NetworkSettings:
    tunnel_remote_address: str
    ipv4: IPv4Settings
    dns: DNSSettings
    proxy: ProxySettings
    mtu: int
