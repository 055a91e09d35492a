# src/tunnel_backend/settings.py
from __future__ import annotations
import ipaddress

from .models import (
    DNSSettings,
    IPv4Route,
    IPv4Settings,
    NetworkSettings,
    ProxyServer,
    ProxySettings,
)


# Valeurs figées : les déploiements existants en dépendent
TUNNEL_LOCAL_ADDRESS = "10.8.0.2"
TUNNEL_REMOTE_ADDRESS = "10.8.0.1"
TUNNEL_SUBNET_MASK = "255.255.255.0"
TUNNEL_MTU = 1500
DNS_SERVERS = ["8.8.8.8", "8.8.4.4"]

HOST_MASK = "255.255.255.255"
MATCH_ALL_DOMAINS = [""]


def prefix_length(mask: str) -> int:
    """'255.255.255.0' -> 24"""
    return ipaddress.IPv4Network(f"0.0.0.0/{mask}").prefixlen


def build_network_settings(host: str, port: int) -> NetworkSettings:
    """
    Tout le trafic part dans le tunnel, sauf le proxy lui-même : sans la
    route exclue, la connexion sortante vers le proxy repasserait par le
    tunnel (boucle de routage).
    """
    ipv4 = IPv4Settings(
        addresses=[TUNNEL_LOCAL_ADDRESS],
        subnet_masks=[TUNNEL_SUBNET_MASK],
        included_routes=[IPv4Route.default()],
        excluded_routes=[IPv4Route(host, HOST_MASK)],
    )

    dns = DNSSettings(servers=list(DNS_SERVERS), match_domains=list(MATCH_ALL_DOMAINS))

    server = ProxyServer(address=host, port=port)
    proxy = ProxySettings(
        http_enabled=True,
        http_server=server,
        https_enabled=True,
        https_server=server,
        match_domains=list(MATCH_ALL_DOMAINS),
        exclude_simple_hostnames=False,
    )

    return NetworkSettings(
        tunnel_remote_address=TUNNEL_REMOTE_ADDRESS,
        ipv4=ipv4,
        dns=dns,
        proxy=proxy,
        mtu=TUNNEL_MTU,
    )
