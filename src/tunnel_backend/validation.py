# src/tunnel_backend/validation.py
from __future__ import annotations

import re

MAX_HOST_LEN = 253

_HOSTNAME_RE = re.compile(r"[A-Za-z0-9.\-]+")
_NUMERIC_RE = re.compile(r"[0-9.]+")


def _is_ipv4(host: str) -> bool:
    octets = host.split(".")
    if len(octets) != 4:
        return False
    for octet in octets:
        # int() accepte "+1" ou " 1", on veut des chiffres ASCII uniquement
        if not octet or not octet.isascii() or not octet.isdigit():
            return False
        if int(octet) > 255:
            return False
    return True


def is_valid_host(host: str) -> bool:
    """
    IPv4 en notation pointée, ou nom d'hôte RFC 1123 (1 à 253 caractères,
    [A-Za-z0-9.-], sans '-' ni '.' en début ou en fin).

    Une adresse pointée à quatre parties numériques doit être une IPv4
    valide : "256.1.1.1" est refusé, "1.2.3" ou "123" suivent la grammaire
    des noms.
    """
    if not isinstance(host, str) or not host or len(host) > MAX_HOST_LEN:
        return False

    if _is_ipv4(host):
        return True

    if _NUMERIC_RE.fullmatch(host) and host.count(".") == 3:
        return False
    if not _HOSTNAME_RE.fullmatch(host):
        return False
    return host[0] not in "-." and host[-1] not in "-."


def is_valid_port(port: int) -> bool:
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return 1 <= port <= 65535
