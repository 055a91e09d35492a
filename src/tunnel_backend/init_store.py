# src/tunnel_backend/init_store.py

from __future__ import annotations
from pathlib import Path
from .errors import ValidationError
from .models import DEFAULT_PROXY_PORT, StoredConfig
from .state import (
    DEFAULT_DATA_DIR,
    KEY_PROXY_HOST,
    KEY_PROXY_PORT,
    KEY_TUNNEL_ACTIVE,
    STORE_FILE,
    ConfigStore,
)
from .validation import is_valid_host, is_valid_port

def init_store(
    proxy_host: str = "",
    proxy_port: int = DEFAULT_PROXY_PORT,
    data_dir: Path | None = None,
) -> StoredConfig:
    if proxy_host and not is_valid_host(proxy_host):
        raise ValidationError(f"Invalid proxy host '{proxy_host}'")
    if not is_valid_port(proxy_port):
        raise ValidationError(f"Invalid proxy port {proxy_port}")

    store = ConfigStore((data_dir or DEFAULT_DATA_DIR) / STORE_FILE)

    store.set(KEY_PROXY_HOST, proxy_host)  # peut rester vide jusqu'au set-proxy
    store.set(KEY_PROXY_PORT, proxy_port)
    store.set(KEY_TUNNEL_ACTIVE, False)

    return store.load_config()
