# src/tunnel_backend/state.py
from __future__ import annotations
import fcntl
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import PersistenceError
from .logging_utils import get_logger
from .models import StoredConfig, TunnelDescriptor


DEFAULT_DATA_DIR = Path(os.environ.get("PTUN_DATA_DIR", "data"))
STORE_FILE = "store.json"
DESCRIPTOR_FILE = "tunnel.json"

# Clés partagées entre le controller et le runtime
KEY_PROXY_HOST = "proxy_host"
KEY_PROXY_PORT = "proxy_port"
KEY_TUNNEL_ACTIVE = "tunnel_active"
KEY_TUNNEL_START_TIME = "tunnel_start_time"
KEY_TUNNEL_LAST_ERROR = "tunnel_last_error"

Watcher = Callable[[str, Any], None]

log = get_logger("ptun.store")


class ConfigStore:
    """
    Stockage clé/valeur durable partagé par les deux processus.

    Chaque lecture relit le fichier : une écriture faite par l'autre
    processus devient visible au prochain get(), sans garantie de délai.
    Les watchers ne voient que les écritures faites par cette instance.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or DEFAULT_DATA_DIR / STORE_FILE
        self._lock = threading.Lock()
        self._watchers: Dict[str, List[Watcher]] = {}

    # ---------- Accès bas niveau ----------

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_name(self.path.name + ".lock")
        with self._lock, lock_path.open("a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _read(self, strict: bool = False) -> Dict[str, Any]:
        """
        strict=False : lecture tolérante, un fichier illisible vaut {}.
        strict=True (avant écriture) : PersistenceError, pour ne pas écraser
        les autres clés d'un fichier corrompu.
        """
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON value is not an object")
        except (OSError, ValueError) as e:
            if strict:
                raise PersistenceError(f"Store unreadable, not overwriting {self.path}: {e}") from e
            log.warning("store unreadable, using empty values", extra={"path": str(self.path), "error": str(e)})
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    # ---------- API publique ----------

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def get_str(self, key: str) -> str:
        value = self.get(key)
        return value if isinstance(value, str) else ""

    def get_int(self, key: str) -> int:
        value = self.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        return int(value)

    def get_float(self, key: str) -> float:
        value = self.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return float(value)

    def get_bool(self, key: str) -> bool:
        return self.get(key) is True

    def set(self, key: str, value: Any) -> None:
        try:
            with self._file_lock():
                data = self._read(strict=True)
                data[key] = value
                self._write(data)
        except OSError as e:
            raise PersistenceError(f"Cannot write store {self.path}: {e}") from e
        self._notify(key, value)

    def remove(self, key: str) -> None:
        try:
            with self._file_lock():
                data = self._read(strict=True)
                if key not in data:
                    return
                del data[key]
                self._write(data)
        except OSError as e:
            raise PersistenceError(f"Cannot write store {self.path}: {e}") from e
        self._notify(key, None)

    def watch(self, key: str, callback: Watcher) -> Callable[[], None]:
        """Enregistre un callback(key, value). Retourne la fonction de désabonnement."""
        self._watchers.setdefault(key, []).append(callback)

        def unwatch() -> None:
            callbacks = self._watchers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unwatch

    def _notify(self, key: str, value: Any) -> None:
        for callback in list(self._watchers.get(key, [])):
            callback(key, value)

    # ---------- Vue typée ----------

    def load_config(self) -> StoredConfig:
        data = self._read()
        port = data.get(KEY_PROXY_PORT)
        start = data.get(KEY_TUNNEL_START_TIME)
        return StoredConfig(
            proxy_host=data.get(KEY_PROXY_HOST) if isinstance(data.get(KEY_PROXY_HOST), str) else "",
            proxy_port=port if isinstance(port, int) and not isinstance(port, bool) else 0,
            active=data.get(KEY_TUNNEL_ACTIVE) is True,
            start_time=float(start) if isinstance(start, (int, float)) and not isinstance(start, bool) else 0.0,
        )


# ---------- Descripteur du tunnel ----------

def descriptor_to_dict(descriptor: TunnelDescriptor) -> dict:
    return {
        "provider_configuration": dict(descriptor.provider_configuration),
        "server_address": descriptor.server_address,
        "localized_description": descriptor.localized_description,
        "enabled": descriptor.enabled,
        "disconnect_on_sleep": descriptor.disconnect_on_sleep,
    }


def dict_to_descriptor(data: dict) -> TunnelDescriptor:
    return TunnelDescriptor(
        provider_configuration=dict(data["provider_configuration"]),
        server_address=data["server_address"],
        localized_description=data.get("localized_description", "Proxy Tunnel"),
        enabled=data.get("enabled", True),
        disconnect_on_sleep=data.get("disconnect_on_sleep", False),
    )


def load_descriptor(path: Path) -> Optional[TunnelDescriptor]:
    """None si aucun descripteur n'a encore été enregistré."""
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return dict_to_descriptor(data)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise PersistenceError(f"Cannot read tunnel descriptor {path}: {e}") from e


def save_descriptor(descriptor: TunnelDescriptor, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(descriptor_to_dict(descriptor), f, indent=2)
    except OSError as e:
        raise PersistenceError(f"Cannot save tunnel descriptor {path}: {e}") from e
