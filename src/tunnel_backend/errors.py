# src/tunnel_backend/errors.py
from __future__ import annotations

from typing import Optional


class TunnelError(Exception):
    """Base de toutes les erreurs du tunnel."""


class ValidationError(TunnelError):
    """Host ou port invalide (controller uniquement, aucune I/O tentée)."""


class PersistenceError(TunnelError):
    """Sauvegarde ou rechargement du descripteur impossible."""


class SessionError(TunnelError):
    """Démarrage / arrêt du runtime refusé."""


class SettingsApplyError(TunnelError):
    """Les réglages réseau ont été rejetés par le système."""


class IPCError(TunnelError):
    """Message de contrôle illisible ou canal injoignable."""


class ConfigurationError(TunnelError):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
