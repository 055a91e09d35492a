"""
Control channel wire models.

Request:   {"command": "get-stats" | "update-proxy", "payload": <base64> | null}
Stats:     {"bytesIn": int, "bytesOut": int, "uptime": float}
Update:    {"host": str, "port": int}
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from .errors import IPCError


class Command(str, Enum):
    GET_STATS = "get-stats"
    UPDATE_PROXY = "update-proxy"


class TunnelMessage(BaseModel):
    command: Command
    payload: Optional[bytes] = None  # base64 sur le fil

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value):
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError("payload is not valid base64") from e
        return value

    @field_serializer("payload")
    def _encode_payload(self, value: Optional[bytes]) -> Optional[str]:
        if value is None:
            return None
        return base64.b64encode(value).decode("ascii")


class TunnelStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bytes_in: int = Field(alias="bytesIn", ge=0)
    bytes_out: int = Field(alias="bytesOut", ge=0)
    uptime: float = Field(ge=0)


class ProxyUpdate(BaseModel):
    host: str
    port: int


def encode_message(message: TunnelMessage) -> bytes:
    return message.model_dump_json().encode("utf-8")


def decode_message(data: bytes) -> TunnelMessage:
    try:
        return TunnelMessage.model_validate_json(data)
    except ValidationError as e:
        raise IPCError(f"Malformed control message: {e.error_count()} error(s)") from e


def encode_stats(stats: TunnelStats) -> bytes:
    return stats.model_dump_json(by_alias=True).encode("utf-8")


def decode_stats(data: Optional[bytes]) -> Optional[TunnelStats]:
    """None si pas de réponse ou réponse illisible : l'appelant ne change rien."""
    if not data:
        return None
    try:
        return TunnelStats.model_validate_json(data)
    except ValidationError:
        return None


def make_update_message(host: str, port: int) -> TunnelMessage:
    payload = ProxyUpdate(host=host, port=port).model_dump_json().encode("utf-8")
    return TunnelMessage(command=Command.UPDATE_PROXY, payload=payload)


def decode_update(payload: Optional[bytes]) -> ProxyUpdate:
    if payload is None:
        raise IPCError("update-proxy without payload")
    try:
        return ProxyUpdate.model_validate_json(payload)
    except ValidationError as e:
        raise IPCError(f"Malformed proxy update: {e.error_count()} error(s)") from e
