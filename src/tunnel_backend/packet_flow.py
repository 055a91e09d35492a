# src/tunnel_backend/packet_flow.py
from __future__ import annotations

import fcntl
import os
import select
import struct
from typing import Iterator, List, Optional

from .logging_utils import get_logger

# ioctl Linux
TUNSETIFF = 0x400454CA
IFF_TUN = 0x0001
IFF_NO_PI = 0x1000

MAX_BATCH = 64
POLL_INTERVAL = 1.0

log = get_logger("ptun.packet_flow")


class TunDevice:
    """Interface TUN (Linux, root ou CAP_NET_ADMIN requis)."""

    def __init__(self, name: str = "ptun0", mtu: int = 1500):
        self.name = name
        self.mtu = mtu
        self.fd: Optional[int] = None
        self._open()

    def _open(self) -> None:
        fd = os.open("/dev/net/tun", os.O_RDWR)
        try:
            ifreq = struct.pack("16sH", self.name.encode(), IFF_TUN | IFF_NO_PI)
            res = fcntl.ioctl(fd, TUNSETIFF, ifreq)
        except OSError:
            os.close(fd)
            raise
        # le noyau peut renommer l'interface
        self.name = struct.unpack("16sH", res)[0].rstrip(b"\x00").decode()
        os.set_blocking(fd, False)
        self.fd = fd

    def fileno(self) -> int:
        if self.fd is None:
            raise OSError("TUN interface not open")
        return self.fd

    def _drain(self, fd: int) -> List[bytes]:
        packets: List[bytes] = []
        while len(packets) < MAX_BATCH:
            try:
                packet = os.read(fd, self.mtu + 4)
            except BlockingIOError:
                break
            if not packet:
                break
            packets.append(packet)
        return packets

    def batches(self) -> Iterator[List[bytes]]:
        """
        Suite paresseuse et sans fin de lots de paquets sortants. S'arrête
        uniquement quand l'interface est fermée.
        """
        while self.fd is not None:
            fd = self.fd
            try:
                readable, _, _ = select.select([fd], [], [], POLL_INTERVAL)
                if not readable:
                    continue
                packets = self._drain(fd)
            except (OSError, ValueError):
                # descripteur fermé pendant l'attente
                if self.fd is None:
                    return
                raise
            if packets:
                yield packets

    def close(self) -> None:
        if self.fd is not None:
            fd, self.fd = self.fd, None
            try:
                os.close(fd)
            except OSError as e:
                log.warning("error closing TUN device", extra={"interface": self.name, "error": str(e)})
