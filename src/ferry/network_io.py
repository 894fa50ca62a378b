import socket
import logging
from typing import Optional, Tuple

from .protocol import MAX_DATAGRAM

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


class ChannelTimeout(Exception):
    """No datagram arrived within the channel's receive timeout."""


class UdpChannel:
    """
    Thin UDP endpoint carrying one transfer.

    Once a peer is pinned the socket is connected to it, so the kernel drops
    datagrams from any other origin and plain send() reaches the peer.
    """

    def __init__(self, sock: socket.socket, peer: Optional[Address] = None):
        self.socket = sock
        self.peer: Optional[Address] = None
        self.closed = False
        if peer is not None:
            self.pin(peer)

    @classmethod
    def open(
        cls,
        host: str = "0.0.0.0",
        port: int = 0,
        peer: Optional[Address] = None,
        timeout: Optional[float] = None,
    ) -> "UdpChannel":
        """Bind a fresh socket (an ephemeral port by default)."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 1024 * 1024)
            sock.bind((host, port))
            sock.settimeout(timeout)
            channel = cls(sock, peer)
        except OSError:
            sock.close()
            raise
        logger.debug("Opened channel on %s (peer %s)", channel.address, peer)
        return channel

    # ------------------------------------------------------------------

    @property
    def address(self) -> Address:
        return self.socket.getsockname()

    def settimeout(self, timeout: Optional[float]) -> None:
        self.socket.settimeout(timeout)

    def pin(self, peer: Address) -> None:
        """Restrict the channel to one peer."""
        self.socket.connect(peer)
        self.peer = peer
        logger.debug("Channel %s pinned to %s", self.address, peer)

    # ------------------------------------------------------------------

    def send(self, data: bytes) -> None:
        """Send one datagram to the pinned peer."""
        if self.peer is None:
            raise RuntimeError("Channel has no pinned peer")
        self.socket.send(data)

    def send_to(self, data: bytes, addr: Address) -> None:
        self.socket.sendto(data, addr)

    def recv(self, bufsize: int = MAX_DATAGRAM) -> bytes:
        """
        Block for one datagram.

        The first datagram on an unpinned channel pins its origin.
        Raises ChannelTimeout when the receive timeout expires.
        """
        try:
            data, addr = self.socket.recvfrom(bufsize)
        except socket.timeout:
            raise ChannelTimeout(
                f"No datagram within {self.socket.gettimeout()}s on {self.address}"
            ) from None

        if self.peer is None:
            self.pin(addr)
        return data

    # ------------------------------------------------------------------

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.socket.close()

    def __enter__(self) -> "UdpChannel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
