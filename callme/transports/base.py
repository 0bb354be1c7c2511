"""Base transport interface for CallMe media sockets.

Transports handle the raw I/O of one carrier media connection. The socket
is already open when a transport is handed to the media bridge, so there is
no connect step.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class TransportClosed(Exception):
    """Raised by :meth:`BaseTransport.recv` once the peer has gone away."""


class BaseTransport(ABC):
    """Abstract base class for an open media connection."""

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send data over the transport.

        Raises:
            TransportClosed: If the connection is closed.
        """
        ...

    @abstractmethod
    async def recv(self) -> bytes | str:
        """Receive the next message from the transport.

        Raises:
            TransportClosed: If the connection is closed.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport connection gracefully."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently connected."""
        ...
