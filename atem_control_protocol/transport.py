#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Datagram transports used by an AtemSession to exchange frames with a switcher.

A transport can:

  1. Open a UDP socket bound to a local port
  2. Send a raw frame to a remote address
  3. Return, without blocking, any datagrams that have arrived since the last call

Two implementations are provided: UdpTransport, a plain non-blocking socket for
synchronous callers, and AsyncioUdpTransport, which receives through an asyncio
datagram endpoint for use with AtemClient.
"""

from __future__ import annotations

import asyncio
import collections
import socket
import sys
from abc import ABC, abstractmethod

from atem_control_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import AtemError
from .constants import MAX_PACKET_SIZE
from .util import get_preferred_local_ip_address

MAX_DATAGRAMS_PER_RECEIVE = 64
"""Upper bound on the number of datagrams returned by one call to receive()."""

MAX_QUEUE_SIZE = 1000
"""Upper bound on datagrams buffered by AsyncioUdpTransport between calls to receive()."""

class AtemTransport(ABC):
    """The datagram transport interface consumed by AtemSession."""

    @abstractmethod
    def open(self, local_port: int) -> None:
        """Binds the transport to a local port. Raises OSError on failure."""
        raise NotImplementedError()

    async def start(self) -> None:
        """Called by AtemClient from its event loop after open(). Transports serviced by the
           event loop attach themselves here."""
        pass

    @abstractmethod
    def send(self, data: bytes, addr: HostAndPort) -> None:
        """Sends one datagram. Raises OSError on failure."""
        raise NotImplementedError()

    @abstractmethod
    def receive(self) -> List[bytes]:
        """Returns the complete datagrams received since the last call, possibly none. Never blocks."""
        raise NotImplementedError()

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError()

    @property
    @abstractmethod
    def is_open(self) -> bool:
        raise NotImplementedError()

class UdpTransport(AtemTransport):
    """A UDP transport over a single non-blocking socket."""

    bind_address: Optional[str]
    """The local IP address to bind to. If None, all interfaces are bound."""

    max_datagrams_per_receive: int

    sock: Optional[socket.socket] = None
    """The bound socket, or None if not open."""

    def __init__(self, bind_address: Optional[str]=None, max_datagrams_per_receive: int=MAX_DATAGRAMS_PER_RECEIVE):
        self.bind_address = bind_address
        self.max_datagrams_per_receive = max_datagrams_per_receive

    def _create_socket(self, local_port: int) -> socket.socket:
        if self.sock is not None:
            raise AtemError(f"Attempt to reopen {self}")
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if sys.platform not in ( 'win32', 'cygwin' ):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(('' if self.bind_address is None else self.bind_address, local_port))
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return sock

    def open(self, local_port: int) -> None:
        self.sock = self._create_socket(local_port)
        logger.debug(f"Opened {self}")

    @property
    def is_open(self) -> bool:
        return self.sock is not None

    @property
    def unicast_addr(self) -> Optional[HostAndPort]:
        """The local address and port as it should be displayed. When bound to all interfaces,
           the preferred local IP address is reported."""
        if self.sock is None:
            return None
        host, port = self.sock.getsockname()[:2]
        if host in ('', '0.0.0.0'):
            host = get_preferred_local_ip_address() or host
        return (host, port)

    def send(self, data: bytes, addr: HostAndPort) -> None:
        if self.sock is None:
            raise OSError(f"{self} is not open")
        self.sock.sendto(data, addr)

    def receive(self) -> List[bytes]:
        result: List[bytes] = []
        if self.sock is None:
            return result
        while len(result) < self.max_datagrams_per_receive:
            try:
                data, _ = self.sock.recvfrom(MAX_PACKET_SIZE)
            except (BlockingIOError, InterruptedError):
                break
            except OSError as e:
                # e.g., ICMP port unreachable reported on a later recvfrom
                logger.debug(f"Receive error on {self}: {e}")
                break
            result.append(data)
        return result

    def close(self) -> None:
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError as e:
                logger.error(f"Error closing socket on {self}: {e}")
            self.sock = None

    def __str__(self) -> str:
        return f"UdpTransport({self.unicast_addr})"

    def __repr__(self) -> str:
        return str(self)

class _AtemDatagramProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio transport and AsyncioUdpTransport."""

    owner: AsyncioUdpTransport

    def __init__(self, owner: AsyncioUdpTransport):
        self.owner = owner

    def connection_made(self, transport: asyncio.BaseTransport):
        """Called when a connection is made."""
        # asyncio datagram transports do not inherit from asyncio.DatagramTransport,
        # though they implement the same interface.
        self.owner.transport = transport # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Called when some datagram is received."""
        self.owner.on_datagram(data, addr)

    def error_received(self, exc: Exception):
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)
        """
        logger.info(f"Error received from transport {self.owner}: {exc}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        logger.debug(f"Connection to transport lost on {self.owner}, exc={exc}")
        self.owner.transport = None

class AsyncioUdpTransport(UdpTransport):
    """A UDP transport whose socket is serviced by an asyncio event loop.

    open() creates and binds the socket; start() must then be awaited from the event loop
    that will call receive(). Received datagrams are queued until receive() drains them.
    """

    transport: Optional[asyncio.DatagramTransport] = None
    """The asyncio transport, set once start() has attached the socket to the event loop."""

    queue: Deque[bytes]

    def __init__(self, bind_address: Optional[str]=None, max_queue_size: int=MAX_QUEUE_SIZE):
        super().__init__(bind_address=bind_address)
        self.queue = collections.deque(maxlen=max_queue_size)

    async def start(self) -> None:
        if self.sock is None:
            raise AtemError(f"{self} must be opened before it is started")
        loop = asyncio.get_running_loop()
        untyped_transport, _ = await loop.create_datagram_endpoint(
            lambda: _AtemDatagramProtocol(self),
            sock=self.sock
          )
        self.transport = untyped_transport # type: ignore[assignment]
        logger.debug(f"Created datagram endpoint for {self}")

    def on_datagram(self, data: bytes, addr: HostAndPort) -> None:
        if self.queue.maxlen is not None and len(self.queue) >= self.queue.maxlen:
            logger.warning(f"Queue full, dropping oldest datagram on {self}")
        self.queue.append(data)

    def send(self, data: bytes, addr: HostAndPort) -> None:
        if self.transport is None:
            raise OSError(f"{self} is not started")
        self.transport.sendto(data, addr)

    def receive(self) -> List[bytes]:
        result: List[bytes] = []
        while len(self.queue) > 0:
            result.append(self.queue.popleft())
        return result

    def close(self) -> None:
        if self.transport is not None:
            try:
                self.transport.close()
            except BaseException as e:
                logger.error(f"Error closing transport on {self}: {e}")
            self.transport = None
        # The asyncio transport closes the socket itself, but sock may never have been attached.
        super().close()

    def __str__(self) -> str:
        return f"AsyncioUdpTransport({self.unicast_addr})"
