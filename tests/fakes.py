#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""In-memory stand-ins for the network and the clock, and builders for frames a switcher would send."""

from __future__ import annotations

import collections
import struct

from atem_control_protocol.internal_types import *
from atem_control_protocol import AtemTransport, AtemPacket, AtemPacketFlags, AtemCommandBlock

SWITCHER_HOST = '192.168.10.240'
SESSION_ID = 0x1234

class FakeClock:
    now: float

    def __init__(self, now: float=1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)

class FakeTransport(AtemTransport):
    """Records every datagram sent, and returns injected datagrams from receive()."""

    local_port: Optional[int] = None
    opened: bool = False
    fail_sends: bool = False
    close_count: int = 0

    sent: List[Tuple[bytes, HostAndPort]]
    inbox: Deque[bytes]

    def __init__(self):
        self.sent = []
        self.inbox = collections.deque()

    def open(self, local_port: int) -> None:
        self.local_port = local_port
        self.opened = True

    def send(self, data: bytes, addr: HostAndPort) -> None:
        if self.fail_sends:
            raise OSError("Network is unreachable")
        self.sent.append((bytes(data), addr))

    def receive(self) -> List[bytes]:
        result = list(self.inbox)
        self.inbox.clear()
        return result

    def close(self) -> None:
        self.opened = False
        self.close_count += 1

    @property
    def is_open(self) -> bool:
        return self.opened

    def inject(self, data: Union[bytes, AtemPacket]) -> None:
        self.inbox.append(data.raw_data if isinstance(data, AtemPacket) else data)

    @property
    def sent_packets(self) -> List[AtemPacket]:
        return [AtemPacket(data) for data, _ in self.sent]

    def clear_sent(self) -> None:
        self.sent.clear()

def input_block(tag: str, input_id: int, mix_effect: int=0) -> AtemCommandBlock:
    """A PrgI/PrvI block as reported by a switcher: mix effect (u8), padding, input id (u16)."""
    return AtemCommandBlock(tag, struct.pack('>BxH', mix_effect, input_id))

def handshake_response(session_id: int=0x1234, sequence: int=0) -> AtemPacket:
    return AtemPacket.create(AtemPacketFlags.NEW_SESSION_ID, session_id, sequence=sequence, payload=bytes(8))

def switcher_frame(
        session_id: int,
        sequence: int,
        blocks: Optional[Iterable[AtemCommandBlock]]=None,
        flags: Union[AtemPacketFlags, int]=AtemPacketFlags.ACK_REQUEST,
      ) -> AtemPacket:
    payload = b'' if blocks is None else b''.join(block.encode() for block in blocks)
    return AtemPacket.create(flags, session_id, sequence=sequence, payload=payload)
