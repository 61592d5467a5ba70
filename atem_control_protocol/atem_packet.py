#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Encoding and decoding of the frames exchanged with an ATEM switcher.

Every frame begins with a 12-byte header:

    byte 0 bits [7:3]    flags (see AtemPacketFlags)
    bytes 0-1 [10:0]     total frame length, including the header (big-endian)
    bytes 2-3            session id
    bytes 4-5            acknowledged sequence (ACK frames only)
    bytes 6-7            "from" sequence (retransmit request frames only)
    bytes 8-9            reserved
    bytes 10-11          sequence of the frame (all frames other than ACKs)

The payload that follows the header is a sequence of zero or more command blocks:

    bytes 0-1            block length, including this 8-byte sub-header (big-endian)
    bytes 2-3            reserved (zero)
    bytes 4-7            4-character ASCII tag, e.g., "PrgI"
    bytes 8..length-1    tag-specific payload
"""

from __future__ import annotations

import struct
from enum import IntFlag

from atem_control_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import AtemPacketError
from .constants import (
    HEADER_SIZE,
    COMMAND_HEADER_SIZE,
    MAX_PACKET_LENGTH,
    HANDSHAKE_PACKET,
  )

_HEADER_STRUCT = struct.Struct('>HHHHHH')
_COMMAND_HEADER_STRUCT = struct.Struct('>HH4s')
_U32_STRUCT = struct.Struct('>I')

FLAGS_SHIFT = 11
"""Bit offset of the flags within the first 16-bit word of the header."""

class AtemPacketFlags(IntFlag):
    """The flag bits carried in the top 5 bits of the first header byte."""
    NONE = 0x00
    ACK_REQUEST = 0x01
    NEW_SESSION_ID = 0x02
    IS_RETRANSMIT = 0x04
    RETRANSMIT_REQUEST = 0x08
    ACK_REPLY = 0x10

class AtemPacketHeader:
    """The decoded 12-byte header of a frame."""

    flags: AtemPacketFlags
    """The flag bits of the frame"""

    length: int
    """The total frame length declared by the header (11 bits), including the header itself"""

    session_id: int
    """The session id (bytes 2-3)"""

    acked_sequence: int
    """The sequence being acknowledged; only meaningful on ACK frames (bytes 4-5)"""

    from_sequence: int
    """The first sequence to retransmit; only meaningful on retransmit requests (bytes 6-7)"""

    reserved: int
    """Bytes 8-9, carried through unchanged"""

    sequence: int
    """The sequence of this frame (bytes 10-11)"""

    def __init__(
            self,
            flags: Union[AtemPacketFlags, int]=AtemPacketFlags.NONE,
            length: int=HEADER_SIZE,
            session_id: int=0,
            acked_sequence: int=0,
            from_sequence: int=0,
            reserved: int=0,
            sequence: int=0,
          ):
        self.flags = AtemPacketFlags(flags & 0x1F)
        self.length = length
        self.session_id = session_id
        self.acked_sequence = acked_sequence
        self.from_sequence = from_sequence
        self.reserved = reserved
        self.sequence = sequence

    @classmethod
    def decode(cls, data: Union[bytes, bytearray, memoryview]) -> AtemPacketHeader:
        """Decodes the header at the start of data. Raises AtemPacketError if fewer than 12 bytes are available."""
        if len(data) < HEADER_SIZE:
            raise AtemPacketError(f"Frame too short for header ({len(data)} bytes, need at least {HEADER_SIZE})")
        word0, session_id, acked_sequence, from_sequence, reserved, sequence = _HEADER_STRUCT.unpack_from(data, 0)
        return cls(
            flags=word0 >> FLAGS_SHIFT,
            length=word0 & MAX_PACKET_LENGTH,
            session_id=session_id,
            acked_sequence=acked_sequence,
            from_sequence=from_sequence,
            reserved=reserved,
            sequence=sequence,
          )

    def encode(self) -> bytes:
        """Encodes the header into its 12-byte wire form."""
        if not 0 <= self.length <= MAX_PACKET_LENGTH:
            raise AtemPacketError(f"Frame length {self.length} does not fit in the 11-bit length field")
        word0 = (int(self.flags) << FLAGS_SHIFT) | self.length
        try:
            return _HEADER_STRUCT.pack(
                word0,
                self.session_id,
                self.acked_sequence,
                self.from_sequence,
                self.reserved,
                self.sequence,
              )
        except struct.error as e:
            raise AtemPacketError(f"Cannot encode {self}: {e}") from e

    def has_flag(self, flag: AtemPacketFlags) -> bool:
        return (self.flags & flag) != 0

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, AtemPacketHeader):
            return False
        return self.encode() == other.encode()

    def __str__(self) -> str:
        return (f"AtemPacketHeader(flags={self.flags!r}, length={self.length}, session_id=0x{self.session_id:04x}, "
                f"acked={self.acked_sequence}, from={self.from_sequence}, sequence={self.sequence})")

    def __repr__(self) -> str:
        return str(self)

class AtemCommandBlock:
    """A tagged, length-prefixed unit of control data carried in a frame payload."""

    tag: str
    """The 4-character ASCII tag, e.g., "PrgI" """

    payload: bytes
    """The tag-specific payload, excluding the 8-byte sub-header"""

    def __init__(self, tag: str, payload: Optional[bytes]=None):
        self.tag = tag
        self.payload = b'' if payload is None else bytes(payload)

    @property
    def length(self) -> int:
        """The declared block length, including the 8-byte sub-header"""
        return COMMAND_HEADER_SIZE + len(self.payload)

    def encode(self) -> bytes:
        """Encodes the block into its wire form."""
        try:
            tag_bytes = self.tag.encode('ascii')
        except UnicodeEncodeError as e:
            raise AtemPacketError(f"Command tag is not ASCII: {self.tag!r}") from e
        if len(tag_bytes) != 4:
            raise AtemPacketError(f"Command tag must be 4 characters: {self.tag!r}")
        if self.length > 0xFFFF:
            raise AtemPacketError(f"Command block too long: {self.length} bytes")
        return _COMMAND_HEADER_STRUCT.pack(self.length, 0, tag_bytes) + self.payload

    @classmethod
    def decode(cls, data: Union[bytes, bytearray, memoryview]) -> AtemCommandBlock:
        """Decodes exactly one block from the start of data. Raises AtemPacketError on malformed input.

           Use iter_command_blocks() to walk a payload that may contain malformed blocks."""
        if len(data) < COMMAND_HEADER_SIZE:
            raise AtemPacketError(f"Command block too short ({len(data)} bytes, need at least {COMMAND_HEADER_SIZE})")
        length, _, tag_bytes = _COMMAND_HEADER_STRUCT.unpack_from(data, 0)
        if length < COMMAND_HEADER_SIZE:
            raise AtemPacketError(f"Command block declares length {length}, below the {COMMAND_HEADER_SIZE}-byte minimum")
        if length > len(data):
            raise AtemPacketError(f"Command block declares length {length} but only {len(data)} bytes are available")
        return cls(_decode_tag(tag_bytes), bytes(data[COMMAND_HEADER_SIZE:length]))

    @classmethod
    def create_u32(cls, tag: str, value: int) -> AtemCommandBlock:
        """Creates a block whose payload is a single 4-byte big-endian value."""
        try:
            payload = _U32_STRUCT.pack(value)
        except struct.error as e:
            raise AtemPacketError(f"Value {value} does not fit in a 4-byte payload for '{tag}'") from e
        return cls(tag, payload)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, AtemCommandBlock):
            return False
        return self.tag == other.tag and self.payload == other.payload

    def __str__(self) -> str:
        return f"AtemCommandBlock('{self.tag}', payload={self.payload.hex()})"

    def __repr__(self) -> str:
        return str(self)

def _decode_tag(tag_bytes: bytes) -> str:
    return tag_bytes.decode('ascii', errors='replace')

def iter_command_blocks(data: Union[bytes, bytearray, memoryview]) -> Iterator[AtemCommandBlock]:
    """Yields the command blocks in a frame payload, in order.

    Iteration stops, without raising, when fewer than 8 bytes remain, when a block declares a length
    below 8, or when a block's declared length would run past the end of the payload.
    """
    view = memoryview(bytes(data))
    offset = 0
    total = len(view)
    while total - offset >= COMMAND_HEADER_SIZE:
        length, _, tag_bytes = _COMMAND_HEADER_STRUCT.unpack_from(view, offset)
        if length < COMMAND_HEADER_SIZE:
            logger.debug(f"Command block at offset {offset} declares length {length}; ignoring remainder of payload")
            break
        if offset + length > total:
            logger.debug(f"Command block at offset {offset} declares length {length}, overrunning {total}-byte payload; ignoring remainder")
            break
        yield AtemCommandBlock(_decode_tag(tag_bytes), bytes(view[offset + COMMAND_HEADER_SIZE:offset + length]))
        offset += length

class AtemPacket:
    """Wrapper for a raw frame exchanged with the switcher.

    Provides decoding of the header, access to the payload and its command blocks,
    and constructors for each kind of frame this client sends.
    """

    _raw_data: bytes
    """The raw UDP datagram contents"""

    _header: AtemPacketHeader
    """The decoded header"""

    def __init__(self, raw_data: Union[bytes, bytearray, memoryview]):
        self._raw_data = bytes(raw_data)
        self._header = AtemPacketHeader.decode(self._raw_data)

    @classmethod
    def decode(cls, raw_data: Union[bytes, bytearray, memoryview]) -> AtemPacket:
        """Decodes a received datagram. Raises AtemPacketError if it is shorter than the header.

        A mismatch between the declared and actual length is logged but is not an error."""
        packet = cls(raw_data)
        if not packet.length_matches:
            logger.warning(f"Frame length mismatch: header says {packet.header.length}, actually received {len(packet.raw_data)}")
        return packet

    @property
    def raw_data(self) -> bytes:
        """The raw UDP datagram contents"""
        return self._raw_data

    @property
    def header(self) -> AtemPacketHeader:
        return self._header

    @property
    def flags(self) -> AtemPacketFlags:
        return self._header.flags

    @property
    def session_id(self) -> int:
        return self._header.session_id

    @property
    def sequence(self) -> int:
        return self._header.sequence

    @property
    def acked_sequence(self) -> int:
        return self._header.acked_sequence

    @property
    def from_sequence(self) -> int:
        return self._header.from_sequence

    @property
    def payload(self) -> bytes:
        """The bytes following the 12-byte header. May be empty."""
        return self._raw_data[HEADER_SIZE:]

    @property
    def has_payload(self) -> bool:
        return len(self._raw_data) > HEADER_SIZE

    @property
    def length_matches(self) -> bool:
        """True iff the declared length equals the number of bytes actually present."""
        return self._header.length == len(self._raw_data)

    def has_flag(self, flag: AtemPacketFlags) -> bool:
        return self._header.has_flag(flag)

    @property
    def is_ack_request(self) -> bool:
        return self.has_flag(AtemPacketFlags.ACK_REQUEST)

    @property
    def is_new_session(self) -> bool:
        return self.has_flag(AtemPacketFlags.NEW_SESSION_ID)

    @property
    def is_retransmit(self) -> bool:
        return self.has_flag(AtemPacketFlags.IS_RETRANSMIT)

    @property
    def is_retransmit_request(self) -> bool:
        return self.has_flag(AtemPacketFlags.RETRANSMIT_REQUEST)

    @property
    def is_ack_reply(self) -> bool:
        return self.has_flag(AtemPacketFlags.ACK_REPLY)

    def iter_commands(self) -> Iterator[AtemCommandBlock]:
        """Yields the well-formed command blocks in the payload. See iter_command_blocks()."""
        return iter_command_blocks(self.payload)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, AtemPacket):
            return False
        return self._raw_data == other._raw_data

    def __len__(self) -> int:
        return len(self._raw_data)

    def __str__(self) -> str:
        return f"AtemPacket({self._raw_data.hex(' ')})"

    def __repr__(self) -> str:
        return str(self)

    @classmethod
    def create(
            cls,
            flags: Union[AtemPacketFlags, int],
            session_id: int,
            sequence: int=0,
            payload: Optional[bytes]=None,
            acked_sequence: int=0,
            from_sequence: int=0,
          ) -> AtemPacket:
        """Creates a frame with a header whose length field covers the payload."""
        if payload is None:
            payload = b''
        header = AtemPacketHeader(
            flags=flags,
            length=HEADER_SIZE + len(payload),
            session_id=session_id,
            acked_sequence=acked_sequence,
            from_sequence=from_sequence,
            sequence=sequence,
          )
        return cls(header.encode() + payload)

    @classmethod
    def create_handshake(cls) -> AtemPacket:
        """Returns the literal 20-byte frame that opens a session."""
        return cls(HANDSHAKE_PACKET)

    @classmethod
    def create_ack(cls, session_id: int, acked_sequence: int) -> AtemPacket:
        """Creates an ACK frame. The acknowledged sequence goes at offset 4; offsets 6-11 are zero."""
        return cls.create(AtemPacketFlags.ACK_REPLY, session_id, acked_sequence=acked_sequence)

    @classmethod
    def create_heartbeat(cls, session_id: int, sequence: int) -> AtemPacket:
        """Creates a header-only reliable frame used to keep the session alive."""
        return cls.create(AtemPacketFlags.ACK_REQUEST, session_id, sequence=sequence)

    @classmethod
    def create_command(cls, session_id: int, sequence: int, blocks: Iterable[AtemCommandBlock]) -> AtemPacket:
        """Creates a reliable frame carrying one or more command blocks."""
        payload = b''.join(block.encode() for block in blocks)
        return cls.create(AtemPacketFlags.ACK_REQUEST, session_id, sequence=sequence, payload=payload)

    @classmethod
    def create_retransmit_request(cls, session_id: int, from_sequence: int, sequence: int) -> AtemPacket:
        """Creates the frame a peer sends to ask for everything from from_sequence onward."""
        return cls.create(AtemPacketFlags.RETRANSMIT_REQUEST, session_id, sequence=sequence, from_sequence=from_sequence)
