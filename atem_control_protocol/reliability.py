#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Reliability layer on top of the unreliable UDP transport.

  1. Assigns a local sequence number to every reliable frame sent to the switcher
  2. Keeps a copy of recently sent reliable frames in a fixed-capacity ring buffer
  3. Acknowledges inbound frames from the switcher
  4. Services retransmit requests from the switcher

Retransmission is driven exclusively by the peer: a retransmit request asks for every
frame from a given sequence onward. Nothing is ever resent speculatively.
"""

from __future__ import annotations

import time

from atem_control_protocol.internal_types import *
from .pkg_logging import logger
from .constants import (
    BOOTSTRAP_SEQUENCE,
    DEFAULT_RETRANSMIT_BUFFER_SIZE,
    MAX_PACKET_SIZE,
  )
from .atem_packet import AtemPacket

SEQUENCE_MASK = 0xFFFF

FrameSender = Callable[[bytes], bool]
"""Sends one raw frame to the switcher. Returns False if the send failed (the failure has already been logged)."""

class StoredFrame:
    """A copy of a reliable frame retained for retransmission."""

    sequence: int
    """The local sequence assigned to the frame"""

    raw_data: bytes
    """The exact bytes that were sent"""

    timestamp: float
    """The clock time at which the frame was sent"""

    def __init__(self, sequence: int, raw_data: bytes, timestamp: float):
        self.sequence = sequence
        self.raw_data = raw_data
        self.timestamp = timestamp

    @property
    def length(self) -> int:
        return len(self.raw_data)

    def __str__(self) -> str:
        return f"StoredFrame(sequence={self.sequence}, length={self.length})"

    def __repr__(self) -> str:
        return str(self)

class RetransmitBuffer:
    """A pre-allocated ring of StoredFrame slots. Storing into a full ring overwrites the oldest frame."""

    _slots: List[Optional[StoredFrame]]
    _next_index: int = 0

    def __init__(self, capacity: int=DEFAULT_RETRANSMIT_BUFFER_SIZE):
        if capacity <= 0:
            raise ValueError(f"Retransmit buffer capacity must be positive: {capacity}")
        self._slots = [None] * capacity
        self._next_index = 0

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def __len__(self) -> int:
        return sum(1 for slot in self._slots if slot is not None)

    def __iter__(self) -> Iterator[StoredFrame]:
        """Iterates the retained frames in storage (slot) order."""
        for slot in self._slots:
            if slot is not None:
                yield slot

    def store(self, frame: StoredFrame) -> None:
        if frame.length > MAX_PACKET_SIZE:
            logger.warning(f"Not storing {frame} for retransmission; exceeds {MAX_PACKET_SIZE} bytes")
            return
        index = self._next_index
        self._slots[index] = frame
        self._next_index = (index + 1) % len(self._slots)
        logger.debug(f"Stored frame {frame.sequence} in slot {index} ({frame.length} bytes)")

    def find(self, sequence: int) -> Optional[StoredFrame]:
        for frame in self:
            if frame.sequence == sequence:
                return frame
        return None

    def frames_from(self, sequence: int) -> List[StoredFrame]:
        """Returns the retained frames with a sequence >= sequence, in ascending sequence order."""
        return sorted((frame for frame in self if frame.sequence >= sequence), key=lambda f: f.sequence)

    @property
    def oldest_sequence(self) -> Optional[int]:
        sequences = [frame.sequence for frame in self]
        return min(sequences) if len(sequences) > 0 else None

    def clear(self) -> None:
        self._slots = [None] * len(self._slots)
        self._next_index = 0

class AtemReliability:
    """Sequence numbering, acknowledgment, and retransmission for one session."""

    local_sequence: int
    """The sequence that will be assigned to the next reliable frame"""

    remote_sequence: int = 0
    """The highest sequence observed from the switcher. Never decreases."""

    buffer: RetransmitBuffer
    """Recently sent reliable frames"""

    _send: FrameSender
    _clock: Clock

    def __init__(
            self,
            send: FrameSender,
            capacity: int=DEFAULT_RETRANSMIT_BUFFER_SIZE,
            clock: Clock=time.monotonic,
          ):
        self._send = send
        self._clock = clock
        self.buffer = RetransmitBuffer(capacity)
        self.local_sequence = BOOTSTRAP_SEQUENCE
        self.remote_sequence = 0

    def reset(self) -> None:
        """Discards all in-flight state, returning to the pre-handshake condition."""
        self.buffer.clear()
        self.local_sequence = BOOTSTRAP_SEQUENCE
        self.remote_sequence = 0

    def start_session(self) -> None:
        """Called when the handshake completes; the first data frame of a session has sequence 1."""
        self.local_sequence = 1

    def send_reliable(self, build: Callable[[int], AtemPacket]) -> Optional[AtemPacket]:
        """Builds a frame with the next local sequence, sends it, and retains a copy.

        build is called with the sequence to embed. If the send fails, the frame is dropped:
        it is not retained and the sequence is not consumed. Returns the sent frame, or None.
        """
        sequence = self.local_sequence
        packet = build(sequence)
        if not self._send(packet.raw_data):
            logger.error(f"Dropping frame {sequence} after send failure")
            return None
        self.buffer.store(StoredFrame(sequence, packet.raw_data, self._clock()))
        self.local_sequence = (sequence + 1) & SEQUENCE_MASK
        return packet

    def observe_remote_sequence(self, sequence: int) -> None:
        if sequence > self.remote_sequence:
            self.remote_sequence = sequence

    @staticmethod
    def should_ack(packet: AtemPacket) -> bool:
        """Every inbound frame carrying payload, or explicitly requesting an ACK, is acknowledged."""
        return packet.has_payload or packet.is_ack_request

    def send_ack(self, session_id: int, sequence: int) -> bool:
        logger.debug(f"Sending ACK for frame {sequence}, session 0x{session_id:04x}")
        return self._send(AtemPacket.create_ack(session_id, sequence).raw_data)

    def handle_retransmit_request(self, session_id: int, from_sequence: int, peer_sequence: int) -> int:
        """Resends every retained frame from from_sequence onward, then acknowledges peer_sequence.

        Nothing is resent if from_sequence itself is no longer retained. Exactly one ACK is sent in
        every case, so the switcher does not keep repeating the request. Returns the number of frames resent.
        """
        count = 0
        if self.buffer.find(from_sequence) is None:
            logger.warning(
                f"Switcher requested retransmit from frame {from_sequence}, which is no longer retained "
                f"(oldest retained: {self.buffer.oldest_sequence})"
              )
        else:
            for frame in self.buffer.frames_from(from_sequence):
                if self._send(frame.raw_data):
                    count += 1
            logger.info(f"Retransmitted {count} frame(s) from frame {from_sequence}")
        self.send_ack(session_id, peer_sequence)
        return count
