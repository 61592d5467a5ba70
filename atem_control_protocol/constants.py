#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

ATEM_PORT = 9910
"""The UDP port on which ATEM switchers accept control sessions."""

DEFAULT_LOCAL_PORT = 9910
"""The local UDP port bound by default for the control session."""

HEADER_SIZE = 12
"""Size in bytes of the transport header present on every frame."""

COMMAND_HEADER_SIZE = 8
"""Size in bytes of the sub-header (length, reserved, tag) at the start of each command block."""

MAX_PACKET_SIZE = 1500
"""Largest datagram that will be read from the transport or stored for retransmission."""

MAX_PACKET_LENGTH = 0x07FF
"""Largest value representable by the 11-bit length field of the header."""

DEFAULT_HANDSHAKE_TIMEOUT = 5.0
"""Seconds to wait for the switcher to answer the handshake."""

DEFAULT_CONNECTION_TIMEOUT = 5.0
"""Seconds of inbound silence after which a connected session is considered lost."""

DEFAULT_HEARTBEAT_INTERVAL = 0.5
"""Seconds between heartbeat frames on a connected session."""

DEFAULT_TICK_INTERVAL = 0.01
"""Seconds between calls to AtemSession.run_loop() made by the asyncio client."""

HANDSHAKE_POLL_INTERVAL = 0.01
"""Seconds slept between receive attempts while waiting for the handshake response."""

DEFAULT_RETRANSMIT_BUFFER_SIZE = 100
"""Number of sent frames retained for peer-requested retransmission."""

INITIAL_SESSION_ID = 0x53AB
"""Placeholder session id carried by the handshake frame; the switcher assigns the real one."""

BOOTSTRAP_SEQUENCE = 768
"""Local sequence value before the handshake completes. Data frames restart at 1."""

HANDSHAKE_PACKET = bytes.fromhex('101453ab00000000003a00000100000000000000')
"""The literal 20-byte frame that opens a session. Every byte is fixed."""

# Well-known input ids. Model-specific input tables are out of scope.
INPUT_BLACK = 0
INPUT_CAM1 = 1
INPUT_CAM2 = 2
INPUT_CAM3 = 3
INPUT_CAM4 = 4
INPUT_CAM5 = 5
INPUT_CAM6 = 6
INPUT_CAM7 = 7
INPUT_CAM8 = 8
INPUT_COLOR_BARS = 1000
INPUT_COLOR1 = 2001
INPUT_COLOR2 = 2002
INPUT_MEDIA1 = 3010
INPUT_MEDIA2 = 3020
