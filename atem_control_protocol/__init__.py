# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package atem_control_protocol implements a client for the UDP control protocol of
Blackmagic Design ATEM video switchers.

The protocol is not publicly documented. Every frame starts with a 12-byte header carrying
flags, a length, a session id and sequence numbers, followed by zero or more tagged command
blocks. Reliability is layered on top of UDP by the endpoints themselves: the client
acknowledges every frame the switcher sends, keeps the session alive with heartbeats,
and resends recent frames when the switcher asks for them.

Only the commands whose wire format has been verified against real switchers are
implemented: program/preview input selection, cut and auto transition. The switcher's
program and preview inputs are tracked from the state it reports.

AtemSession is a synchronous, tick-driven implementation suitable for embedding in any
main loop; AtemClient drives an AtemSession from an asyncio event loop.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict

from .exceptions import (
    AtemError,
    AtemPacketError,
    AtemConfigError,
    AtemNotConnectedError,
    AtemConnectError,
    AtemUnsupportedCommandError,
  )

from .atem_packet import AtemPacket, AtemPacketHeader, AtemPacketFlags, AtemCommandBlock, iter_command_blocks
from .state import AtemSwitcherState, AtemStateStore
from .reliability import AtemReliability, RetransmitBuffer, StoredFrame
from .commands import AtemCommandDispatcher, UNSUPPORTED_COMMANDS
from .config import AtemConfig
from .transport import AtemTransport, UdpTransport, AsyncioUdpTransport
from .session import AtemSession, AtemConnectionState
from .client import AtemClient
from .constants import ATEM_PORT, DEFAULT_LOCAL_PORT

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict',
    'AtemError', 'AtemPacketError', 'AtemConfigError', 'AtemNotConnectedError',
    'AtemConnectError', 'AtemUnsupportedCommandError',
    'AtemPacket', 'AtemPacketHeader', 'AtemPacketFlags', 'AtemCommandBlock', 'iter_command_blocks',
    'AtemSwitcherState', 'AtemStateStore',
    'AtemReliability', 'RetransmitBuffer', 'StoredFrame',
    'AtemCommandDispatcher', 'UNSUPPORTED_COMMANDS',
    'AtemConfig',
    'AtemTransport', 'UdpTransport', 'AsyncioUdpTransport',
    'AtemSession', 'AtemConnectionState',
    'AtemClient',
    'ATEM_PORT', 'DEFAULT_LOCAL_PORT',
]
