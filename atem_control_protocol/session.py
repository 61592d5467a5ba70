#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
AtemSession -- A control session with one ATEM switcher that can:

  1. Perform the one-shot handshake that establishes a session id
  2. Acknowledge inbound frames and service the switcher's retransmit requests
  3. Keep the session alive with periodic heartbeats, and detect a silent switcher
  4. Track the program and preview inputs reported by the switcher
  5. Send program/preview selection, cut and auto transition commands

All protocol activity happens synchronously inside the caller's thread: connect() blocks
for at most the handshake timeout, and run_loop() must be called at a bounded cadence
(every 10 ms or so) for as long as the session is in use. Handlers are invoked
synchronously from within run_loop() or the call that caused the event.
"""

from __future__ import annotations

import logging
import time
from enum import Enum

from atem_control_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import AtemNotConnectedError, AtemConfigError
from .constants import HEADER_SIZE, INITIAL_SESSION_ID, HANDSHAKE_POLL_INTERVAL
from .config import AtemConfig
from .atem_packet import AtemPacket, AtemCommandBlock
from .state import AtemStateStore, AtemSwitcherState
from .reliability import AtemReliability
from .transport import AtemTransport, UdpTransport
from .util import hex_dump
from .commands import (
    AtemCommandDispatcher,
    build_change_program_input,
    build_change_preview_input,
    build_cut,
    build_auto_transition,
    raise_unsupported,
  )

class AtemConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    ERROR = 'error'

    def __str__(self) -> str:
        return self.value

ConnectionStateHandler = Callable[[AtemConnectionState], None]
"""Called with the new state when the connection state changes."""

InputHandler = Callable[[int], None]
"""Called with the new input id when the switcher reports a program or preview change."""

StateChangedHandler = Callable[[], None]
"""Called once per run_loop() call in which any part of the switcher state changed."""

class _HandlerSet:
    """A set of handlers indexed by ID number."""

    name: str

    handlers: Dict[int, Callable[..., None]]

    i_next_handler: int = 0
    """The next handler ID to assign."""

    def __init__(self, name: str):
        self.name = name
        self.handlers = {}

    def add(self, handler: Callable[..., None]) -> int:
        i = self.i_next_handler
        self.i_next_handler += 1
        self.handlers[i] = handler
        return i

    def remove(self, i: int) -> None:
        del self.handlers[i]

    def fire(self, *args: Any) -> None:
        for handler in list(self.handlers.values()):
            try:
                handler(*args)
            except Exception as e:
                logger.warning(f"Exception in {self.name} handler {handler!r}: {e}")

    def __len__(self) -> int:
        return len(self.handlers)

class AtemSession:
    config: AtemConfig
    """The configuration of the session. host is required before connecting."""

    transport: AtemTransport
    """The datagram transport used to exchange frames with the switcher."""

    store: AtemStateStore
    """The last-known state of the switcher."""

    reliability: AtemReliability
    """Sequence numbering, acknowledgment, and retransmission state."""

    dispatcher: AtemCommandDispatcher
    """Applies inbound command blocks to the state store."""

    handshake_start_time: float = 0.0
    """Clock time at which the last handshake was sent"""

    last_heartbeat_time: float = 0.0
    """Clock time at which the last heartbeat was sent"""

    last_received_time: float = 0.0
    """Clock time at which the last frame was received"""

    _connection_state: AtemConnectionState = AtemConnectionState.DISCONNECTED
    _session_id: int = INITIAL_SESSION_ID
    _clock: Clock
    _sleep: Sleeper

    _connection_state_handlers: _HandlerSet
    _program_input_handlers: _HandlerSet
    _preview_input_handlers: _HandlerSet
    _state_changed_handlers: _HandlerSet

    def __init__(
            self,
            host: Optional[str]=None,
            config: Optional[AtemConfig]=None,
            transport: Optional[AtemTransport]=None,
            clock: Clock=time.monotonic,
            sleep: Sleeper=time.sleep,
          ):
        """Create a session with a switcher.

        Parameters:
            host:       The IP address or hostname of the switcher. Overrides config.host if provided.
            config:     The session configuration. Defaults to AtemConfig() with all default values.
            transport:  The datagram transport. Defaults to a UdpTransport bound to config.bind_address.
            clock:      A monotonic time source in seconds. Defaults to time.monotonic.
            sleep:      The blocking sleep used while waiting for the handshake. Defaults to time.sleep.
        """
        config = AtemConfig() if config is None else config.copy()
        if host is not None:
            config.host = host
        self.config = config
        self.transport = UdpTransport(bind_address=config.bind_address) if transport is None else transport
        self._clock = clock
        self._sleep = sleep
        self._connection_state = AtemConnectionState.DISCONNECTED
        self._session_id = INITIAL_SESSION_ID
        self.store = AtemStateStore()
        self.reliability = AtemReliability(self._send_raw, capacity=config.retransmit_buffer_size, clock=clock)
        self._connection_state_handlers = _HandlerSet('connection state')
        self._program_input_handlers = _HandlerSet('program input')
        self._preview_input_handlers = _HandlerSet('preview input')
        self._state_changed_handlers = _HandlerSet('state changed')
        self.dispatcher = AtemCommandDispatcher(
            self.store,
            on_program_input=self._program_input_handlers.fire,
            on_preview_input=self._preview_input_handlers.fire,
          )

    # ----- handler registration -----

    def add_connection_state_handler(self, handler: ConnectionStateHandler) -> int:
        """Adds a handler to be called when the connection state changes. Returns an ID for remove_connection_state_handler()."""
        return self._connection_state_handlers.add(handler)

    def remove_connection_state_handler(self, i: int) -> None:
        self._connection_state_handlers.remove(i)

    def add_program_input_handler(self, handler: InputHandler) -> int:
        """Adds a handler to be called when the switcher reports a new program input."""
        return self._program_input_handlers.add(handler)

    def remove_program_input_handler(self, i: int) -> None:
        self._program_input_handlers.remove(i)

    def add_preview_input_handler(self, handler: InputHandler) -> int:
        """Adds a handler to be called when the switcher reports a new preview input."""
        return self._preview_input_handlers.add(handler)

    def remove_preview_input_handler(self, i: int) -> None:
        self._preview_input_handlers.remove(i)

    def add_state_changed_handler(self, handler: StateChangedHandler) -> int:
        """Adds a handler to be called once per run_loop() in which the switcher state changed."""
        return self._state_changed_handlers.add(handler)

    def remove_state_changed_handler(self, i: int) -> None:
        self._state_changed_handlers.remove(i)

    # ----- properties -----

    @property
    def connection_state(self) -> AtemConnectionState:
        return self._connection_state

    @property
    def is_connected(self) -> bool:
        return self._connection_state == AtemConnectionState.CONNECTED

    @property
    def session_id(self) -> int:
        """The session id assigned by the switcher, or the handshake placeholder before one is assigned"""
        return self._session_id

    @property
    def local_sequence(self) -> int:
        """The sequence that will be assigned to the next reliable frame"""
        return self.reliability.local_sequence

    @property
    def remote_sequence(self) -> int:
        """The highest sequence received from the switcher"""
        return self.reliability.remote_sequence

    @property
    def state(self) -> AtemSwitcherState:
        """A snapshot of the last-known switcher state"""
        return self.store.snapshot

    @property
    def program_input(self) -> int:
        return self.store.program_input

    @property
    def preview_input(self) -> int:
        return self.store.preview_input

    @property
    def remote_addr(self) -> HostAndPort:
        host = self.config.host
        if host is None or host == '':
            raise AtemConfigError("No switcher host has been configured")
        return (host, self.config.port)

    # ----- lifecycle -----

    def open(self) -> None:
        """Opens the transport on the configured local port, if it is not already open. Raises OSError on failure."""
        if not self.transport.is_open:
            self.transport.open(self.config.local_port)
            logger.info(f"Opened {self.transport} on local port {self.config.local_port}")

    def connect(self) -> bool:
        """Performs the handshake, blocking until it succeeds or the handshake timeout elapses.

        Returns True if the session is CONNECTED. On timeout the session is left in ERROR;
        there is no automatic retry.
        """
        self.begin_connect()
        while True:
            result = self.poll_connect()
            if result is not None:
                return result
            self._sleep(HANDSHAKE_POLL_INTERVAL)

    def begin_connect(self) -> None:
        """Sends the handshake and enters CONNECTING without waiting for the response.

        Drive the handshake to completion with poll_connect() (or run_loop()).
        """
        remote_addr = self.remote_addr
        self.open()
        self.reliability.reset()
        self._session_id = INITIAL_SESSION_ID
        self._set_connection_state(AtemConnectionState.CONNECTING, notify=False)
        self.handshake_start_time = self._clock()
        logger.info(f"Connecting to switcher at {remote_addr[0]}:{remote_addr[1]}")
        if not self._send_raw(AtemPacket.create_handshake().raw_data):
            logger.error(f"Unable to send handshake to {remote_addr[0]}:{remote_addr[1]}")
            self._set_connection_state(AtemConnectionState.ERROR)

    def poll_connect(self) -> Optional[bool]:
        """Makes one non-blocking attempt to complete a handshake started with begin_connect().

        Returns True once CONNECTED, False if the handshake failed, or None if it is still pending.
        """
        if self._connection_state == AtemConnectionState.CONNECTING:
            self._receive_pending()
            self._check_handshake_timeout()
        if self._connection_state == AtemConnectionState.CONNECTED:
            return True
        if self._connection_state == AtemConnectionState.CONNECTING:
            return None
        return False

    def disconnect(self) -> None:
        """Immediately ends the session, discarding all in-flight frames, and closes the transport."""
        self.reliability.reset()
        self._session_id = INITIAL_SESSION_ID
        self.transport.close()
        if self._set_connection_state(AtemConnectionState.DISCONNECTED):
            logger.info("Disconnected from switcher")

    def close(self) -> None:
        self.disconnect()

    def __enter__(self) -> AtemSession:
        return self

    def __exit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
          ) -> None:
        self.disconnect()

    # ----- periodic processing -----

    def run_loop(self) -> None:
        """Performs one tick of protocol processing. Must be called frequently (e.g., every 10 ms)."""
        self._receive_pending()
        now = self._clock()
        if self._connection_state == AtemConnectionState.CONNECTING:
            self._check_handshake_timeout()
        if (self._connection_state == AtemConnectionState.CONNECTED and
                now - self.last_heartbeat_time > self.config.heartbeat_interval):
            self._send_heartbeat()
            self.last_heartbeat_time = now
        if (self._connection_state == AtemConnectionState.CONNECTED and
                now - self.last_received_time > self.config.connection_timeout):
            logger.error(f"Connection timeout: nothing received from switcher for {now - self.last_received_time:.3f} seconds")
            self._set_connection_state(AtemConnectionState.ERROR)
        if self.store.take_dirty():
            self._state_changed_handlers.fire()

    def process_datagram(self, data: bytes) -> None:
        """Processes one datagram received from the switcher."""
        if len(data) < HEADER_SIZE:
            logger.debug(f"Dropping {len(data)}-byte datagram shorter than the {HEADER_SIZE}-byte header")
            return
        self.last_received_time = self._clock()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Received {len(data)} bytes: {hex_dump(data)}")
        packet = AtemPacket.decode(data)

        if self._connection_state == AtemConnectionState.CONNECTING:
            if packet.is_new_session:
                self._complete_handshake(packet)
            else:
                logger.debug(f"Ignoring frame without NewSessionId during handshake: flags={packet.flags!r}")
            return

        if self._connection_state != AtemConnectionState.CONNECTED:
            logger.debug(f"Ignoring frame received while {self._connection_state}")
            return

        if packet.session_id != self._session_id:
            logger.warning(f"Switcher changed session id from 0x{self._session_id:04x} to 0x{packet.session_id:04x}")
            self._session_id = packet.session_id

        self.reliability.observe_remote_sequence(packet.sequence)

        if packet.is_retransmit_request:
            logger.info(f"Switcher requested retransmit from frame {packet.from_sequence} (its frame {packet.sequence})")
            self.reliability.handle_retransmit_request(self._session_id, packet.from_sequence, packet.sequence)
            return

        if self.reliability.should_ack(packet):
            self.reliability.send_ack(self._session_id, packet.sequence)

        if packet.has_payload:
            self.dispatcher.dispatch(packet.payload)

    def _receive_pending(self) -> None:
        for data in self.transport.receive():
            self.process_datagram(data)

    def _complete_handshake(self, packet: AtemPacket) -> None:
        self._session_id = packet.session_id
        self.reliability.start_session()
        now = self._clock()
        self.last_heartbeat_time = now
        self.last_received_time = now
        if packet.sequence > 0:
            self.reliability.observe_remote_sequence(packet.sequence)
            self.reliability.send_ack(self._session_id, packet.sequence)
        logger.info(f"Connected; switcher assigned session id 0x{self._session_id:04x}")
        self._set_connection_state(AtemConnectionState.CONNECTED)

    def _check_handshake_timeout(self) -> None:
        if self._connection_state != AtemConnectionState.CONNECTING:
            return
        elapsed = self._clock() - self.handshake_start_time
        if elapsed >= self.config.handshake_timeout:
            logger.error(f"Handshake timeout: no response from switcher after {elapsed:.3f} seconds")
            self._set_connection_state(AtemConnectionState.ERROR)

    def _send_heartbeat(self) -> None:
        session_id = self._session_id
        packet = self.reliability.send_reliable(lambda sequence: AtemPacket.create_heartbeat(session_id, sequence))
        if packet is not None:
            logger.debug(f"Sent heartbeat frame {packet.sequence}")

    def _set_connection_state(self, state: AtemConnectionState, notify: bool=True) -> bool:
        """Sets the connection state. Returns True, and notifies handlers if requested, only if the state changed."""
        old_state = self._connection_state
        if state == old_state:
            return False
        self._connection_state = state
        logger.debug(f"Connection state {old_state} -> {state}")
        if notify:
            self._connection_state_handlers.fire(state)
        return True

    def _send_raw(self, data: bytes) -> bool:
        try:
            addr = self.remote_addr
            self.transport.send(data, addr)
        except (OSError, AtemConfigError) as e:
            logger.error(f"Failed sending {len(data)} bytes to switcher: {e}")
            return False
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Sent {len(data)} bytes: {hex_dump(data)}")
        return True

    # ----- control operations -----

    def _send_command(self, operation: str, block: AtemCommandBlock) -> bool:
        if self._connection_state != AtemConnectionState.CONNECTED:
            logger.warning(f"Not sending {operation}: session is {self._connection_state}")
            raise AtemNotConnectedError(f"Cannot {operation}: session is {self._connection_state}")
        session_id = self._session_id
        packet = self.reliability.send_reliable(lambda sequence: AtemPacket.create_command(session_id, sequence, [block]))
        if packet is None:
            return False
        logger.debug(f"Sent {block} in frame {packet.sequence}")
        return True

    def change_program_input(self, input_id: int) -> bool:
        """Asks the switcher to put input_id on program. The stored program input only changes when
           the switcher reports it. Returns False if the frame could not be sent."""
        return self._send_command('change program input', build_change_program_input(input_id))

    def change_preview_input(self, input_id: int) -> bool:
        """Asks the switcher to put input_id on preview."""
        return self._send_command('change preview input', build_change_preview_input(input_id))

    def cut(self) -> bool:
        """Performs a cut between preview and program on the first mix effect."""
        return self._send_command('cut', build_cut())

    def auto_transition(self) -> bool:
        """Performs the configured auto transition on the first mix effect."""
        return self._send_command('auto transition', build_auto_transition())

    # The following operations exist on the switcher but are not implemented, because their
    # command formats have not been verified against a real device.

    def fade_to_black(self) -> bool:
        raise_unsupported('fade_to_black')

    def set_fade_to_black_rate(self, rate: int) -> bool:
        raise_unsupported('set_fade_to_black_rate')

    def set_transition_position(self, position: int) -> bool:
        raise_unsupported('set_transition_position')

    def set_preview_transition(self, enabled: bool) -> bool:
        raise_unsupported('set_preview_transition')

    def set_aux_source(self, aux: int, input_id: int) -> bool:
        raise_unsupported('set_aux_source')

    def set_downstream_keyer_on_air(self, keyer: int, on_air: bool) -> bool:
        raise_unsupported('set_downstream_keyer_on_air')

    def downstream_keyer_auto(self, keyer: int) -> bool:
        raise_unsupported('downstream_keyer_auto')

    def set_upstream_keyer_on_air(self, keyer: int, on_air: bool) -> bool:
        raise_unsupported('set_upstream_keyer_on_air')

    def set_keyer_cut_source(self, keyer: int, input_id: int) -> bool:
        raise_unsupported('set_keyer_cut_source')

    def set_keyer_fill_source(self, keyer: int, input_id: int) -> bool:
        raise_unsupported('set_keyer_fill_source')

    def set_color_generator(self, generator: int, hue: int, saturation: int, luminance: int) -> bool:
        raise_unsupported('set_color_generator')

    def set_media_player_source(self, player: int, source: int) -> bool:
        raise_unsupported('set_media_player_source')

    def set_multiviewer_window_source(self, multiviewer: int, window: int, input_id: int) -> bool:
        raise_unsupported('set_multiviewer_window_source')

    def set_audio_input_gain(self, input_id: int, gain: float) -> bool:
        raise_unsupported('set_audio_input_gain')

    def set_audio_master_gain(self, gain: float) -> bool:
        raise_unsupported('set_audio_master_gain')

    # ----- diagnostics -----

    def connection_info(self) -> JsonableDict:
        """Returns a JSON-able summary of the session."""
        result: JsonableDict = {
            "state": str(self._connection_state),
            "host": self.config.host,
            "port": self.config.port,
            "local_port": self.config.local_port,
            "session_id": f"0x{self._session_id:04x}",
            "local_sequence": self.local_sequence,
            "remote_sequence": self.remote_sequence,
            "retained_frames": len(self.reliability.buffer),
            "switcher_state": self.store.snapshot.to_json_data(),
          }
        return result

    def __str__(self) -> str:
        return f"AtemSession(host={self.config.host}, state={self._connection_state}, session_id=0x{self._session_id:04x})"

    def __repr__(self) -> str:
        return str(self)
