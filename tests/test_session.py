#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import logging
from typing import List

import pytest

from atem_control_protocol import (
    AtemSession,
    AtemConfig,
    AtemConnectionState,
    AtemPacket,
    AtemPacketFlags,
    AtemConfigError,
    AtemNotConnectedError,
    AtemUnsupportedCommandError,
    UNSUPPORTED_COMMANDS,
  )
from atem_control_protocol.constants import HANDSHAKE_PACKET, BOOTSTRAP_SEQUENCE, INITIAL_SESSION_ID

from fakes import (
    FakeClock,
    FakeTransport,
    handshake_response,
    switcher_frame,
    input_block,
    SWITCHER_HOST,
    SESSION_ID,
  )

def record_states(session: AtemSession) -> List[AtemConnectionState]:
    states: List[AtemConnectionState] = []
    session.add_connection_state_handler(states.append)
    return states

# ----- handshake -----

def test_connect_sends_handshake_literal_once(session: AtemSession, transport: FakeTransport):
    transport.inject(handshake_response(SESSION_ID, sequence=0))
    assert session.connect()
    assert len(transport.sent) == 1
    data, addr = transport.sent[0]
    assert data == HANDSHAKE_PACKET
    assert addr == (SWITCHER_HOST, 9910)
    assert transport.local_port == 9910

def test_handshake_response_connects(session: AtemSession, transport: FakeTransport):
    states = record_states(session)
    session.begin_connect()
    assert session.connection_state == AtemConnectionState.CONNECTING
    assert session.local_sequence == BOOTSTRAP_SEQUENCE
    transport.inject(handshake_response(SESSION_ID))
    assert session.poll_connect() is True
    assert session.is_connected
    assert session.session_id == SESSION_ID
    assert session.local_sequence == 1
    # CONNECTING is not announced
    assert states == [AtemConnectionState.CONNECTED]

def test_handshake_response_with_sequence_is_acked(session: AtemSession, transport: FakeTransport):
    session.begin_connect()
    transport.inject(handshake_response(SESSION_ID, sequence=5))
    assert session.poll_connect() is True
    ack = transport.sent_packets[-1]
    assert ack.is_ack_reply
    assert ack.session_id == SESSION_ID
    assert ack.acked_sequence == 5
    assert session.remote_sequence == 5

def test_frames_without_new_session_are_ignored_while_connecting(session: AtemSession, transport: FakeTransport):
    session.begin_connect()
    transport.inject(switcher_frame(SESSION_ID, 1, [input_block('PrgI', 3)]))
    assert session.poll_connect() is None
    assert session.connection_state == AtemConnectionState.CONNECTING
    assert session.program_input == 0

def test_handshake_timeout(session: AtemSession, transport: FakeTransport, clock: FakeClock):
    states = record_states(session)
    start = clock()
    assert not session.connect()
    assert session.connection_state == AtemConnectionState.ERROR
    assert states == [AtemConnectionState.ERROR]
    assert clock() - start >= session.config.handshake_timeout
    # no automatic retry
    assert len(transport.sent) == 1

def test_handshake_response_on_timeout_poll_wins(session: AtemSession, transport: FakeTransport, clock: FakeClock):
    states = record_states(session)
    session.begin_connect()
    clock.advance(5.0)
    transport.inject(handshake_response(SESSION_ID, sequence=3))
    assert session.poll_connect() is True
    assert session.is_connected
    assert states == [AtemConnectionState.CONNECTED]
    assert transport.sent_packets[-1].acked_sequence == 3

def test_handshake_timeout_from_run_loop(session: AtemSession, clock: FakeClock):
    states = record_states(session)
    session.begin_connect()
    session.run_loop()
    assert session.connection_state == AtemConnectionState.CONNECTING
    clock.advance(5.0)
    session.run_loop()
    assert session.connection_state == AtemConnectionState.ERROR
    assert states == [AtemConnectionState.ERROR]

def test_handshake_send_failure_is_an_error(session: AtemSession, transport: FakeTransport):
    transport.fail_sends = True
    states = record_states(session)
    assert not session.connect()
    assert states == [AtemConnectionState.ERROR]

def test_connect_without_host():
    session = AtemSession(transport=FakeTransport())
    with pytest.raises(AtemConfigError):
        session.connect()

def test_host_argument_overrides_config(transport: FakeTransport):
    config = AtemConfig(host='10.0.0.1')
    session = AtemSession('10.0.0.2', config=config, transport=transport)
    assert session.config.host == '10.0.0.2'
    assert config.host == '10.0.0.1'

# ----- inbound frames -----

def test_inbound_payload_is_acked(connected_session: AtemSession, transport: FakeTransport):
    transport.inject(switcher_frame(SESSION_ID, 2, [input_block('_ver', 0)]))
    connected_session.run_loop()
    acks = [p for p in transport.sent_packets if p.is_ack_reply]
    assert len(acks) == 1
    assert acks[0].acked_sequence == 2
    assert acks[0].session_id == SESSION_ID
    assert connected_session.remote_sequence == 2

def test_ack_replies_are_not_acked(connected_session: AtemSession, transport: FakeTransport):
    transport.inject(AtemPacket.create_ack(SESSION_ID, 1))
    connected_session.run_loop()
    assert not any(p.is_ack_reply for p in transport.sent_packets)

def test_short_datagrams_are_dropped(connected_session: AtemSession, transport: FakeTransport):
    transport.inject(b'\x08\x0c\x12\x34')
    connected_session.run_loop()
    assert connected_session.is_connected
    assert not any(p.is_ack_reply for p in transport.sent_packets)

def test_program_input_reported_once(connected_session: AtemSession, transport: FakeTransport):
    program_inputs: List[int] = []
    state_changes: List[None] = []
    connected_session.add_program_input_handler(program_inputs.append)
    connected_session.add_state_changed_handler(lambda: state_changes.append(None))

    transport.inject(switcher_frame(SESSION_ID, 2, [input_block('PrgI', 3)]))
    connected_session.run_loop()
    transport.inject(switcher_frame(SESSION_ID, 3, [input_block('PrgI', 3)]))
    connected_session.run_loop()

    assert program_inputs == [3]
    assert len(state_changes) == 1
    assert connected_session.program_input == 3
    assert connected_session.state.program_input == 3

def test_preview_input_and_single_state_change_per_tick(connected_session: AtemSession, transport: FakeTransport):
    preview_inputs: List[int] = []
    state_changes: List[None] = []
    connected_session.add_preview_input_handler(preview_inputs.append)
    connected_session.add_state_changed_handler(lambda: state_changes.append(None))

    transport.inject(switcher_frame(SESSION_ID, 2, [input_block('PrgI', 1), input_block('PrvI', 2)]))
    transport.inject(switcher_frame(SESSION_ID, 3, [input_block('PrvI', 4)]))
    connected_session.run_loop()

    assert preview_inputs == [2, 4]
    assert len(state_changes) == 1
    assert connected_session.preview_input == 4

def test_unknown_and_malformed_blocks_are_skipped(connected_session: AtemSession, transport: FakeTransport):
    payload = (
        input_block('Time', 0).encode() +
        bytes.fromhex('000a0000') + b'PrgI' + b'\x00\x00' +
        input_block('PrvI', 6).encode()
      )
    transport.inject(AtemPacket.create(AtemPacketFlags.ACK_REQUEST, SESSION_ID, sequence=2, payload=payload))
    connected_session.run_loop()
    assert connected_session.program_input == 0
    assert connected_session.preview_input == 6

def test_session_id_change_is_adopted(connected_session: AtemSession, transport: FakeTransport, caplog):
    with caplog.at_level(logging.WARNING, logger='atem_control_protocol'):
        transport.inject(switcher_frame(0x4321, 2))
        connected_session.run_loop()
    assert connected_session.session_id == 0x4321
    assert "session id" in caplog.text
    ack = [p for p in transport.sent_packets if p.is_ack_reply][0]
    assert ack.session_id == 0x4321

def test_retransmit_request_resends_retained_frames(connected_session: AtemSession, transport: FakeTransport):
    connected_session.change_program_input(1)
    connected_session.change_preview_input(2)
    connected_session.cut()
    originals = [data for data, _ in transport.sent]
    transport.clear_sent()

    transport.inject(AtemPacket.create_retransmit_request(SESSION_ID, from_sequence=2, sequence=9))
    connected_session.run_loop()

    sent = [data for data, _ in transport.sent]
    assert sent[:2] == originals[1:]
    assert len(sent) == 3
    ack = transport.sent_packets[-1]
    assert ack.is_ack_reply
    assert ack.acked_sequence == 9

def test_retransmit_request_for_unretained_frame_only_acks(connected_session: AtemSession, transport: FakeTransport):
    connected_session.cut()
    transport.clear_sent()
    transport.inject(AtemPacket.create_retransmit_request(SESSION_ID, from_sequence=50, sequence=4))
    connected_session.run_loop()
    assert len(transport.sent) == 1
    assert transport.sent_packets[0].is_ack_reply

def test_frames_ignored_after_disconnect(connected_session: AtemSession, transport: FakeTransport):
    connected_session.disconnect()
    connected_session.process_datagram(switcher_frame(SESSION_ID, 2, [input_block('PrgI', 3)]).raw_data)
    assert connected_session.program_input == 0
    assert len(transport.sent) == 0

# ----- heartbeat and timeout -----

def test_heartbeat_after_interval(connected_session: AtemSession, transport: FakeTransport, clock: FakeClock):
    clock.advance(0.4)
    connected_session.run_loop()
    assert len(transport.sent) == 0

    clock.advance(0.2)
    connected_session.run_loop()
    assert len(transport.sent) == 1
    heartbeat = transport.sent_packets[0]
    assert heartbeat.raw_data == bytes.fromhex('080c1234000000000000' '0001')
    assert len(connected_session.reliability.buffer) == 1
    assert connected_session.local_sequence == 2

    connected_session.run_loop()
    assert len(transport.sent) == 1

def test_connection_timeout_fires_once(connected_session: AtemSession, clock: FakeClock):
    states = record_states(connected_session)
    clock.advance(5.1)
    connected_session.run_loop()
    assert connected_session.connection_state == AtemConnectionState.ERROR
    clock.advance(5.0)
    connected_session.run_loop()
    assert states == [AtemConnectionState.ERROR]

def test_inbound_frames_keep_session_alive(connected_session: AtemSession, transport: FakeTransport, clock: FakeClock):
    for sequence in range(2, 12):
        clock.advance(1.0)
        transport.inject(switcher_frame(SESSION_ID, sequence))
        connected_session.run_loop()
    assert connected_session.is_connected

# ----- control operations -----

def test_same_value_command_is_still_sent(connected_session: AtemSession, transport: FakeTransport):
    assert connected_session.change_program_input(3)
    assert connected_session.change_program_input(3)
    packets = transport.sent_packets
    assert len(packets) == 2
    assert [p.sequence for p in packets] == [1, 2]
    assert all(p.payload == bytes.fromhex('000c0000') + b'CPgI' + bytes.fromhex('00000003') for p in packets)
    # state only follows what the switcher reports
    assert connected_session.program_input == 0

def test_control_command_tags(connected_session: AtemSession, transport: FakeTransport):
    connected_session.change_preview_input(1000)
    connected_session.cut()
    connected_session.auto_transition()
    blocks = [list(p.iter_commands())[0] for p in transport.sent_packets]
    assert [b.tag for b in blocks] == ['CPvI', 'DCut', 'DAut']
    assert blocks[0].payload == (1000).to_bytes(4, 'big')
    assert blocks[1].payload == bytes(4)
    assert len(connected_session.reliability.buffer) == 3

def test_command_while_not_connected_raises(session: AtemSession, transport: FakeTransport):
    with pytest.raises(AtemNotConnectedError):
        session.cut()
    session.begin_connect()
    with pytest.raises(AtemNotConnectedError):
        session.change_program_input(1)
    assert transport.sent_packets[-1].raw_data == HANDSHAKE_PACKET

def test_command_send_failure(connected_session: AtemSession, transport: FakeTransport):
    transport.fail_sends = True
    assert not connected_session.cut()
    assert connected_session.local_sequence == 1
    assert len(connected_session.reliability.buffer) == 0

@pytest.mark.parametrize('operation', sorted(UNSUPPORTED_COMMANDS.keys()))
def test_unsupported_operations_raise(connected_session: AtemSession, transport: FakeTransport, operation: str):
    method = getattr(connected_session, operation)
    n_args = method.__code__.co_argcount - 1
    with pytest.raises(AtemUnsupportedCommandError) as excinfo:
        method(*([1] * n_args))
    assert excinfo.value.operation == operation
    assert excinfo.value.tag == UNSUPPORTED_COMMANDS[operation]
    assert len(transport.sent) == 0

# ----- lifecycle and handlers -----

def test_disconnect(connected_session: AtemSession, transport: FakeTransport):
    states = record_states(connected_session)
    connected_session.cut()
    connected_session.disconnect()
    assert connected_session.connection_state == AtemConnectionState.DISCONNECTED
    assert connected_session.session_id == INITIAL_SESSION_ID
    assert connected_session.local_sequence == BOOTSTRAP_SEQUENCE
    assert len(connected_session.reliability.buffer) == 0
    assert not transport.is_open
    connected_session.disconnect()
    assert states == [AtemConnectionState.DISCONNECTED]

def test_reconnect_keeps_switcher_state(connected_session: AtemSession, transport: FakeTransport):
    transport.inject(switcher_frame(SESSION_ID, 2, [input_block('PrgI', 5)]))
    connected_session.run_loop()
    connected_session.disconnect()
    transport.inject(handshake_response(0x5555))
    assert connected_session.connect()
    assert connected_session.session_id == 0x5555
    assert connected_session.program_input == 5

def test_context_manager_disconnects(session: AtemSession, transport: FakeTransport):
    transport.inject(handshake_response(SESSION_ID))
    with session:
        assert session.connect()
    assert session.connection_state == AtemConnectionState.DISCONNECTED
    assert transport.close_count == 1

def test_handler_exceptions_are_logged(connected_session: AtemSession, transport: FakeTransport, caplog):
    received: List[int] = []
    def bad_handler(input_id: int) -> None:
        raise RuntimeError("handler failed")
    connected_session.add_program_input_handler(bad_handler)
    connected_session.add_program_input_handler(received.append)
    with caplog.at_level(logging.WARNING, logger='atem_control_protocol'):
        transport.inject(switcher_frame(SESSION_ID, 2, [input_block('PrgI', 7)]))
        connected_session.run_loop()
    assert received == [7]
    assert "handler failed" in caplog.text

def test_remove_handler(connected_session: AtemSession, transport: FakeTransport):
    received: List[int] = []
    i = connected_session.add_preview_input_handler(received.append)
    connected_session.remove_preview_input_handler(i)
    transport.inject(switcher_frame(SESSION_ID, 2, [input_block('PrvI', 7)]))
    connected_session.run_loop()
    assert received == []

def test_connection_info(connected_session: AtemSession):
    connected_session.cut()
    info = connected_session.connection_info()
    assert info['state'] == 'connected'
    assert info['host'] == SWITCHER_HOST
    assert info['session_id'] == '0x1234'
    assert info['local_sequence'] == 2
    assert info['retained_frames'] == 1
    assert info['switcher_state']['program_input'] == 0

def test_frames_are_hex_dumped_only_at_debug(connected_session: AtemSession, transport: FakeTransport, monkeypatch, caplog):
    dumps: List[bytes] = []
    def counting_hex_dump(data: bytes) -> str:
        dumps.append(data)
        return data.hex()
    monkeypatch.setattr('atem_control_protocol.session.hex_dump', counting_hex_dump)

    with caplog.at_level(logging.INFO, logger='atem_control_protocol'):
        transport.inject(switcher_frame(SESSION_ID, 2))
        connected_session.run_loop()
    assert dumps == []

    with caplog.at_level(logging.DEBUG, logger='atem_control_protocol'):
        transport.inject(switcher_frame(SESSION_ID, 3))
        connected_session.run_loop()
    assert len(dumps) == 2
    assert "Received 12 bytes" in caplog.text
