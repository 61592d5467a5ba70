#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import pytest

from atem_control_protocol import AtemSession, AtemConfig

from fakes import FakeClock, FakeTransport, handshake_response, SWITCHER_HOST, SESSION_ID

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()

@pytest.fixture
def session(transport: FakeTransport, clock: FakeClock) -> AtemSession:
    return AtemSession(config=AtemConfig(host=SWITCHER_HOST), transport=transport, clock=clock, sleep=clock.sleep)

@pytest.fixture
def connected_session(session: AtemSession, transport: FakeTransport) -> AtemSession:
    """A session that has completed the handshake with session id 0x1234. Nothing sent so far is retained."""
    session.begin_connect()
    transport.inject(handshake_response(SESSION_ID, sequence=1))
    assert session.poll_connect() is True
    transport.clear_sent()
    return session
