#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import asyncio
import time
from typing import List

import pytest

from atem_control_protocol import UdpTransport, AsyncioUdpTransport, AtemError

LOOPBACK = '127.0.0.1'

def receive_within(transport: UdpTransport, timeout: float=1.0) -> List[bytes]:
    end_time = time.monotonic() + timeout
    while True:
        result = transport.receive()
        if len(result) > 0 or time.monotonic() >= end_time:
            return result
        time.sleep(0.01)

def test_udp_loopback():
    a = UdpTransport(bind_address=LOOPBACK)
    b = UdpTransport(bind_address=LOOPBACK)
    a.open(0)
    b.open(0)
    try:
        assert b.unicast_addr is not None
        assert b.unicast_addr[0] == LOOPBACK
        assert b.receive() == []
        a.send(b'\x08\x0c' + bytes(10), b.unicast_addr)
        assert receive_within(b) == [b'\x08\x0c' + bytes(10)]
    finally:
        a.close()
        b.close()
    assert not a.is_open
    assert b.unicast_addr is None

def test_receive_is_bounded():
    a = UdpTransport(bind_address=LOOPBACK)
    b = UdpTransport(bind_address=LOOPBACK, max_datagrams_per_receive=2)
    a.open(0)
    b.open(0)
    try:
        for i in range(3):
            a.send(bytes([i]) * 12, b.unicast_addr)
        first = receive_within(b)
        time.sleep(0.05)
        assert len(first) + len(b.receive()) <= 4
        assert len(first) <= 2
    finally:
        a.close()
        b.close()

def test_send_when_closed_raises():
    transport = UdpTransport(bind_address=LOOPBACK)
    with pytest.raises(OSError):
        transport.send(bytes(12), (LOOPBACK, 9910))
    assert transport.receive() == []

def test_reopen_is_an_error():
    transport = UdpTransport(bind_address=LOOPBACK)
    transport.open(0)
    try:
        with pytest.raises(AtemError):
            transport.open(0)
    finally:
        transport.close()

def test_asyncio_loopback():
    sender = UdpTransport(bind_address=LOOPBACK)
    receiver = AsyncioUdpTransport(bind_address=LOOPBACK)

    async def run() -> List[bytes]:
        sender.open(0)
        receiver.open(0)
        try:
            await receiver.start()
            sender.send(b"hello, switcher", receiver.unicast_addr)
            for _ in range(100):
                result = receiver.receive()
                if len(result) > 0:
                    return result
                await asyncio.sleep(0.01)
            return []
        finally:
            sender.close()
            receiver.close()

    assert asyncio.run(run()) == [b"hello, switcher"]
    assert not receiver.is_open
