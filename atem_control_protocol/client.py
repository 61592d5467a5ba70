#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
AtemClient -- An asyncio driver for an AtemSession that can:

  1. Open a UDP endpoint on the running event loop and perform the handshake without blocking the loop
  2. Run the session's periodic processing in a background task
  3. Resolve wait_for_done() when the session ends, raising AtemConnectError if the switcher went silent

Usage:
    async with AtemClient('192.168.1.240') as client:
        client.add_program_input_handler(lambda input_id: print(f"program={input_id}"))
        client.change_preview_input(2)
        client.cut()
        await client.wait_for_done()
"""

from __future__ import annotations

import asyncio
from asyncio import Future
import time

from atem_control_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import AtemConnectError
from .constants import HANDSHAKE_POLL_INTERVAL
from .config import AtemConfig
from .state import AtemSwitcherState
from .transport import AtemTransport, AsyncioUdpTransport
from .session import (
    AtemSession,
    AtemConnectionState,
    ConnectionStateHandler,
    InputHandler,
    StateChangedHandler,
  )

class AtemClient(AsyncContextManager['AtemClient']):
    session: AtemSession
    """The session being driven"""

    final_result: Optional[Future[None]] = None
    """A future that is set when the client is stopped, or the session is lost."""

    tick_task: Optional[asyncio.Task[None]] = None
    """The task that calls session.run_loop() every config.tick_interval seconds."""

    state_changed_event: asyncio.Event
    """Set whenever the switcher state changes; cleared by wait_for_state_change()."""

    def __init__(
            self,
            host: Optional[str]=None,
            config: Optional[AtemConfig]=None,
            transport: Optional[AtemTransport]=None,
            clock: Clock=time.monotonic,
          ):
        """Create an asyncio client for a switcher.

        Parameters:
            host:       The IP address or hostname of the switcher. Overrides config.host if provided.
            config:     The session configuration. Defaults to AtemConfig() with all default values.
            transport:  The datagram transport. Defaults to an AsyncioUdpTransport bound to config.bind_address.
            clock:      A monotonic time source in seconds. Defaults to time.monotonic.
        """
        if transport is None:
            transport = AsyncioUdpTransport(bind_address=None if config is None else config.bind_address)
        self.session = AtemSession(host=host, config=config, transport=transport, clock=clock)
        self.state_changed_event = asyncio.Event()
        self.session.add_connection_state_handler(self._on_connection_state)
        self.session.add_state_changed_handler(self._on_state_changed)

    @property
    def config(self) -> AtemConfig:
        return self.session.config

    @property
    def transport(self) -> AtemTransport:
        return self.session.transport

    async def start(self) -> None:
        """Opens the endpoint and performs the handshake. Raises AtemConnectError if the switcher does not answer."""
        try:
            self.final_result = asyncio.get_running_loop().create_future()
            self.session.open()
            await self.transport.start()
            self.session.begin_connect()
            while True:
                connected = self.session.poll_connect()
                if connected is not None:
                    break
                await asyncio.sleep(HANDSHAKE_POLL_INTERVAL)
            if not connected:
                raise AtemConnectError(f"Unable to connect to switcher at {self.config.host}:{self.config.port}")
            self.tick_task = asyncio.create_task(self._run_tick_task())
        except BaseException as e:
            self.set_final_exception(e)
            try:
                await self.wait_for_done()
            except BaseException:
                pass
            raise

    async def stop(self) -> None:
        """Disconnects from the switcher."""
        self.set_final_result()

    async def wait_for_dependents_done(self) -> None:
        """Called after final_result has been awaited. Stops the tick task and disconnects the session."""
        try:
            if self.tick_task is not None:
                self.tick_task.cancel()
                try:
                    await self.tick_task
                except BaseException:
                    pass
                self.tick_task = None
        except asyncio.CancelledError:
            pass
        except BaseException as e:
            logger.warning(f"Exception while cancelling tick task: {e}")
        self.session.disconnect()

    async def wait_for_done(self) -> None:
        """Waits until the client is stopped or the session ends. Raises AtemConnectError if the
           session was lost."""
        try:
            assert self.final_result is not None
            await self.final_result
        finally:
            await self.wait_for_dependents_done()

    async def stop_and_wait(self) -> None:
        await self.stop()
        await self.wait_for_done()

    async def wait_for_state_change(self, timeout: Optional[float]=None) -> bool:
        """Waits for the switcher state to change. Returns False if timeout seconds elapse first."""
        try:
            await asyncio.wait_for(self.state_changed_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        self.state_changed_event.clear()
        return True

    def set_final_exception(self, exc: BaseException) -> None:
        assert not exc is None
        if self.final_result is not None and not self.final_result.done():
            logger.debug(f"AtemClient: Setting final exception: {exc}")
            self.final_result.set_exception(exc)

    def set_final_result(self) -> None:
        if self.final_result is not None and not self.final_result.done():
            logger.debug("AtemClient: Setting final result to success")
            self.final_result.set_result(None)

    async def _run_tick_task(self) -> None:
        logger.debug("Tick task starting")
        try:
            while self.final_result is not None and not self.final_result.done():
                self.session.run_loop()
                await asyncio.sleep(self.config.tick_interval)
        except asyncio.CancelledError:
            logger.debug("Tick task cancelled; exiting")
            raise
        except BaseException as e:
            logger.info(f"Tick task exiting with exception: {e}")
            self.set_final_exception(e)
            raise
        logger.debug("Tick task exiting")

    def _on_connection_state(self, state: AtemConnectionState) -> None:
        if state == AtemConnectionState.ERROR and self.tick_task is not None:
            self.set_final_exception(AtemConnectError(f"Lost connection to switcher at {self.config.host}:{self.config.port}"))

    def _on_state_changed(self) -> None:
        self.state_changed_event.set()

    # ----- forwarded to the session -----

    @property
    def connection_state(self) -> AtemConnectionState:
        return self.session.connection_state

    @property
    def is_connected(self) -> bool:
        return self.session.is_connected

    @property
    def state(self) -> AtemSwitcherState:
        return self.session.state

    @property
    def program_input(self) -> int:
        return self.session.program_input

    @property
    def preview_input(self) -> int:
        return self.session.preview_input

    def add_connection_state_handler(self, handler: ConnectionStateHandler) -> int:
        return self.session.add_connection_state_handler(handler)

    def remove_connection_state_handler(self, i: int) -> None:
        self.session.remove_connection_state_handler(i)

    def add_program_input_handler(self, handler: InputHandler) -> int:
        return self.session.add_program_input_handler(handler)

    def remove_program_input_handler(self, i: int) -> None:
        self.session.remove_program_input_handler(i)

    def add_preview_input_handler(self, handler: InputHandler) -> int:
        return self.session.add_preview_input_handler(handler)

    def remove_preview_input_handler(self, i: int) -> None:
        self.session.remove_preview_input_handler(i)

    def add_state_changed_handler(self, handler: StateChangedHandler) -> int:
        return self.session.add_state_changed_handler(handler)

    def remove_state_changed_handler(self, i: int) -> None:
        self.session.remove_state_changed_handler(i)

    def change_program_input(self, input_id: int) -> bool:
        return self.session.change_program_input(input_id)

    def change_preview_input(self, input_id: int) -> bool:
        return self.session.change_preview_input(input_id)

    def cut(self) -> bool:
        return self.session.cut()

    def auto_transition(self) -> bool:
        return self.session.auto_transition()

    def connection_info(self) -> JsonableDict:
        return self.session.connection_info()

    async def __aenter__(self) -> AtemClient:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)
        try:
            # ensure that final_result has been awaited
            await self.wait_for_done()
        except Exception:
            pass
        return False
