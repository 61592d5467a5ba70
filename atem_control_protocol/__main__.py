#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import time
import asyncio
import logging
from signal import SIGINT, SIGTERM

from atem_control_protocol.internal_types import *

from atem_control_protocol import (
    __version__ as pkg_version,
    AtemClient,
    AtemConfig,
    AtemConnectionState,
  )

DEFAULT_STATE_WAIT_TIME = 2.0
"""Seconds the state command waits for the switcher's initial state report."""

DEFAULT_SETTLE_TIME = 0.5
"""Seconds a control command keeps the session running after sending, so the switcher can confirm."""

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def print_json(data: Jsonable) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))
    sys.stdout.flush()

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    def get_config(self) -> AtemConfig:
        return AtemConfig.resolve(
            config_file=self._args.config_file,
            host=self._args.host,
            port=self._args.port,
            local_port=self._args.local_port,
          )

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    async def cmd_monitor(self) -> int:
        duration: float = self._args.duration

        def on_connection_state(state: AtemConnectionState) -> None:
            print_json({ "event": "connection_state", "state": str(state), "time": time.time() })

        def on_program_input(input_id: int) -> None:
            print_json({ "event": "program_input", "input": input_id, "time": time.time() })

        def on_preview_input(input_id: int) -> None:
            print_json({ "event": "preview_input", "input": input_id, "time": time.time() })

        client = AtemClient(config=self.get_config())
        client.add_connection_state_handler(on_connection_state)
        client.add_program_input_handler(on_program_input)
        client.add_preview_input_handler(on_preview_input)
        if not self._provide_traceback:
            async def sigint_cleanup() -> None:
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    logging.debug("sigint_cleanup: Detected SIGINT/SIGTERM, stopping client")
                    client.set_final_exception(CmdExitError(1, "Monitor terminated with SIGINT or SIGTERM"))
            loop = asyncio.get_running_loop()
            sig_task = asyncio.create_task(sigint_cleanup())
            for signal in (SIGINT, SIGTERM):
                loop.add_signal_handler(signal, sig_task.cancel)
        try:
            async with client as c:
                print_json(c.connection_info())
                assert c.final_result is not None
                await asyncio.wait([c.final_result], timeout=(duration if duration > 0.0 else None))
                if c.final_result.done():
                    await c.wait_for_done()
        finally:
            if not self._provide_traceback:
                for signal in (SIGINT, SIGTERM):
                    loop.remove_signal_handler(signal)
                sig_task.cancel()
                try:
                    await sig_task
                except asyncio.CancelledError:
                    pass
        return 0

    async def cmd_state(self) -> int:
        wait_time: float = self._args.wait_time
        async with AtemClient(config=self.get_config()) as client:
            await client.wait_for_state_change(wait_time)
            print_json(client.connection_info())
        return 0

    async def _run_control_command(self, func: Callable[[AtemClient], bool]) -> int:
        settle_time: float = self._args.settle_time
        async with AtemClient(config=self.get_config()) as client:
            if not func(client):
                raise CmdExitError(1, "The command could not be sent to the switcher")
            if settle_time > 0.0:
                await asyncio.sleep(settle_time)
            print_json(client.state.to_json_data())
        return 0

    async def cmd_program(self) -> int:
        input_id: int = self._args.input_id
        return await self._run_control_command(lambda client: client.change_program_input(input_id))

    async def cmd_preview(self) -> int:
        input_id: int = self._args.input_id
        return await self._run_control_command(lambda client: client.change_preview_input(input_id))

    async def cmd_cut(self) -> int:
        return await self._run_control_command(lambda client: client.cut())

    async def cmd_auto(self) -> int:
        return await self._run_control_command(lambda client: client.auto_transition())

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Run the atem command-line tool with provided arguments

        Args:
            argv (Optional[Sequence[str]], optional):
                A list of commandline arguments (NOT including the program as argv[0]!),
                or None to use sys.argv[1:]. Defaults to None.

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(prog='atem', description="Monitor and control an ATEM video switcher.")


        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.add_argument('-c', '--config', dest='config_file', default=None,
                            help='''A JSON configuration file. Default: none; ATEM_* environment variables still apply''')
        parser.add_argument('--host', default=None,
                            help='''The IP address or hostname of the switcher. Overrides ATEM_HOST and the config file''')
        parser.add_argument('--port', type=int, default=None,
                            help='''The UDP port of the switcher. Default: 9910''')
        parser.add_argument('--local-port', dest='local_port', type=int, default=None,
                            help='''The local UDP port to bind. Default: 9910''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= monitor

        parser_monitor = subparsers.add_parser('monitor', description="Connect and print input and connection changes as they happen")
        parser_monitor.add_argument('--duration', type=float, default=0.0,
                            help='''The number of seconds to monitor. Default: 0 (until interrupted or the connection is lost)''')
        parser_monitor.set_defaults(func=self.cmd_monitor)

        # ======================= state

        parser_state = subparsers.add_parser('state', description="Connect and print the current switcher state")
        parser_state.add_argument('--wait-time', dest='wait_time', type=float, default=DEFAULT_STATE_WAIT_TIME,
                            help=f'''Seconds to wait for the switcher to report its state. Default: {DEFAULT_STATE_WAIT_TIME}''')
        parser_state.set_defaults(func=self.cmd_state)

        # ======================= program, preview, cut, auto

        parser_program = subparsers.add_parser('program', description="Put an input on program")
        parser_program.add_argument('input_id', type=int, help='The input id, e.g., 1 for camera 1')
        parser_program.set_defaults(func=self.cmd_program)

        parser_preview = subparsers.add_parser('preview', description="Put an input on preview")
        parser_preview.add_argument('input_id', type=int, help='The input id, e.g., 1 for camera 1')
        parser_preview.set_defaults(func=self.cmd_preview)

        parser_cut = subparsers.add_parser('cut', description="Cut between preview and program")
        parser_cut.set_defaults(func=self.cmd_cut)

        parser_auto = subparsers.add_parser('auto', description="Perform an auto transition between preview and program")
        parser_auto.set_defaults(func=self.cmd_auto)

        for p in (parser_program, parser_preview, parser_cut, parser_auto):
            p.add_argument('--settle-time', dest='settle_time', type=float, default=DEFAULT_SETTLE_TIME,
                            help=f'''Seconds to stay connected after sending, so the switcher can report the result. Default: {DEFAULT_SETTLE_TIME}''')

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"atem: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"atem: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
