#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Command blocks understood by this package.

Outbound, builders for the control commands with a known wire format:

    CPgI    change program input      payload: input id (u32, big-endian)
    CPvI    change preview input      payload: input id (u32, big-endian)
    DCut    cut                       payload: mix effect index (u32, big-endian)
    DAut    auto transition           payload: mix effect index (u32, big-endian)

Inbound, a dispatcher that applies state reports from the switcher to an AtemStateStore:

    PrgI    program input             payload bytes 2-3: input id
    PrvI    preview input             payload bytes 2-3: input id

Any other inbound tag is skipped.
"""

from __future__ import annotations

import struct

from atem_control_protocol.internal_types import *
from .pkg_logging import logger
from .exceptions import AtemUnsupportedCommandError
from .atem_packet import AtemCommandBlock, iter_command_blocks
from .state import AtemStateStore

CHANGE_PROGRAM_INPUT_TAG = 'CPgI'
CHANGE_PREVIEW_INPUT_TAG = 'CPvI'
CUT_TAG = 'DCut'
AUTO_TRANSITION_TAG = 'DAut'

PROGRAM_INPUT_TAG = 'PrgI'
PREVIEW_INPUT_TAG = 'PrvI'

DEFAULT_MIX_EFFECT = 0
"""Transitions are always performed on the first mix effect bus."""

_INPUT_ID_STRUCT = struct.Struct('>H')
_INPUT_ID_OFFSET = 2
_MIN_INPUT_PAYLOAD_SIZE = 4

UNSUPPORTED_COMMANDS: Dict[str, str] = {
    'fade_to_black': 'FtbA',
    'set_fade_to_black_rate': 'FtbC',
    'set_transition_position': 'CTPs',
    'set_preview_transition': 'CTPr',
    'set_aux_source': 'CAuS',
    'set_downstream_keyer_on_air': 'CDsL',
    'downstream_keyer_auto': 'DDsA',
    'set_upstream_keyer_on_air': 'CKOn',
    'set_keyer_cut_source': 'CKeC',
    'set_keyer_fill_source': 'CKeF',
    'set_color_generator': 'CClV',
    'set_media_player_source': 'MPCS',
    'set_multiviewer_window_source': 'CMvI',
    'set_audio_input_gain': 'CAIP',
    'set_audio_master_gain': 'CAMP',
  }
"""Control operations the switcher offers that have no verified wire format, with the
   tag of the command each one would send."""

def build_change_program_input(input_id: int) -> AtemCommandBlock:
    return AtemCommandBlock.create_u32(CHANGE_PROGRAM_INPUT_TAG, input_id)

def build_change_preview_input(input_id: int) -> AtemCommandBlock:
    return AtemCommandBlock.create_u32(CHANGE_PREVIEW_INPUT_TAG, input_id)

def build_cut(mix_effect: int=DEFAULT_MIX_EFFECT) -> AtemCommandBlock:
    return AtemCommandBlock.create_u32(CUT_TAG, mix_effect)

def build_auto_transition(mix_effect: int=DEFAULT_MIX_EFFECT) -> AtemCommandBlock:
    return AtemCommandBlock.create_u32(AUTO_TRANSITION_TAG, mix_effect)

def raise_unsupported(operation: str) -> NoReturn:
    """Raises AtemUnsupportedCommandError for a named control operation."""
    raise AtemUnsupportedCommandError(operation, UNSUPPORTED_COMMANDS.get(operation))

InputChangedHandler = Callable[[int], None]
"""Called with the new input id when the switcher reports a change."""

class AtemCommandDispatcher:
    """Applies the command blocks in inbound payloads to an AtemStateStore.

    The per-field handlers are called synchronously, only when the stored value actually changes.
    """

    store: AtemStateStore

    on_program_input: Optional[InputChangedHandler]
    on_preview_input: Optional[InputChangedHandler]

    _handlers: Dict[str, Callable[[AtemCommandBlock], None]]

    def __init__(
            self,
            store: AtemStateStore,
            on_program_input: Optional[InputChangedHandler]=None,
            on_preview_input: Optional[InputChangedHandler]=None,
          ):
        self.store = store
        self.on_program_input = on_program_input
        self.on_preview_input = on_preview_input
        self._handlers = {
            PROGRAM_INPUT_TAG: self._handle_program_input,
            PREVIEW_INPUT_TAG: self._handle_preview_input,
          }

    @property
    def known_tags(self) -> List[str]:
        return list(self._handlers.keys())

    def dispatch(self, payload: Union[bytes, bytearray, memoryview]) -> int:
        """Processes every well-formed command block in payload. Returns the number of blocks handled
           by a known tag."""
        n = 0
        for block in iter_command_blocks(payload):
            handler = self._handlers.get(block.tag)
            if handler is None:
                logger.debug(f"Skipping command '{block.tag}' ({block.length} bytes)")
                continue
            handler(block)
            n += 1
        return n

    @staticmethod
    def _decode_input_id(block: AtemCommandBlock) -> Optional[int]:
        if len(block.payload) < _MIN_INPUT_PAYLOAD_SIZE:
            logger.debug(f"Ignoring short '{block.tag}' payload: {block.payload.hex()}")
            return None
        return _INPUT_ID_STRUCT.unpack_from(block.payload, _INPUT_ID_OFFSET)[0]

    def _handle_program_input(self, block: AtemCommandBlock) -> None:
        input_id = self._decode_input_id(block)
        if input_id is not None and self.store.set_program_input(input_id):
            logger.info(f"Program input changed to {input_id}")
            if self.on_program_input is not None:
                self.on_program_input(input_id)

    def _handle_preview_input(self, block: AtemCommandBlock) -> None:
        input_id = self._decode_input_id(block)
        if input_id is not None and self.store.set_preview_input(input_id):
            logger.info(f"Preview input changed to {input_id}")
            if self.on_preview_input is not None:
                self.on_preview_input(input_id)
