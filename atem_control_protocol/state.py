#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Last-known state of the switcher, as reported by the switcher itself.

The store is only ever updated from confirmed inbound commands; sending a control
command does not change it. Field changes set a dirty flag so that any number of
changes observed within one processing tick yield a single state-changed notification.
"""

from __future__ import annotations

from atem_control_protocol.internal_types import *

class AtemSwitcherState:
    """An immutable snapshot of the switcher state."""

    program_input: int
    """The input id currently on program"""

    preview_input: int
    """The input id currently on preview"""

    in_transition: bool
    """True while a transition is in progress"""

    transition_position: int
    """Position of the transition in progress"""

    def __init__(
            self,
            program_input: int=0,
            preview_input: int=0,
            in_transition: bool=False,
            transition_position: int=0,
          ):
        self.program_input = program_input
        self.preview_input = preview_input
        self.in_transition = in_transition
        self.transition_position = transition_position

    def to_json_data(self) -> JsonableDict:
        return {
            "program_input": self.program_input,
            "preview_input": self.preview_input,
            "in_transition": self.in_transition,
            "transition_position": self.transition_position,
          }

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, AtemSwitcherState):
            return False
        return self.to_json_data() == other.to_json_data()

    def __str__(self) -> str:
        return (f"AtemSwitcherState(program={self.program_input}, preview={self.preview_input}, "
                f"in_transition={self.in_transition}, position={self.transition_position})")

    def __repr__(self) -> str:
        return str(self)

class AtemStateStore:
    """Holds the mutable switcher state and its dirty flag.

    No inbound command currently reports transition progress, so in_transition and
    transition_position keep their initial values.

    Each setter returns True iff the stored value actually changed.
    """

    _state: AtemSwitcherState
    _dirty: bool = False

    def __init__(self):
        self._state = AtemSwitcherState()

    @property
    def snapshot(self) -> AtemSwitcherState:
        """A copy of the current state that is not affected by later updates"""
        s = self._state
        return AtemSwitcherState(s.program_input, s.preview_input, s.in_transition, s.transition_position)

    @property
    def program_input(self) -> int:
        return self._state.program_input

    @property
    def preview_input(self) -> int:
        return self._state.preview_input

    @property
    def in_transition(self) -> bool:
        return self._state.in_transition

    @property
    def transition_position(self) -> int:
        return self._state.transition_position

    @property
    def dirty(self) -> bool:
        """True if any field has changed since the last call to take_dirty()"""
        return self._dirty

    def take_dirty(self) -> bool:
        """Returns the dirty flag and clears it."""
        dirty = self._dirty
        self._dirty = False
        return dirty

    def set_program_input(self, value: int) -> bool:
        if value == self._state.program_input:
            return False
        self._state.program_input = value
        self._dirty = True
        return True

    def set_preview_input(self, value: int) -> bool:
        if value == self._state.preview_input:
            return False
        self._state.preview_input = value
        self._dirty = True
        return True

