#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from __future__ import annotations

from typing import Optional

class AtemError(Exception):
  """Base class for all error exceptions defined by this package."""
  pass

class AtemPacketError(AtemError):
  """A frame or command block could not be decoded or encoded."""
  pass

class AtemConfigError(AtemError):
  """A configuration value is missing or invalid."""
  pass

class AtemNotConnectedError(AtemError):
  """A control operation was requested while the session is not connected."""
  pass

class AtemConnectError(AtemError):
  """The handshake with the switcher failed, or an established session was lost."""
  pass

class AtemUnsupportedCommandError(AtemError, NotImplementedError):
  """A control operation has no verified wire format and is not implemented."""

  operation: str
  tag: Optional[str]

  def __init__(self, operation: str, tag: Optional[str]=None):
    msg = f"{operation} is not supported"
    if tag is not None:
      msg += f" (command '{tag}' has no verified wire format)"
    super().__init__(msg)
    self.operation = operation
    self.tag = tag
