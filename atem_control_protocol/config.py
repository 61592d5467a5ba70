#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Configuration of a switcher control session.

Values are resolved from, in increasing order of precedence:

  1. Built-in defaults
  2. A JSON configuration file containing a single object
  3. ATEM_* environment variables
  4. Explicit overrides (e.g., command line arguments)
"""

from __future__ import annotations

import os
import json
from copy import copy

from atem_control_protocol.internal_types import *
from .exceptions import AtemConfigError
from .constants import (
    ATEM_PORT,
    DEFAULT_LOCAL_PORT,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_CONNECTION_TIMEOUT,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_RETRANSMIT_BUFFER_SIZE,
    DEFAULT_TICK_INTERVAL,
  )

_FIELD_TYPES: Dict[str, type] = {
    'host': str,
    'port': int,
    'local_port': int,
    'bind_address': str,
    'handshake_timeout': float,
    'connection_timeout': float,
    'heartbeat_interval': float,
    'retransmit_buffer_size': int,
    'tick_interval': float,
  }

ENV_VAR_PREFIX = 'ATEM_'

_NULLABLE_FIELDS = ( 'host', 'bind_address' )

class AtemConfig:
  host: Optional[str] = None
  """The IP address or hostname of the switcher"""

  port: int = ATEM_PORT
  """The UDP port of the switcher"""

  local_port: int = DEFAULT_LOCAL_PORT
  """The local UDP port to bind; 0 selects an ephemeral port"""

  bind_address: Optional[str] = None
  """The local IP address to bind, or None for all interfaces"""

  handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
  connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT
  heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
  retransmit_buffer_size: int = DEFAULT_RETRANSMIT_BUFFER_SIZE
  tick_interval: float = DEFAULT_TICK_INTERVAL

  config_file: Optional[str] = None
  """The fully qualified pathname of the file the configuration was loaded from, if any"""

  def __init__(
        self,
        host: Optional[str]=None,
        port: int=ATEM_PORT,
        local_port: int=DEFAULT_LOCAL_PORT,
        bind_address: Optional[str]=None,
        handshake_timeout: float=DEFAULT_HANDSHAKE_TIMEOUT,
        connection_timeout: float=DEFAULT_CONNECTION_TIMEOUT,
        heartbeat_interval: float=DEFAULT_HEARTBEAT_INTERVAL,
        retransmit_buffer_size: int=DEFAULT_RETRANSMIT_BUFFER_SIZE,
        tick_interval: float=DEFAULT_TICK_INTERVAL,
      ):
    self.host = host
    self.port = port
    self.local_port = local_port
    self.bind_address = bind_address
    self.handshake_timeout = handshake_timeout
    self.connection_timeout = connection_timeout
    self.heartbeat_interval = heartbeat_interval
    self.retransmit_buffer_size = retransmit_buffer_size
    self.tick_interval = tick_interval

  @classmethod
  def field_names(cls) -> List[str]:
    return list(_FIELD_TYPES.keys())

  @classmethod
  def env_var_name(cls, key: str) -> str:
    return ENV_VAR_PREFIX + key.upper()

  @classmethod
  def _coerce(cls, key: str, value: Any) -> Any:
    if value is None:
      if not key in _NULLABLE_FIELDS:
        raise AtemConfigError(f"Config: Expected property {key} to be {_FIELD_TYPES[key].__name__}, got None")
      return None
    t = _FIELD_TYPES[key]
    if t is str:
      if not isinstance(value, str):
        raise AtemConfigError(f"Config: Expected property {key} to be str, got {type(value)}")
      return value
    if isinstance(value, bool):
      raise AtemConfigError(f"Config: Expected property {key} to be {t.__name__}, got bool")
    if t is int:
      if isinstance(value, str):
        try:
          value = int(value)
        except ValueError:
          pass
      if not isinstance(value, int):
        raise AtemConfigError(f"Config: Expected property {key} to be int, got {value!r}")
      return value
    if isinstance(value, str):
      try:
        value = float(value)
      except ValueError:
        pass
    if not isinstance(value, (int, float)):
      raise AtemConfigError(f"Config: Expected property {key} to be float, got {value!r}")
    return float(value)

  def set(self, key: str, value: Any) -> None:
    if not key in _FIELD_TYPES:
      raise AtemConfigError(f"Config: Unknown property {key}")
    setattr(self, key, self._coerce(key, value))

  def update_from_json_data(self, json_data: JsonableDict) -> None:
    if not isinstance(json_data, dict):
      raise AtemConfigError(f"Config: Expected config data to be dict, got {type(json_data)}")
    for key, value in json_data.items():
      self.set(key, value)

  def update_from_env(self, environ: Optional[Mapping[str, str]]=None) -> None:
    """Applies any ATEM_* environment variables. Empty values are ignored."""
    if environ is None:
      environ = os.environ
    for key in _FIELD_TYPES:
      value = environ.get(self.env_var_name(key), '')
      if value != '':
        self.set(key, value)

  def update(self, **overrides: Any) -> None:
    """Applies explicit overrides. Overrides whose value is None are ignored."""
    for key, value in overrides.items():
      if value is not None:
        self.set(key, value)

  @classmethod
  def from_json_data(cls, json_data: JsonableDict) -> AtemConfig:
    result = cls()
    result.update_from_json_data(json_data)
    return result

  @classmethod
  def load(cls, pathname: str) -> AtemConfig:
    """Loads a configuration from a JSON file."""
    config_file = os.path.abspath(os.path.expanduser(pathname))
    try:
      with open(config_file, 'r', encoding='utf-8') as f:
        json_data = json.load(f)
    except OSError as e:
      raise AtemConfigError(f"Config: Unable to read config file {config_file}: {e}") from e
    except json.JSONDecodeError as e:
      raise AtemConfigError(f"Config: Config file {config_file} is not valid JSON: {e}") from e
    result = cls.from_json_data(json_data)
    result.config_file = config_file
    return result

  @classmethod
  def resolve(
        cls,
        config_file: Optional[str]=None,
        environ: Optional[Mapping[str, str]]=None,
        **overrides: Any
      ) -> AtemConfig:
    """Builds a validated configuration from all sources, in order of precedence."""
    result = cls() if config_file is None else cls.load(config_file)
    result.update_from_env(environ)
    result.update(**overrides)
    result.validate()
    return result

  def validate(self, require_host: bool=True) -> None:
    if require_host and (self.host is None or self.host == ''):
      raise AtemConfigError(f"Config: A switcher host is required (set it in a config file, {self.env_var_name('host')}, or --host)")
    if not 0 < self.port <= 0xFFFF:
      raise AtemConfigError(f"Config: port must be between 1 and 65535, got {self.port}")
    if not 0 <= self.local_port <= 0xFFFF:
      raise AtemConfigError(f"Config: local_port must be between 0 and 65535, got {self.local_port}")
    for key in ('handshake_timeout', 'connection_timeout', 'heartbeat_interval', 'tick_interval'):
      value = getattr(self, key)
      if value <= 0.0:
        raise AtemConfigError(f"Config: {key} must be positive, got {value}")
    if self.retransmit_buffer_size <= 0:
      raise AtemConfigError(f"Config: retransmit_buffer_size must be positive, got {self.retransmit_buffer_size}")

  def to_json_data(self) -> JsonableDict:
    return { key: getattr(self, key) for key in _FIELD_TYPES }

  def copy(self) -> AtemConfig:
    return copy(self)

  def __eq__(self, other: Any) -> bool:
    if not isinstance(other, AtemConfig):
      return False
    return self.to_json_data() == other.to_json_data()

  def __str__(self) -> str:
    return f"AtemConfig({self.to_json_data()})"

  def __repr__(self) -> str:
    return str(self)
