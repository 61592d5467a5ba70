#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints used internally by this package"""

from typing import (
    Dict, List, Optional, Union, Any, TypeVar, Tuple, overload,
    Callable, Iterable, Iterator, Generator, cast, TYPE_CHECKING,
    Mapping, MutableMapping, Awaitable, Set, Sequence, Deque,
    AsyncIterator, AsyncIterable, AsyncContextManager, NamedTuple, NoReturn,
  )

from types import TracebackType

from typing_extensions import Self, TypeAlias

JsonableTypes = ( str, int, float, bool, dict, list )
# A tuple of types to use for isinstance checking of JSON-serializable types. Excludes None. Useful for isinstance.

if TYPE_CHECKING:
    Jsonable: TypeAlias = Union[str, int, float, bool, None, Dict[str, 'Jsonable'], List['Jsonable']]
    """A type hint for a simple JSON-serializable value; i.e., str, int, float, bool, None, Dict[str, Jsonable], List[Jsonable]"""
else:
    Jsonable = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]
    """A type hint for a simple JSON-serializable value; i.e., str, int, float, bool, None, Dict[str, Jsonable], List[Jsonable]"""

JsonableDict = Dict[str, Jsonable]
"""A type hint for a simple JSON-serializable dict; i.e., Dict[str, Jsonable]"""

HostAndPort = Tuple[str, int]
"""A type hint for a (host, port) socket address"""

Clock = Callable[[], float]
"""A monotonic time source returning seconds, e.g., time.monotonic"""

Sleeper = Callable[[float], None]
"""A blocking sleep function taking seconds, e.g., time.sleep"""
