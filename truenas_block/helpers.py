#!/usr/bin/env python3
"""
Shared helpers: the generic TTL result cache plus size and property utilities.
"""

import re
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

GIB = 1024 ** 3

_SIZE_UNITS = {
    'K': 1024,
    'M': 1024 ** 2,
    'G': 1024 ** 3,
    'T': 1024 ** 4,
    'P': 1024 ** 5,
}


KeyType = TypeVar('KeyType')
ValueType = TypeVar('ValueType')


class ResultCache(Generic[KeyType, ValueType]):
    """
    Thread-safe TTL cache for read-mostly appliance queries.

    The lock only guards the map. fetch functions run outside it, so a slow
    remote query never blocks lookups for other keys. Oldest entries are
    evicted once max_size is reached.
    """

    def __init__(self, ttl: float = 60.0, max_size: int = 256,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: "OrderedDict[KeyType, Tuple[float, ValueType]]" = OrderedDict()
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: KeyType) -> Optional[ValueType]:
        """Return a live cached value, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: KeyType, value: ValueType, ttl: Optional[float] = None) -> None:
        expires = self._clock() + (self._ttl if ttl is None else ttl)
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (expires, value)

    def get_or_fetch(self, key: KeyType, fetch: Callable[[], ValueType],
                     ttl: Optional[float] = None) -> ValueType:
        """Return the cached value for key, calling fetch() on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > self._clock():
                self.hits += 1
                return entry[1]
            self.misses += 1

        value = fetch()
        self.set(key, value, ttl)
        return value

    def invalidate(self, *keys: KeyType) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: KeyType) -> bool:
        return self.get(key) is not None


def parse_size(size: int | str) -> int:
    """
    Convert a size such as "500G", "1.5T" or 4096 to bytes.

    Raises:
        ValueError: if the value cannot be parsed
    """
    if isinstance(size, bool):
        raise ValueError(f"Invalid size: {size!r}")
    if isinstance(size, int):
        return size

    text = str(size).strip().upper()
    if text.endswith('IB'):
        text = text[:-2]
    elif text.endswith('B') and len(text) > 1 and text[-2] in _SIZE_UNITS:
        text = text[:-1]

    if text and text[-1] in _SIZE_UNITS:
        multiplier = _SIZE_UNITS[text[-1]]
        number = text[:-1]
    else:
        multiplier = 1
        number = text

    try:
        return int(float(number) * multiplier)
    except ValueError:
        raise ValueError(f"Invalid size: {size!r}") from None


def format_gib(num_bytes: int | float) -> str:
    """Render bytes as GiB with two decimals, e.g. '3.50 GiB'."""
    return f"{num_bytes / GIB:.2f} GiB"


def format_size(num_bytes: int | float) -> str:
    """Render bytes with the largest binary unit that keeps the value >= 1."""
    value = float(num_bytes)
    for unit in ('B', 'KiB', 'MiB', 'GiB', 'TiB'):
        if abs(value) < 1024 or unit == 'TiB':
            return f"{value:.2f} {unit}" if unit != 'B' else f"{int(value)} B"
        value /= 1024
    return f"{value:.2f} TiB"


def align_up(value: int, alignment: int) -> int:
    if alignment <= 0:
        return value
    remainder = value % alignment
    return value if remainder == 0 else value + alignment - remainder


def prop_value(prop: Any) -> Any:
    """
    Unwrap a dataset property.

    The appliance reports properties either as plain values or as dicts with
    'parsed', 'rawvalue' and 'value' members.
    """
    if isinstance(prop, dict):
        for field in ('parsed', 'rawvalue', 'value'):
            if prop.get(field) is not None:
                return prop[field]
        return None
    return prop


def prop_bytes(prop: Any) -> Optional[int]:
    value = prop_value(prop)
    if value is None or value == '':
        return None
    try:
        return parse_size(value) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return None


_UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9._-]')


def sanitize_name(name: str) -> str:
    """Replace characters the appliance does not accept in a dataset leaf."""
    return _UNSAFE_NAME_CHARS.sub('_', name)


def summarize(values: Dict[str, Any]) -> str:
    """Render a dict as 'key=value' pairs for one-line log messages."""
    parts = []
    for key, value in values.items():
        formatted = (
            f"{value:.3f}" if isinstance(value, float) else
            f"{value}" if value is not None else
            "-"
        )
        parts.append(f"{key}={formatted}")
    return " ".join(parts)
