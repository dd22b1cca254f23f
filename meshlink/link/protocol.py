"""Wire format of the value link.

Each application value is exactly one octet on a raw TCP byte stream: no
header, no delimiter, no acknowledgement.  The receiver reads byte by byte;
every byte is one sample and the last one wins.

Both ends use the same well-known port.
"""

from __future__ import annotations

from typing import Any

DEFAULT_PORT = 23456
MIN_VALUE = 0
MAX_VALUE = 255


def encode_value(value: int) -> bytes:
    """Return the one-octet encoding of *value* (0-255)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"value must be an int, got {type(value).__name__}")
    if not MIN_VALUE <= value <= MAX_VALUE:
        raise ValueError(f"value out of range 0-255: {value}")
    return bytes((value,))


async def read_value(reader: Any) -> int | None:
    """Read one sample from an ``asyncio.StreamReader``.

    Returns *None* at end of stream.  Connection errors propagate.
    """
    data = await reader.read(1)
    if not data:
        return None
    return data[0]
