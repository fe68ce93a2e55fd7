"""Open the duplex channel advertised by the helper's handshake line."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

#: Reader buffer limit for the duplex channel (1 MB).
_STREAM_LIMIT = 1_048_576

Channel = tuple[asyncio.StreamReader, asyncio.StreamWriter]

#: Signature of a channel opener; sessions accept any such coroutine function.
ChannelOpener = Callable[[str], Awaitable[Channel]]


async def open_channel(address: str) -> Channel:
    """Connect to *address*.

    ``tcp://host:port`` opens a TCP connection; anything else is treated as a
    Unix domain socket path.  Raises ``OSError`` on connection failure and
    ``ValueError`` for an unusable address.
    """
    if address.startswith("tcp://"):
        parts = urlsplit(address)
        if not parts.hostname or parts.port is None:
            msg = f"Invalid TCP channel address: {address}"
            raise ValueError(msg)
        return await asyncio.open_connection(
            parts.hostname, parts.port, limit=_STREAM_LIMIT
        )
    if not address:
        msg = "Empty channel address"
        raise ValueError(msg)
    return await asyncio.open_unix_connection(address, limit=_STREAM_LIMIT)
