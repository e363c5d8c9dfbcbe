import asyncio

CHUNK_SIZE = 64 * 1024
# How long the second direction may keep draining once the first has ended
CLOSE_GRACE = 1.0


async def pipe(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Copy bytes from ``reader`` to ``writer`` until EOF; returns the byte count."""
    total = 0
    try:
        while True:
            data = await reader.read(chunk_size)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            total += len(data)
    except (ConnectionResetError, BrokenPipeError):
        pass
    return total


async def close_writer(writer: asyncio.StreamWriter) -> None:
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        # peer already gone
        pass


async def splice(
    a_reader: asyncio.StreamReader,
    a_writer: asyncio.StreamWriter,
    b_reader: asyncio.StreamReader,
    b_writer: asyncio.StreamWriter,
    close_grace: float = CLOSE_GRACE,
) -> tuple[int, int]:
    """
    Relay bytes in both directions until either side reaches EOF, then close both.

    Returns the number of bytes relayed (a -> b, b -> a). A socket error other
    than a peer reset is re-raised once both sides are closed.
    """
    a_to_b = asyncio.create_task(pipe(a_reader, b_writer))
    b_to_a = asyncio.create_task(pipe(b_reader, a_writer))
    try:
        await asyncio.wait({a_to_b, b_to_a}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # closing a transport feeds EOF to its reader, which ends the other pipe
        await close_writer(a_writer)
        await close_writer(b_writer)
        await asyncio.wait({a_to_b, b_to_a}, timeout=close_grace)
        for task in (a_to_b, b_to_a):
            if not task.done():
                task.cancel()
        await asyncio.gather(a_to_b, b_to_a, return_exceptions=True)
    for task in (a_to_b, b_to_a):
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return _relayed(a_to_b), _relayed(b_to_a)


def _relayed(task: asyncio.Task) -> int:
    if task.cancelled() or task.exception() is not None:
        return 0
    return task.result()
