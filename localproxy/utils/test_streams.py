import asyncio

import pytest

from localproxy.utils.streams import splice


async def _connected_pair():
    """Return (client_reader, client_writer, server_reader, server_writer)."""
    accepted = asyncio.get_running_loop().create_future()

    async def on_connect(reader, writer):
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    client_reader, client_writer = await asyncio.open_connection("127.0.0.1", port)
    server_reader, server_writer = await accepted
    server.close()
    return client_reader, client_writer, server_reader, server_writer


@pytest.mark.asyncio
async def test_splice_relays_until_one_side_closes():
    # left: outer client <-> proxy side A; right: proxy side B <-> outer upstream
    left_client_r, left_client_w, a_reader, a_writer = await _connected_pair()
    b_reader, b_writer, right_server_r, right_server_w = await _connected_pair()

    relay = asyncio.create_task(splice(a_reader, a_writer, b_reader, b_writer))

    left_client_w.write(b"request")
    await left_client_w.drain()
    assert await right_server_r.readexactly(7) == b"request"

    right_server_w.write(b"response!")
    await right_server_w.drain()
    assert await left_client_r.readexactly(9) == b"response!"

    left_client_w.close()
    a_to_b, b_to_a = await asyncio.wait_for(relay, timeout=5)

    assert (a_to_b, b_to_a) == (7, 9)
    # the far side observes the close
    assert await asyncio.wait_for(right_server_r.read(), timeout=5) == b""
    right_server_w.close()
