import asyncio
import socket

import pytest

from localproxy.tunnel import ConnectTunnel, TunnelState, parse_connect_target
from localproxy.tunnel.connect import BAD_GATEWAY, CONNECTION_ESTABLISHED


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _echo(reader, writer):
    while True:
        data = await reader.read(1024)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


async def _run_tunnel_server(tunnel):
    """Serve one connection through ``tunnel``; returns the server and its port."""
    done = asyncio.get_running_loop().create_future()

    async def handle(reader, writer):
        try:
            done.set_result(await tunnel.run(reader, writer))
        except Exception as e:
            done.set_exception(e)

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1], done


class TestParseConnectTarget:
    def test_host_and_port(self):
        assert parse_connect_target("example.com:8443") == ("example.com", 8443)

    def test_missing_port_defaults_to_443(self):
        assert parse_connect_target("example.com") == ("example.com", 443)

    def test_non_numeric_port_defaults_to_443(self):
        assert parse_connect_target("example.com:https") == ("example.com", 443)

    def test_bracketed_ipv6(self):
        assert parse_connect_target("[::1]:9443") == ("::1", 9443)
        assert parse_connect_target("[2001:db8::1]") == ("2001:db8::1", 443)


@pytest.mark.asyncio
async def test_tunnel_relays_bytes_both_ways(store, completed_transactions):
    echo_server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    echo_port = echo_server.sockets[0].getsockname()[1]
    tunnel = ConnectTunnel(
        store,
        f"127.0.0.1:{echo_port}",
        headers={"user-agent": "curl/8.0"},
        source_ip="127.0.0.1",
    )
    server, port, done = await _run_tunnel_server(tunnel)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    handshake = await reader.readexactly(len(CONNECTION_ESTABLISHED))
    assert handshake == CONNECTION_ESTABLISHED

    payload = bytes(range(256)) * 4
    writer.write(payload)
    await writer.drain()
    echoed = await reader.readexactly(len(payload))
    assert echoed == payload

    writer.close()
    state = await asyncio.wait_for(done, timeout=5)

    assert state == TunnelState.CLOSED
    assert tunnel.history == [
        TunnelState.PENDING,
        TunnelState.CONNECTING,
        TunnelState.ESTABLISHED,
        TunnelState.CLOSED,
    ]
    assert tunnel.bytes_up == len(payload)
    assert tunnel.bytes_down == len(payload)

    assert len(completed_transactions) == 1
    transaction = completed_transactions[0]
    assert transaction.request.method == "CONNECT"
    assert transaction.request.url == f"127.0.0.1:{echo_port}"
    assert transaction.request.userAgent == "curl/8.0"
    assert transaction.response.statusCode == 200
    assert transaction.response.body == "Connection Established"
    assert store.size() == 0

    server.close()
    echo_server.close()
    await server.wait_closed()
    await echo_server.wait_closed()


@pytest.mark.asyncio
async def test_upstream_close_closes_client(store):
    async def close_immediately(reader, writer):
        writer.write(b"bye")
        await writer.drain()
        writer.close()

    upstream = await asyncio.start_server(close_immediately, "127.0.0.1", 0)
    upstream_port = upstream.sockets[0].getsockname()[1]
    tunnel = ConnectTunnel(store, f"127.0.0.1:{upstream_port}")
    server, port, done = await _run_tunnel_server(tunnel)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    await reader.readexactly(len(CONNECTION_ESTABLISHED))
    rest = await asyncio.wait_for(reader.read(), timeout=5)

    assert rest == b"bye"
    assert await asyncio.wait_for(done, timeout=5) == TunnelState.CLOSED

    writer.close()
    server.close()
    upstream.close()
    await server.wait_closed()
    await upstream.wait_closed()


@pytest.mark.asyncio
async def test_unreachable_target_answers_bad_gateway(store, completed_transactions):
    tunnel = ConnectTunnel(store, f"127.0.0.1:{_unused_port()}")
    server, port, done = await _run_tunnel_server(tunnel)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    reply = await asyncio.wait_for(reader.read(), timeout=5)

    assert reply == BAD_GATEWAY
    assert await asyncio.wait_for(done, timeout=5) == TunnelState.ERROR
    assert tunnel.history == [
        TunnelState.PENDING,
        TunnelState.CONNECTING,
        TunnelState.ERROR,
    ]
    assert len(completed_transactions) == 1
    transaction = completed_transactions[0]
    assert transaction.response.statusCode == 502
    assert transaction.response.body.startswith("Tunnel Error: ")
    assert transaction.error == tunnel.error

    writer.close()
    server.close()
    await server.wait_closed()


@pytest.mark.asyncio
async def test_abort_closes_established_tunnel(store):
    echo_server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    echo_port = echo_server.sockets[0].getsockname()[1]
    tunnel = ConnectTunnel(store, f"127.0.0.1:{echo_port}")
    server, port, done = await _run_tunnel_server(tunnel)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    await reader.readexactly(len(CONNECTION_ESTABLISHED))
    await tunnel.abort()

    assert await asyncio.wait_for(reader.read(), timeout=5) == b""
    assert await asyncio.wait_for(done, timeout=5) in (
        TunnelState.CLOSED,
        TunnelState.ERROR,
    )

    writer.close()
    server.close()
    echo_server.close()
    await server.wait_closed()
    await echo_server.wait_closed()
