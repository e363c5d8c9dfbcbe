"""
CONNECT tunnelling.

A tunnel moves through ``PENDING -> CONNECTING -> ESTABLISHED -> CLOSED``;
``ERROR`` is terminal and reachable from ``CONNECTING`` (target unreachable)
or ``ESTABLISHED`` (socket failure while relaying). Only the handshake is
recorded as a transaction; the relayed bytes are never inspected.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Dict, List, Optional, Tuple

from opentelemetry import trace

from localproxy.errors import TunnelError
from localproxy.models import RequestLog, ResponseLog, utc_timestamp
from localproxy.transactions import TransactionStore
from localproxy.utils.exception_logging import format_exception_message
from localproxy.utils.streams import close_writer, splice

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

DEFAULT_TUNNEL_PORT = 443

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\n\r\n"


class TunnelState(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    CLOSED = "closed"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    TunnelState.PENDING: {TunnelState.CONNECTING},
    TunnelState.CONNECTING: {TunnelState.ESTABLISHED, TunnelState.ERROR},
    TunnelState.ESTABLISHED: {TunnelState.CLOSED, TunnelState.ERROR},
    TunnelState.CLOSED: set(),
    TunnelState.ERROR: set(),
}


def parse_connect_target(target: str) -> Tuple[str, int]:
    """
    Split a CONNECT request target into host and port.

    The port falls back to 443 when missing or not a number. Bracketed IPv6
    literals (``[::1]:8443``) are unwrapped.
    """
    target = target.strip()
    if target.startswith("["):
        host, _, rest = target[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif target.count(":") == 1:
        host, _, port_text = target.partition(":")
    else:
        # bare hostname, or an unbracketed IPv6 literal
        host, port_text = target, ""
    try:
        port = int(port_text)
    except ValueError:
        port = DEFAULT_TUNNEL_PORT
    if port <= 0 or port > 65535:
        port = DEFAULT_TUNNEL_PORT
    return host, port


class ConnectTunnel:
    def __init__(
        self,
        store: TransactionStore,
        target: str,
        headers: Optional[Dict[str, str]] = None,
        source_ip: str = "unknown",
    ):
        self.store = store
        self.target = target
        self.headers = headers or {}
        self.source_ip = source_ip
        self.host, self.port = parse_connect_target(target)
        self.state = TunnelState.PENDING
        self.history: List[TunnelState] = [TunnelState.PENDING]
        self.transaction_id: Optional[str] = None
        self.error: Optional[str] = None
        self.bytes_up = 0
        self.bytes_down = 0
        self._started = time.monotonic()
        self._writers: List[asyncio.StreamWriter] = []

    def _transition(self, new_state: TunnelState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid tunnel transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _complete(self, status_code: int, body: str, error: Optional[str] = None):
        self.store.complete(
            self.transaction_id,
            ResponseLog(
                timestamp=utc_timestamp(),
                statusCode=status_code,
                headers={},
                body=body,
                responseTime=self._elapsed_ms(),
            ),
            error=error,
        )

    async def _open_upstream(
        self,
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            raise TunnelError(format_exception_message(e), self.host, self.port) from e

    async def run(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> TunnelState:
        """Drive the tunnel to a terminal state; always closes the client."""
        self._started = time.monotonic()
        self._writers.append(client_writer)
        self.transaction_id = self.store.begin(
            RequestLog(
                timestamp=utc_timestamp(),
                method="CONNECT",
                url=self.target,
                headers=self.headers,
                sourceIp=self.source_ip,
                userAgent=self.headers.get("user-agent"),
            )
        )
        logger.debug(
            f"[Tunnel] HTTPS CONNECT request {self.transaction_id} "
            f"to {self.host}:{self.port}"
        )

        with tracer.start_as_current_span("connect_tunnel") as span:
            span.set_attribute("tunnel.host", self.host)
            span.set_attribute("tunnel.port", self.port)

            self._transition(TunnelState.CONNECTING)
            try:
                upstream_reader, upstream_writer = await self._open_upstream()
            except TunnelError as e:
                self.error = str(e)
                self._transition(TunnelState.ERROR)
                span.set_attribute("tunnel.error", self.error)
                logger.error(
                    f"[Tunnel] HTTPS tunnel error {self.transaction_id} "
                    f"{self.host}:{self.port}: {self.error}"
                )
                self._complete(502, f"Tunnel Error: {self.error}", error=self.error)
                client_writer.write(BAD_GATEWAY)
                try:
                    await client_writer.drain()
                except ConnectionError:
                    pass
                await close_writer(client_writer)
                return self.state

            self._writers.append(upstream_writer)
            client_writer.write(CONNECTION_ESTABLISHED)
            self._complete(200, "Connection Established")
            self._transition(TunnelState.ESTABLISHED)
            span.set_attribute("tunnel.status_code", 200)

            try:
                await client_writer.drain()
                self.bytes_up, self.bytes_down = await splice(
                    client_reader, client_writer, upstream_reader, upstream_writer
                )
            except OSError as e:
                self.error = format_exception_message(e)
                self._transition(TunnelState.ERROR)
                logger.error(
                    f"[Tunnel] Client socket error in HTTPS tunnel "
                    f"{self.transaction_id}: {self.error}"
                )
            finally:
                await close_writer(client_writer)
                await close_writer(upstream_writer)

            if self.state == TunnelState.ESTABLISHED:
                self._transition(TunnelState.CLOSED)
            span.set_attribute("tunnel.bytes_up", self.bytes_up)
            span.set_attribute("tunnel.bytes_down", self.bytes_down)
            logger.debug(
                f"[Tunnel] Closed {self.transaction_id} {self.host}:{self.port} "
                f"up={self.bytes_up} down={self.bytes_down} "
                f"duration_ms={self._elapsed_ms()}"
            )
            return self.state

    async def abort(self) -> None:
        """Close both sides of the tunnel; used on shutdown."""
        for writer in list(self._writers):
            await close_writer(writer)
