"""
Front TCP listener.

HTTP servers such as uvicorn only understand origin-form requests, while a
forward proxy receives absolute-form targets (``GET http://host/path``) and
``CONNECT host:port``. The listener reads the request head of each client
connection and either

* hands ``CONNECT`` to a :class:`ConnectTunnel`, or
* rewrites the request line to origin-form and bridges the connection to the
  FastAPI app, served by an embedded uvicorn on a private Unix socket.

Bridged connections carry exactly one request.
"""

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple
from urllib.parse import urlsplit

import uvicorn
from fastapi import FastAPI

from localproxy.config import ProxyConfig
from localproxy.transactions import TransactionStore
from localproxy.tunnel import ConnectTunnel
from localproxy.utils.exception_logging import log_exception_with_details
from localproxy.utils.streams import close_writer, pipe
from localproxy.vars import ABSOLUTE_FORM_HEADER, CLIENT_ADDR_HEADER

logger = logging.getLogger("uvicorn.error")

MAX_HEAD_BYTES = 64 * 1024
HEAD_TERMINATOR = b"\r\n\r\n"

BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\nConnection: close\r\nContent-Length: 0\r\n\r\n"
METHOD_NOT_ALLOWED = (
    b"HTTP/1.1 405 Method Not Allowed\r\nConnection: close\r\nContent-Length: 0\r\n\r\n"
)
SERVICE_UNAVAILABLE = (
    b"HTTP/1.1 503 Service Unavailable\r\nConnection: close\r\nContent-Length: 0\r\n\r\n"
)

# Rewritten by the listener on every bridged request
_BRIDGE_OWNED_HEADERS = {
    "connection",
    "proxy-connection",
    "keep-alive",
    CLIENT_ADDR_HEADER,
    ABSOLUTE_FORM_HEADER,
}


class MalformedRequestError(ValueError):
    pass


@dataclass
class RequestHead:
    method: str
    target: str
    version: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    absolute_form: bool = False


def parse_request_head(data: bytes) -> RequestHead:
    lines = data.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise MalformedRequestError(f"Malformed request line: {lines[0]!r}")
    method, target, version = parts
    if not version.startswith("HTTP/"):
        raise MalformedRequestError(f"Unsupported protocol: {version!r}")

    headers = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise MalformedRequestError(f"Malformed header line: {line!r}")
        headers.append((name.strip(), value.strip()))
    return RequestHead(method.upper(), target, version, headers)


async def read_request_head(reader: asyncio.StreamReader) -> Optional[RequestHead]:
    """Read and parse one request head; None if the client left first."""
    try:
        data = await reader.readuntil(HEAD_TERMINATOR)
    except asyncio.IncompleteReadError:
        return None
    except asyncio.LimitOverrunError as e:
        raise MalformedRequestError("Request head too large") from e
    return parse_request_head(data)


def to_origin_form(head: RequestHead) -> RequestHead:
    """
    Rewrite an absolute-form request for the ASGI app.

    The scheme moves to ``X-Forwarded-Proto`` and the authority to ``Host`` so
    the catch-all route can rebuild the full URL. The result is flagged so the
    app forwards it even when its path matches a control route.
    """
    if "://" not in head.target:
        return head
    parts = urlsplit(head.target)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    headers = [
        (name, value)
        for name, value in head.headers
        if name.lower() not in ("host", "x-forwarded-proto")
    ]
    headers.insert(0, ("Host", parts.netloc))
    headers.append(("X-Forwarded-Proto", parts.scheme or "http"))
    return RequestHead(head.method, path, head.version, headers, absolute_form=True)


def encode_bridge_head(head: RequestHead, peer_ip: str) -> bytes:
    lines = [f"{head.method} {head.target} {head.version}"]
    for name, value in head.headers:
        if name.lower() in _BRIDGE_OWNED_HEADERS:
            continue
        lines.append(f"{name}: {value}")
    lines.append(f"{CLIENT_ADDR_HEADER}: {peer_ip}")
    if head.absolute_form:
        lines.append(f"{ABSOLUTE_FORM_HEADER}: 1")
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the process entry point."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ProxyListener:
    def __init__(
        self,
        config: ProxyConfig,
        app: FastAPI,
        store: TransactionStore,
        bind_port: Optional[int] = None,
    ):
        self.config = config
        self.app = app
        self.store = store
        # overrides config.port for binding; 0 picks a free port
        self.bind_port = bind_port
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._asgi_server: Optional[_EmbeddedServer] = None
        self._asgi_task: Optional[asyncio.Task] = None
        self._socket_dir: Optional[str] = None
        self._socket_path: Optional[str] = None
        self._tunnels: Set[ConnectTunnel] = set()
        self._handlers: Set[asyncio.Task] = set()
        self._writers: Set[asyncio.StreamWriter] = set()

    async def _start_asgi(self) -> None:
        self._socket_dir = tempfile.mkdtemp(prefix="localproxy-")
        self._socket_path = os.path.join(self._socket_dir, "asgi.sock")
        uvicorn_config = uvicorn.Config(
            self.app,
            uds=self._socket_path,
            lifespan="off",
            proxy_headers=False,
            log_config=None,
            access_log=False,
        )
        self._asgi_server = _EmbeddedServer(uvicorn_config)
        self._asgi_task = asyncio.create_task(self._asgi_server.serve())
        while not self._asgi_server.started:
            if self._asgi_task.done():
                # surfaces the startup exception, if any
                self._asgi_task.result()
                raise RuntimeError("ASGI server exited during startup")
            await asyncio.sleep(0.01)

    async def start(self) -> int:
        """
        Start the ASGI server and the public listener; returns the bound port.

        The bound port is written back to the config, which the control API
        reports and points the system proxy at.
        """
        await self._start_asgi()
        port = self.config.port if self.bind_port is None else self.bind_port
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.config.host,
            port,
            limit=MAX_HEAD_BYTES,
        )
        self.port = self._server.sockets[0].getsockname()[1]
        self.config.port = self.port
        logger.info(
            f"Proxy server listening on {self.config.host}:{self.port}",
            extra={
                "data": {
                    "tunnel": self.config.tunnel_enabled,
                    "systemProxy": self.config.system_proxy_enabled,
                }
            },
        )
        return self.port

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        self._handlers.add(task)
        self._writers.add(writer)
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "unknown"
        try:
            try:
                head = await read_request_head(reader)
            except MalformedRequestError as e:
                logger.warning(f"[Listener] Rejected request from {peer_ip}: {e}")
                writer.write(BAD_REQUEST)
                await writer.drain()
                return
            if head is None:
                return

            if head.method == "CONNECT":
                await self._tunnel(head, peer_ip, reader, writer)
            else:
                await self._bridge_to_asgi(head, peer_ip, reader, writer)
        except (ConnectionError, asyncio.CancelledError):
            pass
        except Exception as e:
            log_exception_with_details(logger, "[Listener]", e)
        finally:
            await close_writer(writer)
            self._writers.discard(writer)
            self._handlers.discard(task)

    async def _tunnel(
        self,
        head: RequestHead,
        peer_ip: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if not self.config.tunnel_enabled:
            writer.write(METHOD_NOT_ALLOWED)
            await writer.drain()
            return
        tunnel = ConnectTunnel(
            self.store,
            head.target,
            headers={name.lower(): value for name, value in head.headers},
            source_ip=peer_ip,
        )
        self._tunnels.add(tunnel)
        try:
            await tunnel.run(reader, writer)
        finally:
            self._tunnels.discard(tunnel)

    async def _bridge_to_asgi(
        self,
        head: RequestHead,
        peer_ip: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            asgi_reader, asgi_writer = await asyncio.open_unix_connection(
                self._socket_path
            )
        except OSError as e:
            logger.error(f"[Listener] ASGI server unavailable: {e}")
            writer.write(SERVICE_UNAVAILABLE)
            await writer.drain()
            return

        self._writers.add(asgi_writer)
        asgi_writer.write(encode_bridge_head(to_origin_form(head), peer_ip))
        upload = asyncio.create_task(pipe(reader, asgi_writer))
        try:
            # the response ends the exchange: the app closes after one request
            await pipe(asgi_reader, writer)
        finally:
            upload.cancel()
            await asyncio.gather(upload, return_exceptions=True)
            await close_writer(asgi_writer)
            self._writers.discard(asgi_writer)

    async def stop(self) -> None:
        """Stop accepting, drop open tunnels and bridges, then stop the ASGI server."""
        if self._server is not None:
            self._server.close()
        for tunnel in list(self._tunnels):
            await tunnel.abort()
        for writer in list(self._writers):
            await close_writer(writer)
        for task in list(self._handlers):
            task.cancel()
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        if self._asgi_server is not None:
            self._asgi_server.should_exit = True
            await asyncio.gather(self._asgi_task, return_exceptions=True)
            self._asgi_server = None
            self._asgi_task = None
        if self._socket_dir is not None:
            shutil.rmtree(self._socket_dir, ignore_errors=True)
            self._socket_dir = None
        logger.info("Proxy server stopped")
