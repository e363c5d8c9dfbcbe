import logging
import time
from typing import Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from localproxy.models import RequestLog, ResponseLog, utc_timestamp
from localproxy.transactions.store import TransactionStore
from localproxy.utils.exception_logging import format_exception_message
from localproxy.vars import ABSOLUTE_FORM_HEADER, CLIENT_ADDR_HEADER

_UNRECORDED_HEADERS = (CLIENT_ADDR_HEADER, ABSOLUTE_FORM_HEADER)

logger = logging.getLogger("uvicorn.error")

TRANSACTION_ID_KEY = "transaction_id"
TRANSACTION_ERROR_KEY = "transaction_error"

DEFAULT_MAX_BODY = 10 * 1024 * 1024


class _BodyCapture:
    """Accumulates body chunks up to a byte limit."""

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self.truncated = False
        self._chunks: list[bytes] = []

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self.size += len(chunk)
        kept = sum(len(c) for c in self._chunks)
        room = self.limit - kept
        if room <= 0:
            self.truncated = True
            return
        if len(chunk) > room:
            self.truncated = True
            chunk = chunk[:room]
        self._chunks.append(chunk)

    def text(self) -> Optional[str]:
        if not self._chunks:
            return None
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def request_url(scope: Scope) -> str:
    path = scope.get("raw_path") or scope["path"].encode("utf-8")
    url = path.decode("latin-1")
    query = scope.get("query_string", b"")
    if query:
        url = f"{url}?{query.decode('latin-1')}"
    return url


def source_ip(scope: Scope, headers: Headers) -> str:
    # Requests bridged by the listener arrive over a private socket; the
    # listener passes the real peer address in a header of its own.
    forwarded = headers.get(CLIENT_ADDR_HEADER)
    if forwarded:
        return forwarded
    client = scope.get("client")
    if client:
        return client[0]
    return "unknown"


class TransactionCaptureMiddleware:
    """
    Records every HTTP exchange served by the app as one store transaction.

    ``begin`` is called when the request arrives and ``complete`` exactly once
    when the response has been sent or the app raised. Routes may describe a
    proxy-side failure by setting ``request.state.transaction_error``.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: TransactionStore,
        max_body_bytes: int = DEFAULT_MAX_BODY,
    ):
        self.app = app
        self.store = store
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_log = RequestLog(
            timestamp=utc_timestamp(),
            method=scope["method"],
            url=request_url(scope),
            headers={
                k: v for k, v in headers.items() if k not in _UNRECORDED_HEADERS
            },
            sourceIp=source_ip(scope, headers),
            userAgent=headers.get("user-agent"),
        )
        transaction_id = self.store.begin(request_log)
        state = scope.setdefault("state", {})
        state[TRANSACTION_ID_KEY] = transaction_id

        started = time.monotonic()
        request_body = _BodyCapture(self.max_body_bytes)
        response_body = _BodyCapture(self.max_body_bytes)
        response_start: dict = {}

        async def capture_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                request_body.feed(message.get("body", b""))
            return message

        async def capture_send(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_start["status"] = message["status"]
                response_start["headers"] = message.get("headers", [])
            elif message["type"] == "http.response.body":
                response_body.feed(message.get("body", b""))
            await send(message)

        error: Optional[str] = None
        try:
            await self.app(scope, capture_receive, capture_send)
        except Exception as e:
            error = format_exception_message(e)
            raise
        finally:
            error = state.get(TRANSACTION_ERROR_KEY) or error
            request_log.body = request_body.text()
            response_log = None
            if response_start:
                response_log = ResponseLog(
                    timestamp=utc_timestamp(),
                    statusCode=response_start["status"],
                    headers={
                        k.decode("latin-1"): v.decode("latin-1")
                        for k, v in response_start["headers"]
                    },
                    body=response_body.text(),
                    responseTime=int((time.monotonic() - started) * 1000),
                )
            elif error is None:
                error = "No response was sent"
            self.store.complete(transaction_id, response_log, error=error)
