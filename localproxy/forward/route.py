import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace
from starlette.types import ASGIApp, Receive, Scope, Send

from localproxy.errors import RoutingError, UpstreamError
from localproxy.transactions import TRANSACTION_ERROR_KEY
from localproxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from localproxy.vars import (
    ABSOLUTE_FORM_HEADER,
    CLIENT_ADDR_HEADER,
    CONTROL_PREFIX,
    FORWARD_PREFIX,
    TARGET_URL_HEADER,
)

forward_router = APIRouter(prefix=FORWARD_PREFIX)
catch_all_router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
DEFAULT_TIMEOUT = 300.0

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Recomputed by httpx or private to the proxy
REQUEST_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    TARGET_URL_HEADER.lower(),
    CLIENT_ADDR_HEADER,
    ABSOLUTE_FORM_HEADER,
}

# httpx hands us the decoded body, so the upstream framing no longer applies
RESPONSE_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

Headers = List[Tuple[str, str]]


def is_control_path(path: str) -> bool:
    return path == CONTROL_PREFIX or path.startswith(CONTROL_PREFIX + "/")


def _raw_path_with_query(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    return f"{path}?{query}" if query else path


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get(CLIENT_ADDR_HEADER)
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


def resolve_explicit_target(request: Request) -> str:
    """
    Target for ``/proxy/forward``: the ``X-Target-URL`` header, else the rest
    of the path after the forward prefix.

    A target that starts with the control prefix is rejected so the proxy never
    forwards to itself. Targets without a scheme are treated as plain HTTP.
    """
    target = request.headers.get(TARGET_URL_HEADER)
    if not target:
        target = _raw_path_with_query(request)[len(FORWARD_PREFIX):]

    if target.startswith(CONTROL_PREFIX + "/"):
        raise RoutingError("Cannot proxy to proxy endpoints")

    target = target.lstrip("/")
    if not _SCHEME_RE.match(target):
        target = "http://" + target

    if not urlsplit(target).hostname:
        raise RoutingError(f"No upstream host in target URL: {target}")
    return target


def resolve_catch_all_target(request: Request) -> str:
    """Target for system-proxy traffic, rebuilt from Host and X-Forwarded-Proto."""
    host = request.headers.get("host")
    if not host:
        raise RoutingError("No host header found")
    protocol = request.headers.get("x-forwarded-proto", "http")
    return f"{protocol}://{host}{_raw_path_with_query(request)}"


def prepare_headers(request: Request) -> Headers:
    """
    Headers to send upstream: everything but hop-by-hop and proxy-private
    headers, with the client address appended to X-Forwarded-For.
    """
    headers: Headers = []
    existing_xff = ""
    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower in REQUEST_SKIP_HEADERS:
            continue
        if name_lower == "x-forwarded-for":
            existing_xff = value
            continue
        headers.append((name, value))

    client_ip = _client_ip(request)
    if client_ip:
        headers.append(
            ("x-forwarded-for", f"{existing_xff}, {client_ip}".strip(", "))
        )
    elif existing_xff:
        headers.append(("x-forwarded-for", existing_xff))
    return headers


def build_response(upstream: httpx.Response) -> Response:
    response = Response(content=upstream.content, status_code=upstream.status_code)
    for name, value in upstream.headers.multi_items():
        if name.lower() in RESPONSE_SKIP_HEADERS:
            continue
        response.headers.append(name, value)
    return response


def _upstream_timeout(request: Request) -> float:
    config = getattr(request.app.state, "config", None)
    return config.upstream_timeout if config is not None else DEFAULT_TIMEOUT


async def forward_request(request: Request, target_url: str) -> Response:
    """
    Relay one request to ``target_url`` and return the upstream response.

    Raises:
        UpstreamError: the upstream could not be reached or did not answer.
    """
    with tracer.start_as_current_span("proxy_request") as span:
        span.set_attribute("proxy.target_url", target_url)
        span.set_attribute("proxy.method", request.method)

        logger.debug(f"Proxying {request.method} {request.url.path} -> {target_url}")

        headers = prepare_headers(request)
        body = await request.body()

        try:
            # trust_env is off: the OS proxy settings may point back at us
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(_upstream_timeout(request)),
                follow_redirects=False,
                trust_env=False,
            ) as client:
                upstream = await client.request(
                    method=request.method,
                    url=target_url,
                    headers=headers,
                    content=body,
                )
        except httpx.TimeoutException as e:
            span.set_attribute("proxy.error", "timeout")
            raise UpstreamError(
                f"Timeout: {format_exception_message(e)}", target_url
            ) from e
        except httpx.ConnectError as e:
            span.set_attribute("proxy.error", "connection_failed")
            raise UpstreamError(format_exception_message(e), target_url) from e
        except httpx.HTTPError as e:
            span.set_attribute("proxy.error", str(e))
            raise UpstreamError(format_exception_message(e), target_url) from e
        except httpx.InvalidURL as e:
            span.set_attribute("proxy.error", "invalid_url")
            raise UpstreamError(format_exception_message(e), target_url) from e

        span.set_attribute("proxy.status_code", upstream.status_code)
        logger.debug(
            f"Received response {upstream.status_code} for {request.method} {target_url}"
        )
        return build_response(upstream)


def _record_failure(request: Request, error: Exception) -> None:
    setattr(request.state, TRANSACTION_ERROR_KEY, str(error))


@forward_router.api_route("", methods=PROXY_METHODS)
@forward_router.api_route("/{path:path}", methods=PROXY_METHODS)
async def forward_explicit(request: Request):
    """API-based forwarding: target from X-Target-URL or the request path."""
    try:
        target_url = resolve_explicit_target(request)
        return await forward_request(request, target_url)
    except (RoutingError, UpstreamError) as e:
        log_exception_with_details(logger, "[Forward]", e, level=logging.ERROR)
        _record_failure(request, e)
        return JSONResponse(
            status_code=500, content={"error": "Proxy error", "message": str(e)}
        )


async def forward_system_proxy_request(request: Request) -> Response:
    try:
        target_url = resolve_catch_all_target(request)
    except RoutingError as e:
        logger.warning(f"[System-Proxy] {e}: {request.url.path}")
        _record_failure(request, e)
        return JSONResponse(status_code=400, content={"error": str(e)})

    try:
        return await forward_request(request, target_url)
    except UpstreamError as e:
        logger.error(f"[System-Proxy] System proxy error for {target_url}: {e}")
        _record_failure(request, e)
        return Response(status_code=502)


@catch_all_router.api_route("/{path:path}", methods=PROXY_METHODS)
async def forward_catch_all(request: Request):
    """Catch-all proxy for traffic routed here by the OS proxy settings."""
    if is_control_path(request.url.path):
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return await forward_system_proxy_request(request)


class AbsoluteFormMiddleware:
    """
    Forwards requests the listener received in absolute-form without routing
    them, so ``GET http://example.com/proxy/status`` reaches example.com rather
    than the local control API.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not _is_absolute_form(scope):
            await self.app(scope, receive, send)
            return
        request = Request(scope, receive)
        response = await forward_system_proxy_request(request)
        await response(scope, receive, send)


def _is_absolute_form(scope: Scope) -> bool:
    marker = ABSOLUTE_FORM_HEADER.encode("latin-1")
    return any(name == marker for name, _ in scope.get("headers", []))
