"""
Parsers for ``networksetup`` output.

``-get<kind>`` prints one ``Key: Value`` pair per line::

    Enabled: Yes
    Server: 127.0.0.1
    Port: 8080
    Authenticated Proxy Enabled: 0

``-listallnetworkservices`` prints a legend line followed by one service per
line; disabled services are prefixed with ``*``.
"""

from typing import List, Optional

from localproxy.models import ProxySettings

ENABLED_PREFIX = "Enabled:"
SERVER_PREFIX = "Server:"
PORT_PREFIX = "Port:"
AUTHENTICATED_PREFIX = "Authenticated Proxy Enabled:"

_TRUE_VALUES = ("yes", "1")


def _value_after(line: str, prefix: str) -> str:
    return line[len(prefix):].strip()


def _parse_port(value: str) -> Optional[int]:
    try:
        port = int(value)
    except ValueError:
        return None
    return port if port > 0 else None


def parse_proxy_settings(text: str) -> ProxySettings:
    enabled = False
    server: Optional[str] = None
    port: Optional[int] = None
    authenticated = False

    for raw_line in text.splitlines():
        line = raw_line.strip()
        # Matched on the line start so "Authenticated Proxy Enabled:" is not
        # mistaken for "Enabled:".
        if line.startswith(AUTHENTICATED_PREFIX):
            authenticated = _value_after(line, AUTHENTICATED_PREFIX).lower() in _TRUE_VALUES
        elif line.startswith(ENABLED_PREFIX):
            enabled = _value_after(line, ENABLED_PREFIX).lower() == "yes"
        elif line.startswith(SERVER_PREFIX):
            server = _value_after(line, SERVER_PREFIX) or None
        elif line.startswith(PORT_PREFIX):
            port = _parse_port(_value_after(line, PORT_PREFIX))

    return ProxySettings(
        enabled=enabled, server=server, port=port, authenticated=authenticated
    )


def parse_service_list(text: str) -> List[str]:
    services = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or "asterisk" in line or line.startswith("*"):
            continue
        services.append(line)
    return services
