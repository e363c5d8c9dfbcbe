from .orchestrator import (
    NetworkSetupRunner,
    ProxyProtocol,
    SystemProxyOrchestrator,
)
from .parser import parse_proxy_settings, parse_service_list

__all__ = [
    "NetworkSetupRunner",
    "ProxyProtocol",
    "SystemProxyOrchestrator",
    "parse_proxy_settings",
    "parse_service_list",
]
