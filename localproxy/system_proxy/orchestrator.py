"""
Reads, changes, backs up and restores the operating system's proxy settings.

All changes go through macOS ``networksetup``, invoked as an argument vector
(never through a shell). Every network service has four proxy slots; ``enable``
points HTTP, HTTPS and FTP at this proxy, ``disable`` switches all four off and
``restore`` puts back whatever a backup snapshot recorded.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence

from opentelemetry import trace
from pydantic import TypeAdapter, ValidationError

from localproxy.errors import (
    NoBackupError,
    OrchestratorCommandError,
    SnapshotCorruptError,
)
from localproxy.models import NetworkService, ProxySettings
from localproxy.system_proxy.parser import parse_proxy_settings, parse_service_list
from localproxy.utils.exception_logging import log_exception_with_details
from localproxy.vars import NETWORKSETUP_BIN

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

ERROR_MARKER = "** Error"
LIST_SERVICES = "-listallnetworkservices"

_snapshot_adapter = TypeAdapter(List[NetworkService])


class ProxyProtocol(str, Enum):
    """networksetup proxy kind, valued by its command stem."""

    HTTP = "webproxy"
    HTTPS = "securewebproxy"
    FTP = "ftpproxy"
    SOCKS = "socksfirewallproxy"

    @property
    def field(self) -> str:
        return _FIELDS[self]

    def get_args(self, service: str) -> List[str]:
        return [f"-get{self.value}", service]

    def set_args(self, service: str, host: str, port: int) -> List[str]:
        return [f"-set{self.value}", service, host, str(port)]

    def state_args(self, service: str, on: bool) -> List[str]:
        return [f"-set{self.value}state", service, "on" if on else "off"]


_FIELDS = {
    ProxyProtocol.HTTP: "httpProxy",
    ProxyProtocol.HTTPS: "httpsProxy",
    ProxyProtocol.FTP: "ftpProxy",
    ProxyProtocol.SOCKS: "socksProxy",
}

ALL_PROTOCOLS = (
    ProxyProtocol.HTTP,
    ProxyProtocol.HTTPS,
    ProxyProtocol.FTP,
    ProxyProtocol.SOCKS,
)
# SOCKS is only ever switched off or restored, never pointed at this proxy
ENABLE_PROTOCOLS = (ProxyProtocol.HTTP, ProxyProtocol.HTTPS, ProxyProtocol.FTP)


class NetworkSetupRunner:
    """Runs ``networksetup`` and returns its stdout."""

    def __init__(self, binary: str = NETWORKSETUP_BIN):
        self.binary = binary

    async def run(self, *args: str) -> str:
        command = [self.binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise OrchestratorCommandError(command, stderr=str(e)) from e

        output = stdout.decode("utf-8", errors="replace")
        errors = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise OrchestratorCommandError(command, process.returncode, errors)
        if ERROR_MARKER in output:
            raise OrchestratorCommandError(command, process.returncode, output.strip())
        return output


def _backup_filename() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    stamp = stamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
    return f"proxy-backup-{stamp}.json"


def _write_snapshot(path: str, services: List[NetworkService]) -> None:
    """Atomically write the snapshot JSON to ``path``."""
    dirpath = os.path.dirname(path) or "."
    os.makedirs(dirpath, exist_ok=True)
    payload = [service.model_dump(mode="json") for service in services]
    fd, tmp_path = tempfile.mkstemp(dir=dirpath, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def _read_snapshot(path: str) -> List[NetworkService]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except FileNotFoundError as e:
        raise NoBackupError(f"Backup file not found: {path}") from e
    except (OSError, ValueError) as e:
        raise SnapshotCorruptError(path, str(e)) from e
    try:
        return _snapshot_adapter.validate_python(raw)
    except ValidationError as e:
        raise SnapshotCorruptError(path, f"{e.error_count()} validation error(s)") from e


class SystemProxyOrchestrator:
    def __init__(
        self,
        runner: Optional[NetworkSetupRunner] = None,
        backup_dir: Optional[str] = None,
    ):
        self.runner = runner or NetworkSetupRunner()
        self.backup_dir = backup_dir or os.path.join(os.getcwd(), "scripts")
        self.last_backup: Optional[str] = None

    async def _attempt(self, args: Sequence[str]) -> bool:
        """Run one command; failures are logged and reported as False."""
        try:
            await self.runner.run(*args)
            return True
        except OrchestratorCommandError as e:
            logger.warning(f"[SystemProxy] {e}")
            return False

    async def list_services(self) -> List[str]:
        try:
            output = await self.runner.run(LIST_SERVICES)
        except OrchestratorCommandError as e:
            log_exception_with_details(
                logger, "[SystemProxy] Failed to get network services", e
            )
            return []
        return parse_service_list(output)

    async def _get_service(self, service: str) -> NetworkService:
        outputs = await asyncio.gather(
            *(self.runner.run(*protocol.get_args(service)) for protocol in ALL_PROTOCOLS),
            return_exceptions=True,
        )
        for output in outputs:
            if isinstance(output, BaseException):
                raise output
        settings = {
            protocol.field: parse_proxy_settings(output)
            for protocol, output in zip(ALL_PROTOCOLS, outputs)
        }
        return NetworkService(name=service, **settings)

    async def get_settings(self) -> List[NetworkService]:
        with tracer.start_as_current_span("system_proxy.get_settings") as span:
            services = await self.list_services()
            result = []
            for service in services:
                try:
                    result.append(await self._get_service(service))
                except OrchestratorCommandError as e:
                    logger.warning(
                        f"[SystemProxy] Failed to get proxy settings for {service}: {e}"
                    )
            span.set_attribute("system_proxy.services", len(result))
            return result

    async def backup(self) -> str:
        """
        Snapshot every service's proxy settings to a new file in ``backup_dir``.

        The path becomes the default target of ``restore``. Write failures
        propagate.
        """
        with tracer.start_as_current_span("system_proxy.backup") as span:
            services = await self.get_settings()
            path = os.path.join(self.backup_dir, _backup_filename())
            try:
                await asyncio.to_thread(_write_snapshot, path, services)
            except OSError as e:
                log_exception_with_details(
                    logger, "[SystemProxy] Failed to backup proxy settings", e
                )
                raise
            self.last_backup = path
            span.set_attribute("system_proxy.backup_path", path)
            logger.info(f"[SystemProxy] Proxy settings backed up to: {path}")
            return path

    async def enable(self, host: str, port: int) -> str:
        """
        Point HTTP, HTTPS and FTP of every service at ``host:port``.

        A backup is taken first and its path returned; if it fails nothing is
        changed. Each (service, protocol) pair is attempted on its own.
        """
        with tracer.start_as_current_span("system_proxy.enable") as span:
            span.set_attribute("system_proxy.host", host)
            span.set_attribute("system_proxy.port", port)
            logger.info(f"[SystemProxy] Enabling system proxy: {host}:{port}")

            backup_path = await self.backup()
            failures = 0
            for service in await self.list_services():
                for protocol in ENABLE_PROTOCOLS:
                    ok = await self._attempt(protocol.set_args(service, host, port))
                    if ok:
                        ok = await self._attempt(protocol.state_args(service, True))
                    if not ok:
                        failures += 1
                        logger.warning(
                            f"[SystemProxy] Failed to enable {protocol.field} for {service}"
                        )
                logger.debug(f"[SystemProxy] Proxy enabled for service: {service}")

            span.set_attribute("system_proxy.failures", failures)
            logger.info("[SystemProxy] System proxy configuration completed")
            return backup_path

    async def disable(self) -> None:
        with tracer.start_as_current_span("system_proxy.disable") as span:
            logger.info("[SystemProxy] Disabling system proxy")
            failures = 0
            for service in await self.list_services():
                for protocol in ALL_PROTOCOLS:
                    if not await self._attempt(protocol.state_args(service, False)):
                        failures += 1
                logger.debug(f"[SystemProxy] Proxy disabled for service: {service}")
            span.set_attribute("system_proxy.failures", failures)
            logger.info("[SystemProxy] System proxy disabled")

    async def _restore_protocol(
        self, service: str, protocol: ProxyProtocol, settings: Optional[ProxySettings]
    ) -> bool:
        if settings is not None and settings.is_restorable():
            if not await self._attempt(
                protocol.set_args(service, settings.server, settings.port)
            ):
                return False
            return await self._attempt(protocol.state_args(service, True))
        return await self._attempt(protocol.state_args(service, False))

    async def restore(self, path: Optional[str] = None) -> str:
        """
        Apply a backup snapshot; defaults to the most recent ``backup``.

        Raises:
            NoBackupError: no path given and no backup taken, or the file is gone.
            SnapshotCorruptError: the file is unreadable or not a snapshot.
        """
        with tracer.start_as_current_span("system_proxy.restore") as span:
            backup_file = path or self.last_backup
            if not backup_file:
                raise NoBackupError("No backup file specified")
            span.set_attribute("system_proxy.backup_path", backup_file)

            services = await asyncio.to_thread(_read_snapshot, backup_file)
            failures = 0
            for service in services:
                for protocol in ALL_PROTOCOLS:
                    settings = getattr(service, protocol.field)
                    if not await self._restore_protocol(service.name, protocol, settings):
                        failures += 1

            span.set_attribute("system_proxy.failures", failures)
            logger.info(f"[SystemProxy] Proxy settings restored from: {backup_file}")
            return backup_file

    async def check_permissions(self) -> bool:
        try:
            await self.runner.run(LIST_SERVICES)
            return True
        except OrchestratorCommandError as e:
            logger.error(
                f"[SystemProxy] Insufficient permissions to modify network settings: {e}"
            )
            return False
