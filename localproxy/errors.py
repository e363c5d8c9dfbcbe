from typing import Optional, Sequence


class ProxyError(Exception):
    pass


class ConfigError(ProxyError):
    pass


class RoutingError(ProxyError):
    """No valid upstream target could be derived from the request."""


class UpstreamError(ProxyError):
    """The forwarded request could not reach or complete against its target."""

    def __init__(self, message: str, target_url: Optional[str] = None):
        super().__init__(message)
        self.target_url = target_url


class TunnelError(ProxyError):
    def __init__(self, message: str, host: str, port: int):
        super().__init__(message)
        self.host = host
        self.port = port


class UnknownTransactionError(KeyError):
    """Raised when completing a transaction that is not (or no longer) in flight."""


class OrchestratorError(ProxyError):
    pass


class OrchestratorCommandError(OrchestratorError):
    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.command)} failed: {detail}")


class NoBackupError(OrchestratorError):
    pass


class SnapshotCorruptError(OrchestratorError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Backup snapshot {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason
