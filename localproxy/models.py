from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-15T10:30:00.000Z"""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class RequestLog(BaseModel):
    timestamp: str
    method: str
    url: str
    headers: Dict[str, str] = {}
    body: Optional[str] = None
    sourceIp: str = "unknown"
    userAgent: Optional[str] = None


class ResponseLog(BaseModel):
    timestamp: str
    statusCode: int
    headers: Dict[str, str] = {}
    body: Optional[str] = None
    responseTime: int


class Transaction(BaseModel):
    id: str
    request: RequestLog
    response: Optional[ResponseLog] = None
    error: Optional[str] = None

    def to_log_record(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ProxySettings(BaseModel):
    enabled: bool = False
    server: Optional[str] = None
    port: Optional[int] = None
    authenticated: bool = False

    def is_restorable(self) -> bool:
        return self.enabled and bool(self.server) and bool(self.port)


class NetworkService(BaseModel):
    name: str
    httpProxy: Optional[ProxySettings] = None
    httpsProxy: Optional[ProxySettings] = None
    ftpProxy: Optional[ProxySettings] = None
    socksProxy: Optional[ProxySettings] = None


class StatusConfig(BaseModel):
    port: int
    host: str
    logLevel: str
    enableHttps: bool


class StatusResponse(BaseModel):
    status: str
    config: StatusConfig
    activeTransactions: int


class ActionResult(BaseModel):
    success: bool
    message: str
    path: Optional[str] = None


class RestoreRequest(BaseModel):
    path: Optional[str] = None


class PermissionsResponse(BaseModel):
    sufficient: bool


