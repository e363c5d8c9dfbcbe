import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from localproxy.config import ProxyConfig
from localproxy.errors import NoBackupError, SnapshotCorruptError
from localproxy.models import (
    ActionResult,
    NetworkService,
    PermissionsResponse,
    RestoreRequest,
    StatusConfig,
    StatusResponse,
    Transaction,
)
from localproxy.system_proxy import SystemProxyOrchestrator
from localproxy.transactions import TransactionStore
from localproxy.utils.exception_logging import log_exception_with_details
from localproxy.vars import CONTROL_PREFIX

router = APIRouter(prefix=CONTROL_PREFIX)

logger = logging.getLogger("uvicorn.error")


def get_config(request: Request) -> ProxyConfig:
    return request.app.state.config


def get_store(request: Request) -> TransactionStore:
    return request.app.state.transaction_store


def get_orchestrator(request: Request) -> SystemProxyOrchestrator:
    return request.app.state.system_proxy


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.get("/status", response_model=StatusResponse)
async def status(
    config: ProxyConfig = Depends(get_config),
    store: TransactionStore = Depends(get_store),
):
    return StatusResponse(
        status="running",
        config=StatusConfig(
            port=config.port,
            host=config.host,
            logLevel=config.log_level,
            enableHttps=config.enable_https,
        ),
        activeTransactions=store.size(),
    )


@router.get("/logs", response_model=List[Transaction])
async def logs(store: TransactionStore = Depends(get_store)):
    """Transactions that are still in flight."""
    return store.list_active()


@router.get("/system-settings", response_model=List[NetworkService])
async def system_settings(
    orchestrator: SystemProxyOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_settings()
    except Exception as e:
        log_exception_with_details(logger, "[Control] system-settings", e)
        return _failure(500, "Failed to get system proxy settings")


@router.post("/system-enable", response_model=ActionResult)
async def system_enable(
    config: ProxyConfig = Depends(get_config),
    orchestrator: SystemProxyOrchestrator = Depends(get_orchestrator),
):
    try:
        backup_path = await orchestrator.enable(config.host, config.port)
    except Exception as e:
        log_exception_with_details(logger, "[Control] system-enable", e)
        return _failure(500, "Failed to enable system proxy")
    return ActionResult(
        success=True, message="System proxy enabled", path=backup_path
    )


@router.post("/system-disable", response_model=ActionResult)
async def system_disable(
    orchestrator: SystemProxyOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.disable()
    except Exception as e:
        log_exception_with_details(logger, "[Control] system-disable", e)
        return _failure(500, "Failed to disable system proxy")
    return ActionResult(success=True, message="System proxy disabled")


@router.post("/system-backup", response_model=ActionResult)
async def system_backup(
    orchestrator: SystemProxyOrchestrator = Depends(get_orchestrator),
):
    try:
        path = await orchestrator.backup()
    except Exception as e:
        log_exception_with_details(logger, "[Control] system-backup", e)
        return _failure(500, "Failed to backup system proxy settings")
    return ActionResult(success=True, message="Proxy settings backed up", path=path)


@router.post("/system-restore", response_model=ActionResult)
async def system_restore(
    body: Optional[RestoreRequest] = Body(None),
    orchestrator: SystemProxyOrchestrator = Depends(get_orchestrator),
):
    path = body.path if body else None
    try:
        restored = await orchestrator.restore(path)
    except NoBackupError as e:
        logger.warning(f"[Control] system-restore: {e}")
        return _failure(404, str(e))
    except SnapshotCorruptError as e:
        logger.warning(f"[Control] system-restore: {e}")
        return _failure(422, str(e))
    except Exception as e:
        log_exception_with_details(logger, "[Control] system-restore", e)
        return _failure(500, "Failed to restore system proxy settings")
    return ActionResult(
        success=True, message="Proxy settings restored", path=restored
    )


@router.get("/system-permissions", response_model=PermissionsResponse)
async def system_permissions(
    orchestrator: SystemProxyOrchestrator = Depends(get_orchestrator),
):
    return PermissionsResponse(sufficient=await orchestrator.check_permissions())
