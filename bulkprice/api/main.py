"""FastAPI control surface for percentage and chain price runs."""

from __future__ import annotations

import functools
import logging
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from bulkprice.catalog.shopify import ShopifyClient
from bulkprice.errors import PriceRunError
from bulkprice.runs.orchestrator import BackupResult, Mode, RunOrchestrator, RunResult
from bulkprice.storage.backups import backup_store_from_env
from bulkprice.storage.run_logs import run_log_store_from_env

logger = logging.getLogger(__name__)


class PercentRequest(BaseModel):
    pct: float = 0


class ApplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pct: float = 0
    backup_id: str | None = Field(default=None, alias="backupId")


class BackupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backup_id: str | None = Field(default=None, alias="backupId")


class RowsResponse(BaseModel):
    rows: list[dict[str, Any]]


class BackupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backup_id: str = Field(alias="backupId")
    items: int


class Summary(BaseModel):
    updated: int
    skipped: int
    errors: int


class RunResponse(BaseModel):
    summary: Summary
    log: list[str]
    cancelled: bool = False
    remaining: int = 0


@functools.lru_cache(maxsize=1)
def get_orchestrator() -> RunOrchestrator:
    load_dotenv()
    return RunOrchestrator(ShopifyClient(), backup_store_from_env(), run_log_store_from_env())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_orchestrator.cache_info().currsize:
        client = get_orchestrator().client
        if isinstance(client, ShopifyClient):
            await client.close()


app = FastAPI(title="Bulk Price Runner", lifespan=lifespan)
router = APIRouter(prefix="/api")


@app.exception_handler(PriceRunError)
async def price_run_error_handler(request: Request, exc: PriceRunError) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": str(exc)}, status_code=exc.status_code)


def _backup_response(result: BackupResult) -> BackupResponse:
    return BackupResponse(backup_id=result.backup_id, items=result.items)


def _run_response(result: RunResult) -> RunResponse:
    return RunResponse(
        summary=Summary(**result.summary.to_dict()),
        log=result.log,
        cancelled=result.cancelled,
        remaining=result.remaining,
    )


@router.get("/health")
async def health(orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"status": "ok", "busy": orchestrator.busy}


@router.post("/run/preview", response_model=RowsResponse)
async def run_preview(payload: PercentRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> RowsResponse:
    context = await orchestrator.preview(Mode.PERCENT, payload.pct)
    return RowsResponse(rows=[row.to_dict() for row in context.rows])


@router.post("/run/backup", response_model=BackupResponse)
async def run_backup(payload: PercentRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> BackupResponse:
    return _backup_response(await orchestrator.backup(Mode.PERCENT, payload.pct))


@router.post("/run/apply", response_model=RunResponse)
async def run_apply(payload: ApplyRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> RunResponse:
    return _run_response(await orchestrator.apply(Mode.PERCENT, payload.backup_id, payload.pct))


@router.post("/run/rollback", response_model=RunResponse)
async def run_rollback(payload: BackupRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> RunResponse:
    return _run_response(await orchestrator.rollback(payload.backup_id))


@router.post("/run/cancel")
async def run_cancel(orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> dict[str, bool]:
    return {"cancelled": orchestrator.cancel()}


@router.get("/chain/preview", response_model=RowsResponse)
async def chain_preview(orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> RowsResponse:
    context = await orchestrator.preview(Mode.CHAIN)
    return RowsResponse(rows=[row.to_dict() for row in context.rows])


@router.post("/chain/backup", response_model=BackupResponse)
async def chain_backup(orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> BackupResponse:
    return _backup_response(await orchestrator.backup(Mode.CHAIN))


@router.post("/chain/apply", response_model=RunResponse)
async def chain_apply(payload: BackupRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> RunResponse:
    return _run_response(await orchestrator.apply(Mode.CHAIN, payload.backup_id))


@router.get("/backups/{backup_id}")
async def get_backup(backup_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    record = await orchestrator.load_backup(backup_id)
    return JSONResponse(record.to_dict())


app.include_router(router)
