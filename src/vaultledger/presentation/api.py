from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..application.service import IndexerService
from ..application.snapshots import snapshot_rows
from ..domain.errors import FinalityError, IndexerError, ScoringUnavailableError, ValidationError
from ..domain.value_types import RecordKind

log = logging.getLogger(__name__)


class BackfillRequest(BaseModel):
    fromBlock: int = Field(..., ge=0)
    toBlock: int = Field(..., ge=0)
    vault: Optional[str] = None


class BackfillBlockRequest(BaseModel):
    blockNumber: int = Field(..., ge=0)
    vault: Optional[str] = None


class MarkRequest(BaseModel):
    txHash: str = Field(..., min_length=3)
    userAddress: Optional[str] = None
    chain: Optional[str] = None


def _rows(items) -> List[Dict[str, Any]]:
    return [asdict(x) for x in items]


def create_app(service: IndexerService, *, cors_origins: list[str] | None = None,
               run_loops: bool = False) -> FastAPI:
    """HTTP read/operator API. With run_loops the indexing and daily loops run for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        tasks: list[asyncio.Task] = []
        if run_loops:
            await service.pool.connect()
            tasks = [asyncio.create_task(service.run_forever(stop)),
                     asyncio.create_task(service.daily_loop(stop))]
        try:
            yield
        finally:
            stop.set()
            for t in tasks:
                try:
                    await t
                except Exception as e:
                    log.error("background loop ended with %s: %s", type(e).__name__, e)
            if run_loops:
                await service.aclose()

    app = FastAPI(title="vaultledger", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(FinalityError)
    async def _finality(_: Request, exc: FinalityError) -> JSONResponse:
        return JSONResponse(status_code=202, content={"accepted": True, "warning": str(exc)})

    @app.exception_handler(ScoringUnavailableError)
    async def _no_scoring(_: Request, exc: ScoringUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=501, content={"error": str(exc)})

    @app.exception_handler(IndexerError)
    async def _indexer(_: Request, exc: IndexerError) -> JSONResponse:
        log.error("request failed: %s: %s", type(exc).__name__, exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    # ── reads ────────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return service.status()

    @app.get("/api/deposits")
    async def deposits(user: Optional[str] = None, vault: Optional[str] = None, chain: Optional[str] = None,
                       limit: int = Query(100, ge=1, le=1000)) -> List[Dict[str, Any]]:
        return _rows(service.store.list_deposits(user=user, vault_id=vault, chain=chain, limit=limit))

    @app.get("/api/withdrawals")
    async def withdrawals(user: Optional[str] = None, vault: Optional[str] = None, chain: Optional[str] = None,
                          limit: int = Query(100, ge=1, le=1000)) -> List[Dict[str, Any]]:
        return _rows(service.store.list_withdrawals(user=user, vault_id=vault, chain=chain, limit=limit))

    @app.get("/api/intents")
    async def intents(user: Optional[str] = None, vault: Optional[str] = None, chain: Optional[str] = None,
                      limit: int = Query(100, ge=1, le=1000)) -> List[Dict[str, Any]]:
        return _rows(service.store.list_intents(user=user, vault_id=vault, chain=chain, limit=limit))

    @app.get("/api/snapshots")
    async def snapshots(vault: Optional[str] = None, chain: Optional[str] = None, combined: bool = False,
                        limit: int = Query(30, ge=1, le=1000)) -> List[Dict[str, Any]]:
        if combined:
            return service.snapshots.combined_history(limit)
        return snapshot_rows(service.store.list_snapshots(vault_id=vault, chain=chain, limit=limit))

    @app.get("/api/aum")
    async def aum(user: Optional[str] = None, vault: Optional[str] = None) -> Dict[str, Any]:
        if not user:
            raise ValidationError("user query parameter is required")
        rows: list[dict] = []
        total = 0
        for v in service.select_vaults(vault):
            try:
                row = await service.snapshots.user_aum(v, user)
            except IndexerError as e:
                rows.append({"vault_id": v.id, "chain": v.chain, "error": str(e)})
                continue
            total += int(row["aum"])
            rows.append(row)
        return {"user": user.lower(), "total_aum": str(total), "vaults": rows}

    @app.get("/api/vault-ratings")
    async def vault_ratings(vault: Optional[str] = None) -> List[Dict[str, Any]]:
        return service.store.list_vault_ratings(vault)

    # ── debug ────────────────────────────────────────────────────────────────

    @app.get("/api/debug/tx")
    async def debug_tx(txHash: Optional[str] = None, vault: Optional[str] = None) -> Dict[str, Any]:
        if not txHash:
            raise ValidationError("txHash query parameter is required")
        found = await service.inspect_tx(txHash, vault)
        if found is None:
            raise HTTPException(status_code=404, detail=f"transaction {txHash} not found")
        return found

    @app.get("/api/debug/events")
    async def debug_events(fromBlock: int = Query(..., ge=0), toBlock: int = Query(..., ge=0),
                           vault: Optional[str] = None) -> Dict[str, Any]:
        return {"fromBlock": fromBlock, "toBlock": toBlock,
                "vaults": await service.inspect_range(fromBlock, toBlock, vault)}

    # ── operator ─────────────────────────────────────────────────────────────

    @app.post("/api/vault-ratings/run")
    async def run_ratings() -> Dict[str, Any]:
        results = await service.run_ratings()
        return {"count": len(results), "results": results}

    @app.post("/api/backfill")
    async def backfill(req: BackfillRequest) -> Dict[str, Any]:
        stats = await service.backfill(req.fromBlock, req.toBlock, req.vault)
        return {"fromBlock": req.fromBlock, "toBlock": req.toBlock, "vaults": stats}

    @app.post("/api/backfill/block")
    async def backfill_block(req: BackfillBlockRequest) -> Dict[str, Any]:
        stats = await service.backfill_block(req.blockNumber, req.vault)
        return {"blockNumber": req.blockNumber, "vaults": stats}

    def _mark(kind: RecordKind, req: MarkRequest) -> Dict[str, Any]:
        outcome = service.mark_product(kind, req.txHash, req.userAddress, req.chain)
        if outcome is None:
            raise HTTPException(status_code=404, detail=f"{kind} {req.txHash} not indexed and no userAddress given")
        return {"txHash": req.txHash.lower(), "result": outcome}

    @app.post("/api/deposits/mark-yieldo")
    async def mark_deposit(req: MarkRequest) -> Dict[str, Any]:
        return _mark("deposit", req)

    @app.post("/api/withdrawals/mark-yieldo")
    async def mark_withdrawal(req: MarkRequest) -> Dict[str, Any]:
        return _mark("withdrawal", req)

    return app
