"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import auth, bridge, clients, health, ledger_sync, tenants

router = APIRouter()

router.include_router(health.router)
router.include_router(tenants.router)
router.include_router(auth.router)
router.include_router(bridge.router)
router.include_router(ledger_sync.router)
router.include_router(clients.router)
