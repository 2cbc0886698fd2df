"""Tenant bridge configuration -- credentials and auto-sync schedule."""

from __future__ import annotations

from typing import Any

import structlog

from src.app.ledger.repository import LedgerRepository
from src.app.ledger.schemas import BridgeConfigRead, BridgeConfigUpdate

logger = structlog.get_logger(__name__)


class BridgeConfigService:
    """Read and update the per-tenant bridge configuration.

    The dispatch transports only read configuration (inside their claim
    transaction); writes come from tenant admins through this service.
    """

    def __init__(self, repository: LedgerRepository) -> None:
        self._repository = repository

    async def get(self, tenant_id: str) -> BridgeConfigRead | None:
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.get_config()

    async def configure(
        self, tenant_id: str, update: BridgeConfigUpdate
    ) -> BridgeConfigRead:
        """Create or update the configuration. A None credential keeps the stored one."""
        values: dict[str, Any] = {
            "external_company_name": update.external_company_name,
            "username": update.username,
            "auto_sync_enabled": update.auto_sync_enabled,
            "sync_interval_minutes": update.sync_interval_minutes,
        }
        if update.credential is not None:
            values["credential"] = update.credential

        async with self._repository.transaction(tenant_id) as tx:
            config = await tx.upsert_config(values)

        logger.info(
            "bridge_config.updated",
            tenant_id=tenant_id,
            external_company_name=config.external_company_name,
            auto_sync_enabled=config.auto_sync_enabled,
            sync_interval_minutes=config.sync_interval_minutes,
            credential_changed=update.credential is not None,
        )
        return config
