"""Client-count delta notifications for the quota collaborator.

Quota accounting itself lives elsewhere; this module only bumps the
tenant's client usage counter in Redis when ingestion creates clients.
"""

from __future__ import annotations

import structlog

from src.app.core.redis import TenantRedis

logger = structlog.get_logger(__name__)


class UsageNotifier:
    """Publishes client-count deltas to the tenant-prefixed usage counter.

    Must be called inside a tenant scope, since TenantRedis derives its key
    prefix from the current tenant context.
    """

    COUNTER_KEY = "usage:clients"

    def __init__(self, tenant_redis: TenantRedis) -> None:
        self._redis = tenant_redis

    async def clients_created(self, tenant_id: str, count: int) -> None:
        if count <= 0:
            return
        total = await self._redis.incrby(self.COUNTER_KEY, count)
        logger.info(
            "usage.clients_created",
            tenant_id=tenant_id,
            delta=count,
            total=total,
        )
