"""Auto-sync scheduler -- periodic dispatch for tenants that opt in.

Wraps an APScheduler AsyncIOScheduler with one interval job. Each tick
walks the active tenants; a tenant is dispatched when its bridge config
has auto-sync enabled and its sync interval has elapsed since the last
dispatch. Tenants are isolated from each other: one tenant's failure is
logged and the tick moves on.

Exports:
    AutoSyncScheduler: Interval scheduler driving DispatchWorker batches.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.app.core.tenant import TenantContext, list_active_tenants, tenant_scope
from src.app.ledger.configuration import BridgeConfigService
from src.app.ledger.dispatch import DispatchWorker
from src.app.ledger.exceptions import BridgeNotConfiguredError
from src.app.ledger.schemas import BridgeConfigRead

logger = structlog.get_logger(__name__)


def is_due(config: BridgeConfigRead | None, now: datetime) -> bool:
    """True when auto-sync is on and the tenant's interval has elapsed."""
    if config is None or not config.is_configured or not config.auto_sync_enabled:
        return False
    if config.last_dispatch_at is None:
        return True
    return now - config.last_dispatch_at >= timedelta(minutes=config.sync_interval_minutes)


class AutoSyncScheduler:
    """Interval scheduler that runs dispatch batches for due tenants.

    Args:
        worker: DispatchWorker that delivers queue items.
        configs: BridgeConfigService to read each tenant's schedule.
        tick_seconds: How often due tenants are checked.
        tenant_source: Async callable listing active tenants.
    """

    JOB_ID = "ledger_auto_sync"

    def __init__(
        self,
        worker: DispatchWorker,
        configs: BridgeConfigService,
        tick_seconds: int = 60,
        tenant_source: Callable[[], Awaitable[list[TenantContext]]] = list_active_tenants,
    ) -> None:
        self._worker = worker
        self._configs = configs
        self._tick_seconds = tick_seconds
        self._tenant_source = tenant_source
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the interval job on the running event loop."""
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_seconds),
            id=self.JOB_ID,
            name="Dispatch queued ledger changes for due tenants",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("auto_sync.started", tick_seconds=self._tick_seconds)

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("auto_sync.stopped")

    async def tick(self) -> dict[str, int]:
        """Run one pass over active tenants. Returns dispatched/skipped/failed counts."""
        counts = {"dispatched": 0, "skipped": 0, "failed": 0}
        try:
            tenants = await self._tenant_source()
        except Exception as exc:
            logger.error("auto_sync.tenant_listing_failed", error=str(exc))
            return counts

        now = datetime.now(timezone.utc)
        for ctx in tenants:
            with tenant_scope(ctx):
                try:
                    config = await self._configs.get(ctx.tenant_id)
                    if not is_due(config, now):
                        counts["skipped"] += 1
                        continue
                    result = await self._worker.process_batch(ctx.tenant_id)
                except BridgeNotConfiguredError:
                    counts["skipped"] += 1
                    continue
                except Exception:
                    counts["failed"] += 1
                    logger.exception("auto_sync.tenant_failed", tenant_id=ctx.tenant_id)
                    continue

            counts["dispatched"] += 1
            logger.info(
                "auto_sync.tenant_dispatched",
                tenant_id=ctx.tenant_id,
                total=result.total,
                successful=result.successful,
                failed=result.failed,
            )

        logger.info("auto_sync.tick_completed", **counts)
        return counts
