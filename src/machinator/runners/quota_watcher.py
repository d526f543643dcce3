"""Quota refresh loop."""

from __future__ import annotations

import structlog

from machinator.metrics import metrics
from machinator.quota.aggregator import QuotaAggregator, QuotaDiscoveryError, QuotaSnapshot

logger = structlog.get_logger(__name__)


class QuotaWatcher:
    """Refreshes the quota snapshot and records per-model totals."""

    def __init__(self, aggregator: QuotaAggregator, models: list[str]):
        self.aggregator = aggregator
        self.models = models

    async def tick(self) -> QuotaSnapshot | None:
        try:
            snapshot = await self.aggregator.refresh()
        except QuotaDiscoveryError as e:
            # previous snapshot stays in effect
            logger.error("quota_refresh_failed", error=str(e))
            return None

        totals = {model: snapshot.total_for(model) for model in self.models}
        for model, total in totals.items():
            metrics.set_gauge("machinator_quota_total", total, labels={"model": model})
        logger.info("quota_refreshed", accounts=len(snapshot.accounts), totals=totals)
        return snapshot
