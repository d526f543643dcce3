"""Account quota discovery and aggregation."""

from .aggregator import (
    AccountQuota,
    NoCapacityError,
    QuotaAggregator,
    QuotaDiscoveryError,
    QuotaSnapshot,
)
from .reporter import GeminiQuotaReporter, QuotaBucket, QuotaError, QuotaFetchError

__all__ = [
    "AccountQuota",
    "GeminiQuotaReporter",
    "NoCapacityError",
    "QuotaAggregator",
    "QuotaBucket",
    "QuotaDiscoveryError",
    "QuotaError",
    "QuotaFetchError",
    "QuotaSnapshot",
]
