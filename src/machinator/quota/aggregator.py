"""Per-account quota aggregation with atomically published snapshots."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Protocol

import structlog

from machinator.metrics import metrics
from machinator.quota.reporter import QuotaBucket, QuotaError, QuotaFetchError

logger = structlog.get_logger(__name__)


class QuotaDiscoveryError(QuotaError):
    """Raised when the account directories cannot be enumerated."""


class NoCapacityError(QuotaError):
    """Raised when no account has remaining quota for a model."""


class QuotaReporter(Protocol):
    def fetch(self, home_dir: Path) -> list[QuotaBucket]: ...


@dataclass(frozen=True)
class AccountQuota:
    """Remaining quota fractions for one credential account."""

    name: str
    home_dir: Path
    models: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "models", MappingProxyType(dict(self.models)))

    @classmethod
    def from_buckets(cls, home_dir: Path, buckets: list[QuotaBucket]) -> "AccountQuota":
        return cls(
            name=Path(home_dir).name,
            home_dir=Path(home_dir),
            models={b.model_id: b.remaining_fraction for b in buckets},
        )


@dataclass(frozen=True)
class QuotaSnapshot:
    """Immutable view of every account's quota at one point in time."""

    accounts: tuple[AccountQuota, ...] = ()
    updated_at: datetime | None = None

    def total_for(self, model: str) -> float:
        return sum(acc.models.get(model, 0.0) for acc in self.accounts)

    def best_account_for(self, model: str) -> str:
        """Return the account with the most remaining quota for model.

        Raises:
            NoCapacityError: If no account has a positive fraction
        """
        best = ""
        best_value = 0.0
        for acc in self.accounts:
            value = acc.models.get(model, 0.0)
            if value > best_value:
                best, best_value = acc.name, value
        if not best:
            raise NoCapacityError(f"no account with quota for {model}")
        return best

    @classmethod
    def full(cls, models: list[str], name: str = "unlimited") -> "QuotaSnapshot":
        """Snapshot with one synthetic account at full quota for each model."""
        account = AccountQuota(name=name, home_dir=Path(name), models={m: 1.0 for m in models})
        return cls(accounts=(account,), updated_at=datetime.now(UTC))


class QuotaAggregator:
    """Discovers accounts, fetches their quota, and publishes snapshots."""

    def __init__(self, accounts_dir: Path, reporter: QuotaReporter):
        """Initialize the aggregator.

        Args:
            accounts_dir: Directory holding one subdirectory per account
            reporter: Capability that returns quota buckets for an account home
        """
        self.accounts_dir = Path(accounts_dir)
        self.reporter = reporter
        self._lock = threading.Lock()
        self._snapshot = QuotaSnapshot()
        self._published_seq = 0
        self._next_seq = 0

    @property
    def snapshot(self) -> QuotaSnapshot:
        with self._lock:
            return self._snapshot

    def total_for(self, model: str) -> float:
        return self.snapshot.total_for(model)

    def best_account_for(self, model: str) -> str:
        return self.snapshot.best_account_for(model)

    def discover_accounts(self) -> list[Path]:
        """List account home directories, sorted by name.

        Raises:
            QuotaDiscoveryError: If the accounts directory exists but cannot be read
        """
        try:
            return sorted((p for p in self.accounts_dir.iterdir() if p.is_dir()), key=lambda p: p.name)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise QuotaDiscoveryError(f"discover accounts in {self.accounts_dir}: {exc}") from exc

    def publish(self, snapshot: QuotaSnapshot) -> None:
        """Replace the current snapshot unconditionally."""
        with self._lock:
            self._next_seq += 1
            self._published_seq = self._next_seq
            self._snapshot = snapshot

    async def refresh(self) -> QuotaSnapshot:
        """Fetch quota for every account and publish a new snapshot.

        Accounts whose fetch fails are left out. Only a discovery failure
        aborts the refresh, leaving the previous snapshot in place.

        Raises:
            QuotaDiscoveryError: If accounts cannot be enumerated
        """
        with self._lock:
            self._next_seq += 1
            seq = self._next_seq

        try:
            homes = await asyncio.to_thread(self.discover_accounts)
        except QuotaDiscoveryError:
            metrics.inc_counter("machinator_quota_refresh_total", labels={"status": "failed"})
            raise

        accounts: list[AccountQuota] = []
        for home in homes:
            try:
                buckets = await asyncio.to_thread(self.reporter.fetch, home)
            except QuotaFetchError as exc:
                logger.warning("quota_fetch_failed", account=home.name, error=str(exc))
                continue
            accounts.append(AccountQuota.from_buckets(home, buckets))

        snapshot = QuotaSnapshot(accounts=tuple(accounts), updated_at=datetime.now(UTC))
        with self._lock:
            if seq < self._published_seq:
                logger.debug("quota_refresh_superseded", seq=seq, published=self._published_seq)
                return self._snapshot
            self._published_seq = seq
            self._snapshot = snapshot

        metrics.inc_counter("machinator_quota_refresh_total", labels={"status": "ok"})
        return snapshot
