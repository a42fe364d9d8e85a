import threading
import time
from decimal import Decimal
from typing import Optional

from .models import TenantBalance
from .store import BalanceSnapshot, LedgerStore


class BalanceAccumulator:
    """
    Read-side view of tenant balances.

    Results are cached per tenant and dropped whenever the store reports a
    mutation for that tenant. A cached value is also checked against the
    store's version counter, so a read never returns a balance older than the
    last committed write. Funds checks are done by the store, not here.
    """

    def __init__(self, store: LedgerStore, cache_ttl_seconds: int = 30):
        self.store = store
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: dict[str, tuple[float, BalanceSnapshot]] = {}
        self._lock = threading.Lock()
        store.subscribe(self.invalidate)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._cache.clear()
            else:
                self._cache.pop(tenant_id, None)

    def _snapshot(self, tenant_id: str) -> BalanceSnapshot:
        if self.cache_ttl_seconds > 0:
            with self._lock:
                cached = self._cache.get(tenant_id)
            if cached:
                stamped_at, snap = cached
                fresh = time.monotonic() - stamped_at < self.cache_ttl_seconds
                if fresh and snap.version == self.store.version(tenant_id):
                    return snap

        snap = self.store.snapshot(tenant_id)
        if self.cache_ttl_seconds > 0:
            with self._lock:
                self._cache[tenant_id] = (time.monotonic(), snap)
        return snap

    def get_available(self, tenant_id: str) -> Decimal:
        return self._snapshot(tenant_id).available

    def get_balance(self, tenant_id: str) -> TenantBalance:
        snap = self._snapshot(tenant_id)
        return TenantBalance(
            tenant_id=tenant_id,
            committed=snap.committed,
            held=snap.held,
            available=snap.available,
            total_entries=snap.total_entries,
            last_entry_at=snap.last_entry_at,
        )

    def is_cached(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._cache
