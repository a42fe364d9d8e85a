"""
Unit Tests for the Balance Accumulator

Tests cover:
1. Available funds = committed balance - open holds
2. Cache invalidation on every ledger mutation
3. Disabled cache
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from wallet.balance import BalanceAccumulator
from wallet.models import EntryKind, LedgerEntry

SCHOOL = "school-greenfield"
OTHER_SCHOOL = "school-riverside"


def credit(store, amount="1000.00", tenant_id=SCHOOL):
    store.append_entry(LedgerEntry(
        id=uuid4(), tenant_id=tenant_id, kind=EntryKind.CREDIT_FEE, amount=Decimal(amount),
        reference_id=f"fee-{uuid4().hex[:8]}", created_at=store.clock(),
    ))


class TestBalanceAccumulator:
    """Tests for cached balance reads."""

    def test_available_excludes_holds(self, store):
        """Test available balance subtracts open holds."""
        balance = BalanceAccumulator(store)
        credit(store)
        store.place_hold(SCHOOL, Decimal("250.00"), "WD-a")

        result = balance.get_balance(SCHOOL)

        assert result.committed == Decimal("1000.00")
        assert result.held == Decimal("250.00")
        assert result.available == Decimal("750.00")
        assert result.total_entries == 2
        assert result.last_entry_at == store.clock()

    def test_empty_tenant(self, store):
        balance = BalanceAccumulator(store)
        assert balance.get_available("school-new") == Decimal("0.00")

    def test_read_is_cached(self, store):
        balance = BalanceAccumulator(store)
        credit(store)

        balance.get_available(SCHOOL)

        assert balance.is_cached(SCHOOL)

    def test_mutation_invalidates_cache(self, store):
        """Test a hold placed after a cached read is visible on the next read."""
        balance = BalanceAccumulator(store)
        credit(store)
        assert balance.get_available(SCHOOL) == Decimal("1000.00")

        store.place_hold(SCHOOL, Decimal("400.00"), "WD-a")

        # Verify cache dropped by the store notification
        assert not balance.is_cached(SCHOOL)
        assert balance.get_available(SCHOOL) == Decimal("600.00")

    def test_other_tenant_cache_kept(self, store):
        balance = BalanceAccumulator(store)
        credit(store)
        credit(store, tenant_id=OTHER_SCHOOL)
        balance.get_available(SCHOOL)
        balance.get_available(OTHER_SCHOOL)

        store.place_hold(SCHOOL, Decimal("100.00"), "WD-a")

        assert not balance.is_cached(SCHOOL)
        assert balance.is_cached(OTHER_SCHOOL)

    def test_version_check_catches_missed_notification(self, store):
        """Test a cached value older than the store version is not served."""
        balance = BalanceAccumulator(store)
        credit(store)
        balance.get_available(SCHOOL)
        store._listeners.remove(balance.invalidate)

        store.place_hold(SCHOOL, Decimal("400.00"), "WD-a")

        assert balance.is_cached(SCHOOL)
        assert balance.get_available(SCHOOL) == Decimal("600.00")

    def test_invalidate_all(self, store):
        balance = BalanceAccumulator(store)
        credit(store)
        balance.get_available(SCHOOL)

        balance.invalidate()

        assert not balance.is_cached(SCHOOL)

    def test_zero_ttl_disables_cache(self, store):
        balance = BalanceAccumulator(store, cache_ttl_seconds=0)
        credit(store)

        assert balance.get_available(SCHOOL) == Decimal("1000.00")
        assert not balance.is_cached(SCHOOL)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
