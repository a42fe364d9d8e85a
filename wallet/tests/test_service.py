"""
Unit Tests for the Wallet Service

Tests cover:
1. Usage billing debits
2. Wallet summary totals
3. Transaction history mapping and ordering
4. Bank list fallback
5. Withdrawal reads and tenant isolation
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from wallet.auth import Principal, Role
from wallet.exceptions import Forbidden, InsufficientFunds, MalformedRecord
from wallet.gateway import PayoutStatus, STATIC_BANKS
from wallet.models import EntryKind, LedgerEntry, UsageDebitRequest

SCHOOL = "school-greenfield"
OTHER_SCHOOL = "school-riverside"


class TestUsageBilling:
    """Tests for usage debits."""

    def test_usage_debit(self, service, admin, fund):
        fund(amount="1000.00")

        response = service.debit_usage(admin, UsageDebitRequest(
            amount=Decimal("200.00"), reference="usage-2024-09", student_count=40,
        ))

        assert response.created
        assert response.entry.kind == EntryKind.DEBIT_USAGE
        assert response.entry.metadata == {"student_count": 40, "performed_by": "admin-1"}
        assert service.get_balance(SCHOOL).committed == Decimal("800.00")

    def test_usage_debit_idempotent(self, service, admin, fund):
        fund(amount="1000.00")
        request = UsageDebitRequest(amount=Decimal("200.00"), reference="usage-2024-09", student_count=40)

        first = service.debit_usage(admin, request)
        second = service.debit_usage(admin, request)

        assert not second.created
        assert second.entry.id == first.entry.id
        assert service.store.sum_balance(SCHOOL) == Decimal("800.00")

    def test_usage_debit_respects_holds(self, service, admin, fund, make_request):
        """Test usage billing cannot spend funds held for a withdrawal."""
        fund(amount="1000.00")
        service.request_withdrawal(admin, make_request("900.00"))

        with pytest.raises(InsufficientFunds):
            service.debit_usage(admin, UsageDebitRequest(amount=Decimal("200.00"), reference="usage-1"))

    def test_usage_debit_requires_admin(self, service, fund):
        fund(amount="1000.00")
        parent = Principal(tenant_id=SCHOOL, user_id="parent-1", role=Role.PARENT)

        with pytest.raises(Forbidden):
            service.debit_usage(parent, UsageDebitRequest(amount=Decimal("10.00"), reference="usage-1"))


class TestSummaryAndHistory:
    """Tests for wallet read models."""

    def test_summary_totals(self, service, admin, fund, make_request):
        fund(amount="1000.00")
        fund(amount="500.00")
        service.debit_usage(admin, UsageDebitRequest(amount=Decimal("200.00"), reference="usage-1",
                                                     student_count=40))
        attempt = service.request_withdrawal(admin, make_request("300.00")).attempt
        service.orchestrator.handle_settlement(attempt.gateway_reference, PayoutStatus.SETTLED)
        pending = service.request_withdrawal(admin, make_request("100.00")).attempt

        summary = service.get_summary(SCHOOL)

        assert summary.total_fees_collected == Decimal("1500.00")
        assert summary.total_usage_paid == Decimal("200.00")
        assert summary.total_withdrawn == Decimal("300.00")
        assert summary.balance == Decimal("1000.00")
        assert summary.held == Decimal("100.00")
        assert summary.available == Decimal("900.00")
        assert summary.pending_withdrawal.id == pending.id

    def test_transactions_newest_first(self, service, clock, admin, fund, make_request):
        fund(amount="1000.00")
        clock.advance(60)
        service.debit_usage(admin, UsageDebitRequest(amount=Decimal("200.00"), reference="usage-1",
                                                     student_count=40))
        clock.advance(60)
        attempt = service.request_withdrawal(admin, make_request("300.00")).attempt
        clock.advance(60)
        service.orchestrator.handle_settlement(attempt.gateway_reference, PayoutStatus.SETTLED)

        transactions = service.get_transactions(SCHOOL)

        assert [t.type for t in transactions] == ["WITHDRAWAL", "USAGE_BILLING", "FEE_COLLECTION"]
        assert transactions[0].amount == Decimal("-300.00")
        assert transactions[1].amount == Decimal("-200.00")
        assert transactions[1].description == "Usage Billing (40 students)"
        assert transactions[2].amount == Decimal("1000.00")
        assert all(t.status == "SUCCESS" for t in transactions)

    def test_open_withdrawal_listed_as_pending(self, service, admin, fund, make_request):
        fund(amount="1000.00")
        attempt = service.request_withdrawal(admin, make_request("300.00")).attempt

        pending = [t for t in service.get_transactions(SCHOOL) if t.type == "WITHDRAWAL"]

        assert len(pending) == 1
        assert pending[0].id == attempt.id
        assert pending[0].status == "PENDING"

    def test_transactions_limit(self, service, fund):
        for _ in range(15):
            fund(amount="10.00")
        assert len(service.get_transactions(SCHOOL)) == 10
        assert len(service.get_transactions(SCHOOL, limit=3)) == 3

    def test_unreadable_student_count(self, service, store, fund):
        """Test a usage entry with a corrupt student count is reported, not shown as zero."""
        fund(amount="1000.00")
        store.append_entry(LedgerEntry(
            id=uuid4(), tenant_id=SCHOOL, kind=EntryKind.DEBIT_USAGE, amount=Decimal("50.00"),
            reference_id="usage-legacy", created_at=store.clock(), metadata={"student_count": "many"},
        ))

        with pytest.raises(MalformedRecord):
            service.get_transactions(SCHOOL)

    def test_ledger_history_paging(self, service, fund):
        for _ in range(5):
            fund(amount="10.00")

        history = service.get_ledger_history(SCHOOL, limit=2, offset=1)

        assert history.total_count == 5
        assert len(history.entries) == 2
        assert history.available == Decimal("50.00")


class TestReadsAndBanks:
    """Tests for withdrawal reads and the bank list."""

    def test_get_withdrawal_other_school(self, service, admin, fund, make_request):
        fund(amount="1000.00")
        attempt = service.request_withdrawal(admin, make_request("300.00")).attempt
        outsider = Principal(tenant_id=OTHER_SCHOOL, user_id="admin-9", role=Role.SCHOOL_ADMIN)

        assert service.get_withdrawal(admin, attempt.id).id == attempt.id
        with pytest.raises(Forbidden):
            service.get_withdrawal(outsider, attempt.id)

    def test_banks_from_gateway(self, service):
        assert [b.code for b in service.list_banks()] == ["058"]

    def test_banks_fall_back_when_gateway_down(self, service, gateway):
        gateway.banks = None
        assert service.list_banks() == STATIC_BANKS

    def test_banks_fall_back_when_empty(self, service, gateway):
        gateway.banks = []
        assert len(service.list_banks()) == len(STATIC_BANKS)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
