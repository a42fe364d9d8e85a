from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from wallet.auth import Principal, Role
from wallet.config import Settings
from wallet.exceptions import GatewayUnavailable
from wallet.gateway import PayoutStatus, SubmitResult, SubmitStatus
from wallet.models import Bank, FeeCreditRequest, WithdrawalRequest
from wallet.service import WalletService
from wallet.store import LedgerStore


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGateway:
    """Scripted payout gateway. Submits are ACCEPTED and statuses UNKNOWN unless told otherwise."""

    def __init__(self):
        self.submit_outcomes = []
        self.statuses = {}
        self.submitted = []
        self.queries = []
        self.banks = [Bank(code="058", name="Guaranty Trust Bank")]

    def submit_payout(self, request):
        self.submitted.append(request)
        outcome = self.submit_outcomes.pop(0) if self.submit_outcomes else SubmitStatus.ACCEPTED
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == SubmitStatus.REJECTED:
            return SubmitResult(status=SubmitStatus.REJECTED, message="Invalid beneficiary account")
        return SubmitResult(status=SubmitStatus.ACCEPTED, gateway_reference=request.reference, message="Accepted")

    def query_status(self, gateway_reference):
        self.queries.append(gateway_reference)
        status = self.statuses.get(gateway_reference, PayoutStatus.UNKNOWN)
        if isinstance(status, Exception):
            raise status
        return status

    def list_banks(self):
        if self.banks is None:
            raise GatewayUnavailable("bank list down")
        return self.banks


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(clock):
    s = LedgerStore(clock=clock).open()
    yield s
    s.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        log_dir=str(tmp_path / "logs"),
        webhook_secret="test-webhook-secret",
        withdrawal_min_amount=Decimal("100"),
        withdrawal_max_amount=Decimal("1000000"),
        withdrawal_expiry_seconds=3600,
        submit_retry_seconds=120,
        poll_seconds=300,
        balance_cache_ttl_seconds=30,
    )


@pytest.fixture
def service(store, gateway, settings):
    svc = WalletService(store=store, gateway=gateway, settings=settings)
    yield svc
    svc.close()


@pytest.fixture
def admin():
    return Principal(tenant_id="school-greenfield", user_id="admin-1", role=Role.SCHOOL_ADMIN)


@pytest.fixture
def fund(service):
    def _fund(tenant_id="school-greenfield", amount="1000.00", reference=None):
        return service.credit_fee(FeeCreditRequest(
            tenant_id=tenant_id,
            amount=Decimal(amount),
            reference=reference or f"fee-{uuid4().hex[:10]}",
            student_id="student-7",
        ))
    return _fund


@pytest.fixture
def make_request():
    def _make(amount="400.00", key=None, account_number="0123456789"):
        return WithdrawalRequest(
            amount=Decimal(amount),
            bank_code="058",
            bank_name="Guaranty Trust Bank",
            account_number=account_number,
            account_name="Greenfield Academy",
            idempotency_key=key,
        )
    return _make
