from typing import Optional
from uuid import UUID, uuid4

from .auth import Principal, Role, authorize
from .balance import BalanceAccumulator
from .config import Settings
from .exceptions import DuplicateReference, GatewayUnavailable, MalformedRecord, ValidationError
from .gateway import PayoutGateway, PayoutStatus, STATIC_BANKS, SquadPayoutGateway
from .logger import app_logger as logger, configure_logging
from .models import (
    AttemptState,
    Bank,
    EntryKind,
    FeeCreditRequest,
    LedgerEntry,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    OPEN_STATES,
    TenantBalance,
    TransitionResult,
    UsageDebitRequest,
    WalletSummary,
    WalletTransaction,
    WithdrawalAttempt,
    WithdrawalRequest,
)
from .orchestrator import WithdrawalOrchestrator
from .store import LedgerStore, ZERO
from .sweep import ReconciliationSweep, SweepReport
from .webhooks import PaymentWebhookHandler


class WalletService:
    def __init__(self, store: Optional[LedgerStore] = None, gateway: Optional[PayoutGateway] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        configure_logging(self.settings)
        self.store = store or LedgerStore()
        if not self.store.is_open:
            self.store.open()
        self.gateway = gateway or SquadPayoutGateway(
            self.settings.squad_base_url,
            self.settings.squad_secret_key,
            timeout=self.settings.gateway_timeout_seconds,
        )
        self.balance = BalanceAccumulator(self.store, self.settings.balance_cache_ttl_seconds)
        self.orchestrator = WithdrawalOrchestrator(self.store, self.gateway, self.balance, self.settings)
        self.sweep = ReconciliationSweep(self.store, self.orchestrator, self.gateway, self.settings)
        self.webhooks = PaymentWebhookHandler(self)

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        self.sweep.start()

    def close(self) -> None:
        self.sweep.shutdown()
        self.store.close()

    # -- money in / money out ----------------------------------------------

    def credit_fee(self, request: FeeCreditRequest) -> LedgerEntryResponse:
        entry = LedgerEntry(
            id=uuid4(),
            tenant_id=request.tenant_id,
            kind=EntryKind.CREDIT_FEE,
            amount=request.amount,
            reference_id=request.reference,
            description=request.description or "School fee payment",
            created_at=self.store.clock(),
            metadata={**request.metadata, "student_id": request.student_id},
        )
        try:
            entry_id = self.store.append_entry(entry)
        except DuplicateReference as e:
            return LedgerEntryResponse(
                entry=self.store.get_entry(e.existing_id),
                created=False,
                message="Fee already credited (idempotent return)",
            )
        return LedgerEntryResponse(entry=self.store.get_entry(entry_id), created=True,
                                   message="Fee credited successfully")

    def debit_usage(self, principal: Optional[Principal], request: UsageDebitRequest,
                    tenant_id: Optional[str] = None) -> LedgerEntryResponse:
        tenant_id = tenant_id or (principal.tenant_id if principal else None)
        authorize(principal, tenant_id)
        if not tenant_id:
            raise ValidationError("A school must be selected")

        entry = LedgerEntry(
            id=uuid4(),
            tenant_id=tenant_id,
            kind=EntryKind.DEBIT_USAGE,
            amount=request.amount,
            reference_id=request.reference,
            description=request.description or f"Usage Billing ({request.student_count} students)",
            created_at=self.store.clock(),
            metadata={"student_count": request.student_count, "performed_by": principal.user_id},
        )
        try:
            entry_id = self.store.append_entry(entry)
        except DuplicateReference as e:
            return LedgerEntryResponse(
                entry=self.store.get_entry(e.existing_id),
                created=False,
                message="Usage already billed (idempotent return)",
            )
        return LedgerEntryResponse(entry=self.store.get_entry(entry_id), created=True,
                                   message="Usage billed successfully")

    # -- withdrawals -------------------------------------------------------

    def request_withdrawal(self, principal: Optional[Principal], request: WithdrawalRequest,
                           tenant_id: Optional[str] = None) -> TransitionResult:
        return self.orchestrator.request_withdrawal(principal, request, tenant_id)

    def get_withdrawal(self, principal: Optional[Principal], attempt_id: UUID) -> WithdrawalAttempt:
        attempt = self.store.get_attempt(attempt_id)
        authorize(principal, attempt.tenant_id)
        return attempt

    def list_withdrawals(self, tenant_id: str) -> list[WithdrawalAttempt]:
        attempts = self.store.list_attempts(tenant_id)
        attempts.sort(key=lambda a: a.created_at, reverse=True)
        return attempts

    def withdrawals_for_review(self) -> list[WithdrawalAttempt]:
        return [a for a in self.store.list_attempts(states=[AttemptState.EXPIRED]) if a.needs_review]

    def resolve_withdrawal(self, principal: Optional[Principal], attempt_id: UUID,
                           status: Optional[PayoutStatus] = None,
                           reason: Optional[str] = None) -> TransitionResult:
        authorize(principal, None, {Role.SUPER_ADMIN})
        if status is None:
            logger.info(f"Operator {principal.user_id} resolving withdrawal {attempt_id} by gateway query")
        elif not (reason or "").strip():
            raise ValidationError("A reason is required when overriding the gateway status")
        else:
            logger.warning(f"Operator {principal.user_id} overriding withdrawal {attempt_id} "
                           f"as {status.value} without gateway query: {reason}")
        return self.orchestrator.resolve_expired(attempt_id, status)

    def run_reconciliation(self) -> SweepReport:
        return self.sweep.run_once()

    def list_banks(self) -> list[Bank]:
        try:
            banks = self.gateway.list_banks()
        except GatewayUnavailable as e:
            logger.warning(f"Falling back to static bank list: {e}")
            return list(STATIC_BANKS)
        return banks or list(STATIC_BANKS)

    # -- reads -------------------------------------------------------------

    def get_balance(self, tenant_id: str) -> TenantBalance:
        return self.balance.get_balance(tenant_id)

    def get_summary(self, tenant_id: str) -> WalletSummary:
        totals = {kind: ZERO for kind in EntryKind}
        for entry in self.store.list_entries(tenant_id):
            totals[entry.kind] += entry.amount
        balance = self.balance.get_balance(tenant_id)
        return WalletSummary(
            tenant_id=tenant_id,
            balance=balance.committed,
            held=balance.held,
            available=balance.available,
            total_fees_collected=totals[EntryKind.CREDIT_FEE],
            total_usage_paid=totals[EntryKind.DEBIT_USAGE],
            total_withdrawn=totals[EntryKind.DEBIT_WITHDRAWAL],
            pending_withdrawal=self.store.open_attempt(tenant_id),
        )

    def get_transactions(self, tenant_id: str, limit: int = 10) -> list[WalletTransaction]:
        """Fee collections, usage billing and withdrawals, newest first."""
        transactions = []
        kinds = (EntryKind.CREDIT_FEE, EntryKind.DEBIT_USAGE, EntryKind.DEBIT_WITHDRAWAL)
        for entry in self.store.list_entries(tenant_id, kinds):
            if entry.kind == EntryKind.CREDIT_FEE:
                transactions.append(WalletTransaction(
                    id=entry.id, type="FEE_COLLECTION", amount=entry.amount,
                    description=entry.description, date=entry.created_at, status="SUCCESS",
                ))
            elif entry.kind == EntryKind.DEBIT_USAGE:
                transactions.append(WalletTransaction(
                    id=entry.id, type="USAGE_BILLING", amount=-entry.amount,
                    description=f"Usage Billing ({_student_count(entry)} students)",
                    date=entry.created_at, status="SUCCESS",
                ))
            else:
                transactions.append(WalletTransaction(
                    id=entry.id, type="WITHDRAWAL", amount=-entry.amount,
                    description="Funds Withdrawal", date=entry.created_at, status="SUCCESS",
                ))

        for attempt in self.store.list_attempts(tenant_id, OPEN_STATES | {AttemptState.EXPIRED}):
            transactions.append(WalletTransaction(
                id=attempt.id, type="WITHDRAWAL", amount=-attempt.amount,
                description="Funds Withdrawal", date=attempt.created_at,
                status="PENDING" if attempt.is_open() else "UNDER_REVIEW",
            ))

        transactions.sort(key=lambda t: t.date, reverse=True)
        return transactions[:limit]

    def get_ledger_history(self, tenant_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = self.store.list_entries(tenant_id)
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        return LedgerHistoryResponse(
            tenant_id=tenant_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            available=self.balance.get_available(tenant_id),
        )


def _student_count(entry: LedgerEntry) -> int:
    raw = entry.metadata.get("student_count")
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise MalformedRecord(f"Usage entry {entry.id} has unreadable student_count {raw!r}")
    try:
        count = int(raw)
    except ValueError:
        raise MalformedRecord(f"Usage entry {entry.id} has unreadable student_count {raw!r}")
    if count < 0:
        raise MalformedRecord(f"Usage entry {entry.id} has negative student_count {raw!r}")
    return count
