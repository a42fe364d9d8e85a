from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID, uuid4

from .auth import Principal, authorize
from .balance import BalanceAccumulator
from .config import Settings
from .exceptions import (
    AttemptNotFound,
    DuplicateReference,
    GatewayUnavailable,
    InsufficientFunds,
    ReconciliationTimeout,
    Unauthorized,
    ValidationError,
    WalletError,
    WithdrawalInProgress,
    GatewayRejected,
)
from .gateway import PayoutGateway, PayoutRequest, PayoutStatus, SubmitStatus
from .logger import payments_logger as logger
from .models import (
    AttemptState,
    EntryKind,
    TransitionResult,
    WithdrawalAttempt,
    WithdrawalRequest,
    to_amount,
)
from .store import LedgerStore

RESOLVABLE_STATES = frozenset({AttemptState.HELD, AttemptState.GATEWAY_SUBMITTED})


class WithdrawalOrchestrator:
    """
    Drives a WithdrawalAttempt through its lifecycle:

        PENDING_HOLD -> HELD -> GATEWAY_SUBMITTED -> SUCCEEDED | FAILED | EXPIRED

    Every transition is a compare-and-swap on the stored state, so replaying a
    transition (retried webhook, a second sweep worker) is a no-op. Ledger
    effects are applied before the state change and are themselves guarded by
    the ledger's reference index, so a crash between the two heals on replay.
    The gateway is never called while a tenant lock is held.
    """

    def __init__(self, store: LedgerStore, gateway: PayoutGateway,
                 balance: Optional[BalanceAccumulator] = None, settings: Optional[Settings] = None):
        self.store = store
        self.gateway = gateway
        self.balance = balance or BalanceAccumulator(store)
        self.settings = settings or Settings()

    # -- request entry point ---------------------------------------------

    def _validate(self, request: WithdrawalRequest) -> tuple[Decimal, list[str]]:
        problems = []
        try:
            amount = to_amount(request.amount)
        except (InvalidOperation, ValueError, TypeError):
            return Decimal("0"), ["amount is not a valid number"]

        if amount != request.amount:
            problems.append("amount may have at most two decimal places")
        if amount <= 0:
            problems.append("amount must be greater than zero")
        elif amount < self.settings.withdrawal_min_amount:
            problems.append(f"minimum withdrawal is {self.settings.withdrawal_min_amount}")
        elif amount > self.settings.withdrawal_max_amount:
            problems.append(f"maximum withdrawal is {self.settings.withdrawal_max_amount}")
        problems.extend(request.destination().problems())
        return amount, problems

    def request_withdrawal(self, principal: Optional[Principal], request: WithdrawalRequest,
                           tenant_id: Optional[str] = None) -> TransitionResult:
        tenant_id = tenant_id or (principal.tenant_id if principal else None)
        try:
            authorize(principal, tenant_id)
        except Unauthorized as e:
            logger.warning(f"Withdrawal refused for {principal.user_id if principal else 'anonymous'}: {e}")
            return TransitionResult(error=e.code, message=str(e))
        if not tenant_id:
            return TransitionResult(error=ValidationError.code, message="A school must be selected")

        amount, problems = self._validate(request)
        if problems:
            return TransitionResult(error=ValidationError.code, message="; ".join(problems))

        key = request.idempotency_key or uuid4().hex
        existing = self.store.find_attempt_by_key(tenant_id, key)
        if existing:
            return TransitionResult(attempt=existing, message="Withdrawal already requested (idempotent return)")

        now = self.store.clock()
        attempt = WithdrawalAttempt(
            id=uuid4(),
            tenant_id=tenant_id,
            amount=amount,
            destination=request.destination(),
            idempotency_key=key,
            requested_by=principal.user_id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self.settings.withdrawal_expiry_seconds),
        )
        try:
            attempt = self.store.insert_attempt(attempt)
        except DuplicateReference:
            return TransitionResult(attempt=self.store.find_attempt_by_key(tenant_id, key),
                                    message="Withdrawal already requested (idempotent return)")
        except WithdrawalInProgress as e:
            logger.info(f"Withdrawal refused for tenant {tenant_id}: {e}")
            return TransitionResult(error=e.code, message=str(e))

        logger.info(f"Withdrawal {attempt.id} created: tenant={tenant_id} amount={amount} "
                    f"to={attempt.destination.bank_code}/{attempt.destination.masked_account}")
        return self._hold(attempt)

    def _hold(self, attempt: WithdrawalAttempt) -> TransitionResult:
        try:
            self.store.place_hold(attempt.tenant_id, attempt.amount, attempt.hold_reference)
        except InsufficientFunds as e:
            failed = self.store.compare_and_swap(
                attempt.id, AttemptState.PENDING_HOLD, state=AttemptState.FAILED, failure_reason=str(e),
            )
            return TransitionResult(attempt=failed or self.store.get_attempt(attempt.id),
                                    applied=failed is not None, error=e.code, message=str(e))
        except DuplicateReference:
            # hold already placed by an earlier pass
            pass
        except WalletError as e:
            self.store.compare_and_swap(attempt.id, AttemptState.PENDING_HOLD,
                                        state=AttemptState.FAILED, failure_reason=str(e))
            logger.error(f"Hold for withdrawal {attempt.id} failed: {e}")
            raise

        held = self.store.compare_and_swap(attempt.id, AttemptState.PENDING_HOLD, state=AttemptState.HELD)
        if held is None:
            current = self.store.get_attempt(attempt.id)
            if current.state == AttemptState.FAILED:
                self._close_hold(current, settle=False)
            return TransitionResult(attempt=current, message=f"Withdrawal is {current.state.value}")

        return self.submit(held.id)

    # -- gateway submission ----------------------------------------------

    def submit(self, attempt_id: UUID) -> TransitionResult:
        attempt = self.store.get_attempt(attempt_id)
        if attempt.state != AttemptState.HELD:
            return TransitionResult(attempt=attempt, message=f"Withdrawal is {attempt.state.value}; nothing to submit")

        if attempt.submit_attempts > 0:
            # an earlier submission may have reached the gateway
            try:
                status = self.gateway.query_status(attempt.hold_reference)
            except GatewayUnavailable as e:
                return TransitionResult(attempt=attempt, error=e.code, message=str(e))
            if status != PayoutStatus.UNKNOWN:
                return self.apply_gateway_status(attempt.id, status)

        claimed = self.store.compare_and_swap(
            attempt.id, AttemptState.HELD, match={"submit_attempts": attempt.submit_attempts},
            submit_attempts=attempt.submit_attempts + 1,
        )
        if claimed is None:
            current = self.store.get_attempt(attempt.id)
            return TransitionResult(attempt=current, message="Submission already claimed by another worker")

        payout = PayoutRequest(
            reference=claimed.hold_reference,
            amount=claimed.amount,
            bank_code=claimed.destination.bank_code,
            account_number=claimed.destination.account_number,
            account_name=claimed.destination.account_name,
        )
        try:
            result = self.gateway.submit_payout(payout)
        except GatewayUnavailable as e:
            logger.warning(f"Payout submit for {claimed.id} deferred to reconciliation: {e}")
            return TransitionResult(attempt=self.store.get_attempt(claimed.id), error=e.code,
                                    message="Payout gateway unavailable; withdrawal will be retried")

        if result.status == SubmitStatus.REJECTED and attempt.submit_attempts > 0:
            # the unanswered earlier submission may still settle; only a requery can close this
            logger.error(f"Resubmission of withdrawal {claimed.id} rejected ({result.message}); "
                         f"hold retained until the gateway reports the first transfer")
            return TransitionResult(attempt=self.store.get_attempt(claimed.id),
                                    message="Resubmission rejected; awaiting gateway status of earlier payout")

        if result.status == SubmitStatus.REJECTED:
            return self._fail(claimed, AttemptState.HELD, f"Gateway rejected payout: {result.message}",
                              error=GatewayRejected.code)

        submitted = self.store.compare_and_swap(
            claimed.id, AttemptState.HELD, state=AttemptState.GATEWAY_SUBMITTED,
            gateway_reference=result.gateway_reference or claimed.hold_reference,
        )
        if submitted is None:
            return TransitionResult(attempt=self.store.get_attempt(claimed.id),
                                    message="Withdrawal moved on before submission was recorded")
        logger.info(f"Withdrawal {submitted.id} submitted to gateway as {submitted.gateway_reference}")
        return TransitionResult(attempt=submitted, applied=True, message="Withdrawal submitted for processing")

    # -- resolution --------------------------------------------------------

    def _close_hold(self, attempt: WithdrawalAttempt, settle: bool) -> bool:
        """Commit or release the hold. False means the ledger already holds the opposite outcome."""
        wanted = EntryKind.HOLD_COMMIT if settle else EntryKind.HOLD_RELEASE
        try:
            if settle:
                self.store.commit_hold(attempt.tenant_id, attempt.hold_reference,
                                       metadata={"attempt_id": str(attempt.id),
                                                 "gateway_reference": attempt.gateway_reference,
                                                 "bank_code": attempt.destination.bank_code,
                                                 "account": attempt.destination.masked_account})
            else:
                self.store.release_hold(attempt.tenant_id, attempt.hold_reference,
                                        reason=attempt.failure_reason or "")
        except DuplicateReference as e:
            if e.kind == wanted.value:
                return True
            logger.error(f"Withdrawal {attempt.id}: ledger already shows {e.kind}, refusing {wanted.value}")
            return False
        return True

    def _fail(self, attempt: WithdrawalAttempt, expected, reason: str,
              error: Optional[str] = None) -> TransitionResult:
        attempt = attempt.model_copy(update={"failure_reason": reason})
        if not self._close_hold(attempt, settle=False):
            return TransitionResult(attempt=self.store.get_attempt(attempt.id), error="CONFLICTING_OUTCOME",
                                    message="Ledger shows the withdrawal as settled")
        failed = self.store.compare_and_swap(attempt.id, expected, state=AttemptState.FAILED,
                                             failure_reason=reason, needs_review=False)
        if failed is None:
            return TransitionResult(attempt=self.store.get_attempt(attempt.id), message="Already resolved")
        logger.warning(f"Withdrawal {failed.id} failed: {reason}")
        return TransitionResult(attempt=failed, applied=True, error=error, message=reason)

    def _succeed(self, attempt: WithdrawalAttempt, expected) -> TransitionResult:
        if not self._close_hold(attempt, settle=True):
            return TransitionResult(attempt=self.store.get_attempt(attempt.id), error="CONFLICTING_OUTCOME",
                                    message="Ledger shows the withdrawal hold as released")
        done = self.store.compare_and_swap(attempt.id, expected, state=AttemptState.SUCCEEDED,
                                           failure_reason=None, needs_review=False)
        if done is None:
            return TransitionResult(attempt=self.store.get_attempt(attempt.id), message="Already resolved")
        logger.info(f"Withdrawal {done.id} settled: tenant={done.tenant_id} amount={done.amount}")
        return TransitionResult(attempt=done, applied=True, message="Withdrawal settled")

    def apply_gateway_status(self, attempt_id: UUID, status: PayoutStatus) -> TransitionResult:
        attempt = self.store.get_attempt(attempt_id)
        if attempt.state not in RESOLVABLE_STATES:
            return TransitionResult(attempt=attempt, message=f"Withdrawal is {attempt.state.value}; status ignored")
        if status == PayoutStatus.UNKNOWN:
            return TransitionResult(attempt=attempt, message="Gateway status unknown; awaiting reconciliation")
        if status == PayoutStatus.SETTLED:
            return self._succeed(attempt, attempt.state)
        return self._fail(attempt, attempt.state, "Gateway reported transfer failure")

    def handle_settlement(self, gateway_reference: str, status: PayoutStatus) -> TransitionResult:
        attempt = self.store.find_attempt_by_gateway_reference(gateway_reference)
        if attempt is None and gateway_reference.startswith("WD-"):
            try:
                attempt = self.store.get_attempt(UUID(gateway_reference[3:]))
            except (ValueError, AttemptNotFound):
                attempt = None
        if attempt is None:
            logger.warning(f"Settlement for unknown payout reference {gateway_reference}")
            return TransitionResult(error=AttemptNotFound.code, message=f"No withdrawal for {gateway_reference}")

        if attempt.state == AttemptState.EXPIRED:
            return self.resolve_expired(attempt.id, status)
        return self.apply_gateway_status(attempt.id, status)

    def expire(self, attempt_id: UUID) -> TransitionResult:
        """Mark an unresolved attempt EXPIRED for operator review. The hold stays in place."""
        attempt = self.store.get_attempt(attempt_id)
        expired = self.store.compare_and_swap(
            attempt_id, RESOLVABLE_STATES, state=AttemptState.EXPIRED, needs_review=True,
            failure_reason="Unresolved before expiry; awaiting manual review",
        )
        if expired is None:
            current = self.store.get_attempt(attempt_id)
            return TransitionResult(attempt=current, message=f"Withdrawal is {current.state.value}")
        logger.error(f"Withdrawal {attempt.id} for tenant {attempt.tenant_id} expired unresolved "
                     f"(amount={attempt.amount}, last state {attempt.state.value}); hold retained for review")
        return TransitionResult(attempt=expired, applied=True, error=ReconciliationTimeout.code,
                                message="Withdrawal expired unresolved and needs manual review")

    def resolve_expired(self, attempt_id: UUID, status: Optional[PayoutStatus] = None) -> TransitionResult:
        """Close an EXPIRED attempt once the gateway gives a definitive answer."""
        attempt = self.store.get_attempt(attempt_id)
        if attempt.state != AttemptState.EXPIRED:
            return TransitionResult(attempt=attempt, message=f"Withdrawal is {attempt.state.value}; nothing to resolve")
        if status is None:
            try:
                status = self.gateway.query_status(attempt.gateway_reference or attempt.hold_reference)
            except GatewayUnavailable as e:
                return TransitionResult(attempt=attempt, error=e.code, message=str(e))
        if status == PayoutStatus.UNKNOWN:
            return TransitionResult(attempt=attempt, message="Gateway status still unknown; hold retained")
        if status == PayoutStatus.SETTLED:
            return self._succeed(attempt, AttemptState.EXPIRED)
        return self._fail(attempt, AttemptState.EXPIRED, "Gateway reported transfer failure after expiry")

    def recover_pending(self, attempt_id: UUID) -> TransitionResult:
        """Finish an attempt left in PENDING_HOLD by an interrupted request."""
        attempt = self.store.get_attempt(attempt_id)
        if attempt.state != AttemptState.PENDING_HOLD:
            return TransitionResult(attempt=attempt, message=f"Withdrawal is {attempt.state.value}")
        if self.store.is_hold_open(attempt.tenant_id, attempt.hold_reference):
            held = self.store.compare_and_swap(attempt.id, AttemptState.PENDING_HOLD, state=AttemptState.HELD)
            if held is None:
                return TransitionResult(attempt=self.store.get_attempt(attempt.id), message="Already moved on")
            return TransitionResult(attempt=held, applied=True, message="Hold found; withdrawal is HELD")
        failed = self.store.compare_and_swap(attempt.id, AttemptState.PENDING_HOLD, state=AttemptState.FAILED,
                                             failure_reason="Request interrupted before funds were held")
        if failed is None:
            return TransitionResult(attempt=self.store.get_attempt(attempt.id), message="Already moved on")
        logger.warning(f"Withdrawal {failed.id} abandoned before hold; marked FAILED")
        return TransitionResult(attempt=failed, applied=True, message=failed.failure_reason)
