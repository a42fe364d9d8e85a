from decimal import Decimal
from typing import Optional


class WalletError(Exception):
    code = "WALLET_ERROR"


class ValidationError(WalletError):
    code = "VALIDATION_ERROR"


class InsufficientFunds(WalletError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient funds: requested {required}, available {available}")


class WithdrawalInProgress(WalletError):
    code = "WITHDRAWAL_IN_PROGRESS"


class GatewayUnavailable(WalletError):
    code = "GATEWAY_UNAVAILABLE"


class GatewayRejected(WalletError):
    code = "GATEWAY_REJECTED"


class ReconciliationTimeout(WalletError):
    code = "RECONCILIATION_TIMEOUT"


class DuplicateReference(WalletError):
    code = "DUPLICATE_REFERENCE"

    def __init__(self, tenant_id: str, reference_id: str, kind: str, existing_id: Optional[object] = None):
        self.tenant_id = tenant_id
        self.reference_id = reference_id
        self.kind = kind
        self.existing_id = existing_id
        super().__init__(f"{kind} entry for reference {reference_id} already exists for tenant {tenant_id}")


class HoldNotFound(WalletError):
    code = "HOLD_NOT_FOUND"


class AttemptNotFound(WalletError):
    code = "ATTEMPT_NOT_FOUND"


class Unauthorized(WalletError):
    code = "UNAUTHORIZED"


class InvalidSignature(WalletError):
    code = "INVALID_SIGNATURE"


class MalformedRecord(WalletError):
    code = "MALFORMED_RECORD"


class StoreClosed(WalletError):
    code = "STORE_CLOSED"


class Forbidden(Unauthorized):
    code = "FORBIDDEN"
