from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import requests
from pydantic import BaseModel
from requests.exceptions import RequestException, Timeout as RequestsTimeout, ConnectionError as RequestsConnectionError

from .exceptions import GatewayUnavailable
from .logger import payments_logger as logger
from .models import Bank


class SubmitStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class PayoutStatus(str, Enum):
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


class PayoutRequest(BaseModel):
    reference: str
    amount: Decimal
    bank_code: str
    account_number: str
    account_name: str
    currency: str = "NGN"
    remark: str = "School wallet withdrawal"


class SubmitResult(BaseModel):
    status: SubmitStatus
    gateway_reference: Optional[str] = None
    message: str = ""


@runtime_checkable
class PayoutGateway(Protocol):
    """Bank payout provider. Implementations never retry; callers own retry policy."""

    def submit_payout(self, request: PayoutRequest) -> SubmitResult: ...

    def query_status(self, gateway_reference: str) -> PayoutStatus: ...

    def list_banks(self) -> list[Bank]: ...


STATIC_BANKS = [
    Bank(code="044", name="Access Bank"),
    Bank(code="058", name="Guaranty Trust Bank"),
    Bank(code="057", name="Zenith Bank"),
    Bank(code="011", name="First Bank of Nigeria"),
    Bank(code="033", name="United Bank for Africa"),
    Bank(code="232", name="Sterling Bank"),
    Bank(code="035", name="Wema Bank"),
    Bank(code="070", name="Fidelity Bank"),
    Bank(code="010", name="9PSB"),
    Bank(code="999991", name="Palmpay"),
    Bank(code="999992", name="OPay"),
    Bank(code="050", name="Ecobank Nigeria"),
    Bank(code="030", name="Heritage Bank"),
    Bank(code="082", name="Keystone Bank"),
    Bank(code="221", name="Stanbic IBTC Bank"),
    Bank(code="032", name="Union Bank of Nigeria"),
    Bank(code="215", name="Unity Bank"),
]

_SETTLED_WORDS = {"success", "successful", "completed", "settled"}
_FAILED_WORDS = {"failed", "reversed", "declined", "cancelled"}


def to_kobo(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class SquadPayoutGateway:
    """Payouts through the Squad transfer API."""

    def __init__(self, base_url: str, secret_key: Optional[str], timeout: int = 10,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {secret_key or ''}",
            "Content-Type": "application/json",
        })

    def _call(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (RequestsTimeout, RequestsConnectionError, RequestException) as e:
            logger.error(f"Squad {method} {path} transport error: {type(e).__name__}: {e}")
            raise GatewayUnavailable(f"Network error contacting payout gateway: {type(e).__name__}")
        if r.status_code >= 500:
            logger.error(f"Squad {method} {path} returned {r.status_code}: {r.text[:200]}")
            raise GatewayUnavailable(f"Payout gateway error {r.status_code}")
        return r

    @staticmethod
    def _json(r: requests.Response) -> dict:
        try:
            return r.json() or {}
        except ValueError:
            raise GatewayUnavailable(f"Non-JSON response from payout gateway ({r.status_code})")

    def submit_payout(self, request: PayoutRequest) -> SubmitResult:
        payload = {
            "transaction_reference": request.reference,
            "amount": str(to_kobo(request.amount)),
            "bank_code": request.bank_code,
            "account_number": request.account_number,
            "account_name": request.account_name,
            "currency_id": request.currency,
            "remark": request.remark,
        }
        r = self._call("POST", "/payout/transfer", json=payload)
        body = self._json(r)
        message = str(body.get("message") or "")

        if r.status_code >= 400 or body.get("success") is False:
            logger.warning(f"Squad rejected payout {request.reference}: {r.status_code} {message}")
            return SubmitResult(status=SubmitStatus.REJECTED, message=message or f"HTTP {r.status_code}")

        data = body.get("data") or {}
        reference = data.get("transaction_reference") or request.reference
        logger.info(f"Squad accepted payout {request.reference} as {reference}")
        return SubmitResult(status=SubmitStatus.ACCEPTED, gateway_reference=reference, message=message)

    def query_status(self, gateway_reference: str) -> PayoutStatus:
        r = self._call("POST", "/payout/requery", json={"transaction_reference": gateway_reference})
        if r.status_code >= 400:
            logger.warning(f"Squad requery for {gateway_reference} returned {r.status_code}")
            return PayoutStatus.UNKNOWN
        data = self._json(r).get("data") or {}
        word = str(data.get("transaction_status") or "").strip().lower()
        if word in _SETTLED_WORDS:
            return PayoutStatus.SETTLED
        if word in _FAILED_WORDS:
            return PayoutStatus.FAILED
        return PayoutStatus.UNKNOWN

    def list_banks(self) -> list[Bank]:
        r = self._call("GET", "/banks")
        if r.status_code >= 400:
            raise GatewayUnavailable(f"Bank list unavailable ({r.status_code})")
        rows = self._json(r).get("data") or []
        return [Bank(code=str(row.get("code")), name=str(row.get("name"))) for row in rows if row.get("code")]
