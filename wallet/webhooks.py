import hashlib
import hmac
from decimal import Decimal, InvalidOperation
from typing import Optional

from .exceptions import InvalidSignature, MalformedRecord, ValidationError
from .gateway import PayoutStatus
from .logger import payments_logger as logger
from .models import FeeCreditRequest

TRANSFER_EVENTS = {
    "transfer.success": PayoutStatus.SETTLED,
    "transfer.failed": PayoutStatus.FAILED,
    "transfer.reversed": PayoutStatus.FAILED,
}


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    if not secret:
        raise InvalidSignature("Webhook secret is not configured")
    if not signature or not hmac.compare_digest(sign(raw_body, secret), signature.strip().lower()):
        raise InvalidSignature("Invalid webhook signature")


def kobo_to_naira(value) -> Decimal:
    try:
        kobo = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedRecord(f"Webhook amount {value!r} is not a number")
    if kobo <= 0 or kobo != kobo.to_integral_value():
        raise MalformedRecord(f"Webhook amount {value!r} is not a positive whole number of kobo")
    return kobo / Decimal(100)


class PaymentWebhookHandler:
    """
    Applies payment gateway events to the wallet.

    ``wallet`` needs ``credit_fee(FeeCreditRequest)`` and an ``orchestrator``.
    Every event is keyed by the gateway reference, so redelivery is harmless.
    """

    def __init__(self, wallet):
        self.wallet = wallet

    def handle(self, payload: dict) -> dict:
        event = payload.get("event")
        data = payload.get("data") or {}
        reference = data.get("reference")
        logger.info(f"[Webhook] Received event: {event} ref={reference}")

        if not event or not reference:
            raise ValidationError("Webhook is missing event or reference")

        if event == "charge.success":
            return self._credit_fee(reference, data)

        if event in TRANSFER_EVENTS:
            result = self.wallet.orchestrator.handle_settlement(reference, TRANSFER_EVENTS[event])
            if result.error == "ATTEMPT_NOT_FOUND":
                return {"status": "ignored", "reason": result.message}
            return {
                "status": "processed" if result.applied else "noop",
                "attempt_id": str(result.attempt.id) if result.attempt else None,
                "state": result.attempt.state.value if result.attempt else None,
                "message": result.message,
            }

        if event == "charge.failed":
            logger.warning(f"[Webhook] Payment failed: {reference}")
        return {"status": "acknowledged"}

    def _credit_fee(self, reference: str, data: dict) -> dict:
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedRecord(f"Webhook metadata for {reference} is not an object")
        school_id = metadata.get("schoolId")
        if not school_id:
            raise ValidationError(f"Missing schoolId in metadata for {reference}")

        customer = data.get("customer") or {}
        credit = FeeCreditRequest(
            tenant_id=school_id,
            amount=kobo_to_naira(data.get("amount")),
            reference=reference,
            student_id=metadata.get("studentId"),
            description=f"Payment from {customer.get('email') or 'customer'}",
            metadata={
                "billAssignmentId": metadata.get("billAssignmentId"),
                "gateway": data.get("gateway") or "paystack",
            },
        )
        response = self.wallet.credit_fee(credit)
        if not response.created:
            logger.info(f"[Webhook] Already processed {reference}")
            return {"status": "duplicate", "entry_id": str(response.entry.id)}
        logger.info(f"[Webhook] Successfully processed payment: {reference}")
        return {"status": "processed", "entry_id": str(response.entry.id)}
