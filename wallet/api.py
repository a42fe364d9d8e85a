import json
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, model_validator

from .auth import HeaderSessionProvider, Principal, Role, SessionProvider, authorize
from .config import Settings
from .exceptions import ValidationError, WalletError
from .gateway import PayoutStatus
from .logger import app_logger as logger
from .models import (
    Bank,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    TenantBalance,
    TransitionResult,
    UsageDebitRequest,
    WalletSummary,
    WalletTransaction,
    WithdrawalAttempt,
    WithdrawalRequest,
    WithdrawalResponse,
)
from .service import WalletService
from .sweep import SweepReport
from .webhooks import verify_signature

STATUS_BY_CODE = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "UNAUTHORIZED": status.HTTP_401_UNAUTHORIZED,
    "INVALID_SIGNATURE": status.HTTP_401_UNAUTHORIZED,
    "FORBIDDEN": status.HTTP_403_FORBIDDEN,
    "ATTEMPT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "HOLD_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "WITHDRAWAL_IN_PROGRESS": status.HTTP_409_CONFLICT,
    "DUPLICATE_REFERENCE": status.HTTP_409_CONFLICT,
    "CONFLICTING_OUTCOME": status.HTTP_409_CONFLICT,
    "RECONCILIATION_TIMEOUT": status.HTTP_409_CONFLICT,
    "INSUFFICIENT_FUNDS": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "GATEWAY_REJECTED": status.HTTP_502_BAD_GATEWAY,
    "GATEWAY_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "STORE_CLOSED": status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ResolveRequest(BaseModel):
    status: Optional[PayoutStatus] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def override_needs_reason(self):
        if self.status is not None and not (self.reason or "").strip():
            raise ValueError("A reason is required when overriding the gateway status")
        return self


def _tenant_of(principal: Principal, school_id: Optional[str]) -> str:
    tenant_id = school_id if principal.role == Role.SUPER_ADMIN and school_id else principal.tenant_id
    if not tenant_id and principal.role == Role.SUPER_ADMIN:
        raise ValidationError("A school must be selected")
    authorize(principal, tenant_id)
    return tenant_id


def _raise_for(result: TransitionResult) -> None:
    if result.error and not result.retryable:
        raise HTTPException(
            status_code=STATUS_BY_CODE.get(result.error, status.HTTP_400_BAD_REQUEST),
            detail={
                "error": result.error,
                "message": result.message,
                "attempt_id": str(result.attempt.id) if result.attempt else None,
            },
        )


def create_app(service: Optional[WalletService] = None,
               session_provider: Optional[SessionProvider] = None,
               run_sweep: bool = False) -> FastAPI:
    settings = service.settings if service else Settings.from_env()
    wallet_service = service or WalletService(settings=settings)
    sessions = session_provider or HeaderSessionProvider()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sweep:
            wallet_service.start()
        yield
        wallet_service.close()

    app = FastAPI(
        title="School Wallet API",
        description="Fee collection, usage billing and withdrawals for school wallets",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.wallet = wallet_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WalletError)
    async def wallet_error_handler(request: Request, exc: WalletError):
        code = STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc}")
        return JSONResponse(status_code=code, content={"detail": {"error": exc.code, "message": str(exc)}})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"error": ValidationError.code, "message": "Invalid request", "errors": problems}},
        )

    def current_principal(request: Request) -> Principal:
        principal = sessions.get_principal(request.headers)
        if principal is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return principal

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "school-wallet", "sweep_running": wallet_service.sweep.running}

    @app.post("/wallets/withdraw", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def withdraw(request: WithdrawalRequest, response: Response,
                 principal: Principal = Depends(current_principal),
                 school_id: Optional[str] = None) -> WithdrawalResponse:
        tenant_id = _tenant_of(principal, school_id) if principal.role == Role.SUPER_ADMIN else None
        result = wallet_service.request_withdrawal(principal, request, tenant_id)
        _raise_for(result)
        if result.retryable:
            response.status_code = status.HTTP_202_ACCEPTED
        attempt = result.attempt
        return WithdrawalResponse(
            attempt_id=attempt.id,
            state=attempt.state,
            reference=attempt.hold_reference,
            amount=attempt.amount,
            message=result.message,
        )

    @app.get("/wallets/withdraw", response_model=list[Bank], tags=["Withdrawals"])
    def list_banks(principal: Principal = Depends(current_principal)) -> list[Bank]:
        return wallet_service.list_banks()

    @app.get("/wallets/withdrawals", response_model=list[WithdrawalAttempt], tags=["Withdrawals"])
    def list_withdrawals(principal: Principal = Depends(current_principal),
                         school_id: Optional[str] = None) -> list[WithdrawalAttempt]:
        return wallet_service.list_withdrawals(_tenant_of(principal, school_id))

    @app.get("/wallets/withdrawals/{attempt_id}", response_model=WithdrawalAttempt, tags=["Withdrawals"])
    def get_withdrawal(attempt_id: UUID, principal: Principal = Depends(current_principal)) -> WithdrawalAttempt:
        return wallet_service.get_withdrawal(principal, attempt_id)

    @app.get("/wallets/balance", response_model=TenantBalance, tags=["Wallet"])
    def get_balance(principal: Principal = Depends(current_principal),
                    school_id: Optional[str] = None) -> TenantBalance:
        return wallet_service.get_balance(_tenant_of(principal, school_id))

    @app.get("/wallets/summary", response_model=WalletSummary, tags=["Wallet"])
    def get_summary(principal: Principal = Depends(current_principal),
                    school_id: Optional[str] = None) -> WalletSummary:
        return wallet_service.get_summary(_tenant_of(principal, school_id))

    @app.get("/wallets/transactions", response_model=list[WalletTransaction], tags=["Wallet"])
    def get_transactions(principal: Principal = Depends(current_principal),
                         school_id: Optional[str] = None, limit: int = 10) -> list[WalletTransaction]:
        return wallet_service.get_transactions(_tenant_of(principal, school_id), limit)

    @app.get("/wallets/ledger", response_model=LedgerHistoryResponse, tags=["Wallet"])
    def get_ledger(principal: Principal = Depends(current_principal), school_id: Optional[str] = None,
                   limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return wallet_service.get_ledger_history(_tenant_of(principal, school_id), limit, offset)

    @app.post("/wallets/usage", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED,
              tags=["Wallet"])
    def bill_usage(request: UsageDebitRequest, principal: Principal = Depends(current_principal),
                   school_id: Optional[str] = None) -> LedgerEntryResponse:
        return wallet_service.debit_usage(principal, request, _tenant_of(principal, school_id))

    @app.post("/webhooks/payments", tags=["Webhooks"])
    async def payment_webhook(request: Request):
        raw = await request.body()
        verify_signature(raw, request.headers.get("x-paystack-signature"), wallet_service.settings.webhook_secret)
        try:
            payload = json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")
        return wallet_service.webhooks.handle(payload)

    @app.get("/admin/withdrawals/review", response_model=list[WithdrawalAttempt], tags=["Admin"])
    def review_queue(principal: Principal = Depends(current_principal)) -> list[WithdrawalAttempt]:
        authorize(principal, None, {Role.SUPER_ADMIN})
        return wallet_service.withdrawals_for_review()

    @app.post("/admin/withdrawals/{attempt_id}/resolve", response_model=TransitionResult, tags=["Admin"])
    def resolve_withdrawal(attempt_id: UUID, request: ResolveRequest,
                           principal: Principal = Depends(current_principal)) -> TransitionResult:
        result = wallet_service.resolve_withdrawal(principal, attempt_id, request.status, request.reason)
        _raise_for(result)
        return result

    @app.post("/admin/reconcile", response_model=SweepReport, tags=["Admin"])
    def reconcile(principal: Principal = Depends(current_principal)) -> SweepReport:
        authorize(principal, None, {Role.SUPER_ADMIN})
        return wallet_service.run_reconciliation()

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(run_sweep=True), host="0.0.0.0", port=8000)
