from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .accounts import AccountService
from .auth import AuthProvider
from .config import Settings, get_settings, setup_logging
from .engine import AccrualEngine
from .errors import ErrorKind
from .factory import build_backends
from .models import (
    Account, AccountSnapshot, AccrualResult, AdjustmentRequest, AmountRequest, LoginRequest,
    RedemptionResult, RegisterRequest, ServiceResult, SessionResponse, SystemStatistics, Transaction,
)
from .store import LedgerStore

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def unwrap(result: ServiceResult):
    if not result.success:
        raise HTTPException(status_code=ERROR_STATUS[result.error], detail=result.message)
    return result.data


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    auth: Optional[AuthProvider] = None,
) -> FastAPI:
    settings = settings or get_settings()
    if store is None or auth is None:
        store, auth = build_backends(settings)
    engine = AccrualEngine(store, settings=settings)

    app = FastAPI(
        title="SODmAX Ledger API",
        description="Mining accruals, USDT conversion and account bookkeeping",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_service(authorization: Optional[str] = Header(default=None)) -> AccountService:
        service = AccountService(store, auth, engine=engine, settings=settings)
        if authorization:
            scheme, _, token = authorization.partition(" ")
            if scheme.lower() != "bearer" or not token:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")
            unwrap(service.resume(token))
        return service

    def require_owner(account_id: str, service: AccountService, allow_admin: bool = False) -> None:
        if service.current_account_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sign in required")
        if service.current_account_id == account_id:
            return
        if allow_admin and unwrap(service.get_account_snapshot(service.current_account_id)).account.is_admin:
            return
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your account")

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "sodmax-ledger", "backend": settings.backend}

    @app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def register(request: RegisterRequest, service: AccountService = Depends(get_service)) -> Account:
        return unwrap(service.register(request.email, request.password, request.display_name, request.referral_code))

    @app.post("/sessions", response_model=SessionResponse, tags=["Sessions"])
    def login(request: LoginRequest, service: AccountService = Depends(get_service)) -> SessionResponse:
        snapshot = unwrap(service.authenticate(request.email, request.password))
        return SessionResponse(access_token=service.access_token, snapshot=snapshot)

    @app.delete("/sessions", status_code=status.HTTP_204_NO_CONTENT, tags=["Sessions"])
    def logout(service: AccountService = Depends(get_service)) -> None:
        unwrap(service.deauthenticate())

    @app.get("/accounts/{account_id}", response_model=AccountSnapshot, tags=["Accounts"])
    def get_account(account_id: str, service: AccountService = Depends(get_service)) -> AccountSnapshot:
        require_owner(account_id, service, allow_admin=True)
        return unwrap(service.get_account_snapshot(account_id))

    @app.post("/accounts/{account_id}/accruals", response_model=AccrualResult, tags=["Mining"])
    def accrue(account_id: str, request: AmountRequest, service: AccountService = Depends(get_service)) -> AccrualResult:
        require_owner(account_id, service)
        return unwrap(service.apply_accrual(account_id, request.amount))

    @app.post("/accounts/{account_id}/redemptions", response_model=RedemptionResult, tags=["Mining"])
    def redeem(account_id: str, request: AmountRequest, service: AccountService = Depends(get_service)) -> RedemptionResult:
        require_owner(account_id, service)
        return unwrap(service.redeem_secondary_currency(account_id, request.amount))

    @app.get("/accounts/{account_id}/transactions", response_model=list[Transaction], tags=["Accounts"])
    def list_transactions(account_id: str, limit: int = 20, service: AccountService = Depends(get_service)) -> list[Transaction]:
        require_owner(account_id, service, allow_admin=True)
        return unwrap(service.list_transactions(account_id, limit))

    @app.get("/accounts/{account_id}/today", tags=["Mining"])
    def today(account_id: str, service: AccountService = Depends(get_service)):
        require_owner(account_id, service, allow_admin=True)
        return {"account_id": account_id, "today_earnings": unwrap(service.get_today_earnings(account_id))}

    @app.get("/admin/accounts", response_model=list[Account], tags=["Admin"])
    def list_accounts(service: AccountService = Depends(get_service)) -> list[Account]:
        return unwrap(service.list_accounts())

    @app.get("/admin/stats", response_model=SystemStatistics, tags=["Admin"])
    def system_stats(service: AccountService = Depends(get_service)) -> SystemStatistics:
        return unwrap(service.get_system_statistics())

    @app.post("/admin/accounts/{account_id}/adjustments", response_model=Account, tags=["Admin"])
    def adjust(account_id: str, request: AdjustmentRequest, service: AccountService = Depends(get_service)) -> Account:
        return unwrap(service.adjust_balance(account_id, request.delta, request.note))

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
