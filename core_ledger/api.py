"""
FastAPI REST API Module

HTTP surface for registration, login, profile management, deposits,
withdrawals, transfers and transaction history. The caller's account is
always taken from the verified bearer token, never from the request body.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import uvicorn

from .accounts import Account
from .config import get_config
from .errors import (
    AccountAlreadyExists, AccountNotFound, AuthenticationError,
    InsufficientFunds, InvalidAmount, InvalidTransfer, LedgerError,
    RecipientNotFound, StoreUnavailable, ValidationError,
)
from .ledger import AccountHistory
from .money import format_amount, to_minor_units
from .schemas import (
    AccountResponse, AmountRequest, BalanceResponse, HistoryResponse,
    LoginRequest, ProfileModel, RegisterRequest, TokenResponse,
    TransactionModel, TransferRequest,
)
from .system import LedgerSystem
from .logging_config import get_logger, log_action, setup_logging


logger = get_logger("core_ledger.api")

ERROR_STATUS = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InvalidTransfer: status.HTTP_400_BAD_REQUEST,
    ValidationError: 422,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    RecipientNotFound: status.HTTP_404_NOT_FOUND,
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    AccountAlreadyExists: status.HTTP_409_CONFLICT,
    InsufficientFunds: status.HTTP_409_CONFLICT,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}

# JWT Security
security = HTTPBearer(auto_error=False)


def status_for(error: LedgerError) -> int:
    """HTTP status for a ledger error, falling back through its base classes"""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Dependencies
def get_system(request: Request) -> LedgerSystem:
    return request.app.state.system


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LedgerSystem = Depends(get_system)
) -> Account:
    """Dependency that validates the bearer token and returns the caller's account"""
    if not credentials:
        raise AuthenticationError("Not authenticated")
    return system.auth.resolve(credentials.credentials)


def _amount(system: LedgerSystem, value: str) -> int:
    return to_minor_units(value, system.config.minor_unit_digits)


def _account_response(system: LedgerSystem, account: Account) -> AccountResponse:
    return AccountResponse(
        account_id=account.id,
        identity=account.identity,
        balance=format_amount(account.balance, system.config.minor_unit_digits),
        balance_minor=account.balance,
        profile=ProfileModel(**account.profile.to_dict())
    )


def _history_response(system: LedgerSystem, history: AccountHistory) -> HistoryResponse:
    digits = system.config.minor_unit_digits
    return HistoryResponse(
        account_id=history.account_id,
        balance=format_amount(history.balance, digits),
        balance_minor=history.balance,
        transactions=[
            TransactionModel(
                id=record.id,
                kind=record.kind.value,
                amount=format_amount(record.amount, digits),
                amount_minor=record.amount,
                timestamp=record.timestamp.isoformat(),
                reference=record.reference,
                counterparty_account_id=record.counterparty_account_id
            )
            for record in history.transactions
        ]
    )


# Auth endpoints
auth_router = APIRouter()


@auth_router.post("/register", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, system: LedgerSystem = Depends(get_system)):
    """Register a new user and open their account"""
    profile = {}
    if request.name is not None:
        profile['name'] = request.name
    if request.phone is not None:
        profile['phone'] = request.phone

    account = system.auth.register(
        identity=request.identity,
        email=request.email,
        password=request.password,
        confirm_password=request.confirm_password,
        profile=profile
    )
    return _account_response(system, account)


@auth_router.post("/login", response_model=TokenResponse)
def login(request: LoginRequest, system: LedgerSystem = Depends(get_system)):
    """Exchange credentials for a bearer token"""
    token = system.auth.authenticate(request.identity, request.password)
    return TokenResponse(access_token=token)


# Account endpoints
accounts_router = APIRouter()


@accounts_router.get("/me", response_model=AccountResponse)
def get_my_account(
    account: Account = Depends(get_current_account),
    system: LedgerSystem = Depends(get_system)
):
    """Get the caller's account, profile and balance"""
    return _account_response(system, account)


@accounts_router.put("/me/profile", response_model=AccountResponse)
def update_my_profile(
    request: ProfileModel,
    account: Account = Depends(get_current_account),
    system: LedgerSystem = Depends(get_system)
):
    """Update descriptive profile fields"""
    updated = system.accounts.update_profile(account.id, **request.model_dump(exclude_unset=True))
    return _account_response(system, updated)


# Transaction endpoints
transactions_router = APIRouter()


@transactions_router.post("/deposit", response_model=BalanceResponse)
def deposit(
    request: AmountRequest,
    account: Account = Depends(get_current_account),
    system: LedgerSystem = Depends(get_system)
):
    """Make a deposit"""
    balance = system.ledger.deposit(account.id, _amount(system, request.amount))
    return BalanceResponse(
        account_id=account.id,
        balance=format_amount(balance, system.config.minor_unit_digits),
        balance_minor=balance
    )


@transactions_router.post("/withdraw", response_model=BalanceResponse)
def withdraw(
    request: AmountRequest,
    account: Account = Depends(get_current_account),
    system: LedgerSystem = Depends(get_system)
):
    """Make a withdrawal"""
    balance = system.ledger.withdraw(account.id, _amount(system, request.amount))
    return BalanceResponse(
        account_id=account.id,
        balance=format_amount(balance, system.config.minor_unit_digits),
        balance_minor=balance
    )


@transactions_router.post("/transfer", response_model=BalanceResponse)
def transfer(
    request: TransferRequest,
    account: Account = Depends(get_current_account),
    system: LedgerSystem = Depends(get_system)
):
    """Transfer funds to another user by identity"""
    amount = _amount(system, request.amount)
    try:
        recipient = system.accounts.lookup(request.recipient)
    except AccountNotFound:
        raise RecipientNotFound(f"Recipient '{request.recipient}' not found")

    result = system.ledger.transfer(account.id, recipient.id, amount)
    return BalanceResponse(
        account_id=account.id,
        balance=format_amount(result.sender_balance, system.config.minor_unit_digits),
        balance_minor=result.sender_balance,
        reference=result.reference
    )


@transactions_router.get("", response_model=HistoryResponse)
def list_transactions(
    account: Account = Depends(get_current_account),
    system: LedgerSystem = Depends(get_system)
):
    """Transaction history of the caller's account, oldest first"""
    return _history_response(system, system.ledger.history(account.id))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the ledger's storage when the server stops"""
    yield
    app.state.system.close()


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Core Ledger API",
        description="Account ledger with atomic deposits, withdrawals and transfers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system or LedgerSystem()

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = status_for(exc)
        if status_code >= 500:
            log_action(
                logger, "error", f"Request failed: {exc.message}",
                action="request_failed", resource=request.url.path,
                extra={"error": exc.code}
            )
        headers = None
        if status_code == status.HTTP_401_UNAUTHORIZED:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Invalid request body")
        content = error.to_dict()
        content["errors"] = [
            {"loc": list(item.get("loc", ())), "msg": item.get("msg")}
            for item in exc.errors()
        ]
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal_error", "detail": "Internal server error"}
        )

    # Include routers
    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "core-ledger"}

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        "core_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
