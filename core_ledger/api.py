"""
Ledger HTTP API

FastAPI application exposing deposit, withdraw, step-up challenge, transfer,
history and recipient lookup, plus read-only admin views. Caller identity
comes from a JWT issued by the external auth service.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import jwt
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .audit import AuditSink
from .config import LedgerConfig, get_config
from .currency import format_amount
from .errors import Busy, LedgerError, NotFound, RejectionReason
from .limits import LimitPolicy
from .logging_config import get_logger, setup_logging
from .notifications import OtpNotifier, create_notifier
from .otp import ChallengeStore, InMemoryChallengeStore
from .reporting import LedgerReporter
from .storage import CancellationToken, LedgerStore, create_ledger_store
from .transactions import TransactionEngine


logger = get_logger("ledger.api")

security = HTTPBearer(auto_error=False)


class LedgerSystem:
    """Ledger service with all components wired to one store"""

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[LedgerConfig] = None,
        challenges: Optional[ChallengeStore] = None,
        notifier: Optional[OtpNotifier] = None,
        clock=None,
    ):
        self.config = config or get_config()
        self.store = store
        self.policy = LimitPolicy.from_config(self.config)
        self.challenges = challenges or InMemoryChallengeStore(
            ttl_seconds=self.config.otp_ttl_seconds, digits=self.config.otp_digits
        )
        self.notifier = notifier or create_notifier(self.config)
        self.audit = AuditSink(store)
        self.engine = TransactionEngine(
            store,
            policy=self.policy,
            challenges=self.challenges,
            audit=self.audit,
            notifier=self.notifier,
            clock=clock,
            business_timezone=self.config.business_timezone,
        )
        self.reporter = LedgerReporter(store)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'LedgerSystem':
        config = config or get_config()
        store = create_ledger_store(
            config.database_url,
            lock_timeout=config.lock_timeout_seconds,
            pool_size=config.database_pool_size,
        )
        return cls(store, config)

    def close(self) -> None:
        self.store.close()


# Request models

Amount = Optional[Union[Decimal, str]]


class AmountRequest(BaseModel):
    amount: Amount = Field(None, description="Amount in base currency units")


class TransferRequest(BaseModel):
    receiver_username: Optional[str] = Field(None, description="Receiver account id or display name")
    amount: Amount = Field(None, description="Amount in base currency units")
    otp: Optional[str] = Field(None, description="Step-up code for high-value transfers")


# Identity

@dataclass
class CallerIdentity:
    """Authenticated caller as asserted by the auth service"""
    account_id: str
    role: str = "Customer"
    username: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "Admin"


def get_ledger_system(request: Request) -> LedgerSystem:
    system = getattr(request.app.state, "system", None)
    if system is None:
        raise HTTPException(status_code=503, detail="Ledger system not initialized")
    return system


def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LedgerSystem = Depends(get_ledger_system),
) -> CallerIdentity:
    """Dependency that validates the JWT and returns the calling account"""
    config = system.config
    if not config.auth_enabled:
        # For tests and local runs without the auth service
        account_id = request.headers.get("X-Account-Id")
        if not account_id:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return CallerIdentity(account_id=account_id, role=request.headers.get("X-Role", "Customer"))

    token = credentials.credentials if credentials else request.cookies.get(config.auth_cookie_name)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    account_id = payload.get("uid")
    if not account_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CallerIdentity(account_id=account_id, role=payload.get("role", "Customer"),
                          username=payload.get("sub"))


def require_admin(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Administrative access required")
    return caller


def client_origin(request: Request) -> Optional[str]:
    """Caller address, preferring the first X-Forwarded-For hop"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def request_token(system: LedgerSystem) -> CancellationToken:
    return CancellationToken(timeout=system.config.request_timeout_seconds)


# Error mapping

STATUS_BY_CODE = {
    "validation_error": 400,
    "policy_rejected": 400,
    "step_up_required": 401,
    "invalid_or_expired": 401,
    "not_found": 404,
    "busy": 503,
    "cancelled": 503,
    "challenge_delivery_failed": 502,
    "storage_failure": 500,
}

STATUS_BY_REASON = {
    RejectionReason.ACCOUNT_FROZEN.value: 403,
    RejectionReason.RECIPIENT_NOT_FOUND.value: 404,
}


def error_status(error: LedgerError) -> int:
    if error.reason in STATUS_BY_REASON:
        return STATUS_BY_REASON[error.reason]
    return STATUS_BY_CODE.get(error.code, 500)


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    headers = {}
    if isinstance(exc, Busy) or exc.code == "cancelled":
        headers["Retry-After"] = str(exc.details.get("retry_after_seconds", 1))
    body: Dict[str, Any] = {"success": False}
    body.update(exc.to_dict())
    return JSONResponse(status_code=error_status(exc), content=body, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={
        "success": False,
        "code": "validation_error",
        "reason": "invalid_request",
        "message": "Request is missing required fields or has malformed values",
        "retryable": False,
        "details": {"errors": str(exc.errors())},
    })


def create_app(system: Optional[LedgerSystem] = None,
               config: Optional[LedgerConfig] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        system: Pre-wired ledger system (tests inject one over an in-memory store)
        config: Configuration used when the system has to be built here

    Returns:
        FastAPI application
    """
    config = config or (system.config if system else get_config())
    setup_logging(config.log_level, config.log_format)
    if system is None:
        system = LedgerSystem.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Shutdown: release store connections
        app.state.system.close()

    app = FastAPI(
        title="Core Ledger API",
        description="Ledger-backed account service with concurrency-safe money movement",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Route handlers are plain functions so blocking lock waits run in the threadpool

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/transactions/deposit")
    def deposit(
        body: AmountRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        """Credit the caller's account"""
        outcome = system.engine.deposit(
            caller.account_id, body.amount,
            origin=client_origin(request), cancel_token=request_token(system)
        )
        return {
            "success": True,
            "message": f"Successfully deposited {format_amount(outcome.amount)}",
            "balance": str(outcome.new_balance),
            "reference_id": outcome.reference,
        }

    @app.post("/transactions/withdraw")
    def withdraw(
        body: AmountRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        """Debit the caller's account"""
        outcome = system.engine.withdraw(
            caller.account_id, body.amount,
            origin=client_origin(request), cancel_token=request_token(system)
        )
        return {
            "success": True,
            "message": f"Withdrew {format_amount(outcome.amount)} successfully",
            "balance": str(outcome.new_balance),
            "reference_id": outcome.reference,
        }

    @app.post("/transactions/request-otp")
    def request_otp(
        body: AmountRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        """Send a step-up code out of band; the code is never returned here"""
        receipt = system.engine.request_transfer_challenge(
            caller.account_id, body.amount, origin=client_origin(request)
        )
        return {
            "success": True,
            "accepted": receipt.accepted,
            "message": "Secure OTP sent to your registered device",
            "expires_at": receipt.expires_at.isoformat(),
        }

    @app.post("/transactions/transfer")
    def transfer(
        body: TransferRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        """Move money from the caller to another account"""
        outcome = system.engine.transfer(
            caller.account_id, body.receiver_username, body.amount,
            otp_code=body.otp, origin=client_origin(request),
            cancel_token=request_token(system)
        )
        return {
            "success": True,
            "message": f"Transferred {format_amount(outcome.amount)} successfully",
            "balance": str(outcome.new_balance),
            "reference_id": outcome.reference,
        }

    @app.get("/transactions")
    def history(
        type: Optional[str] = Query(None, description="all, sent, received, deposit, withdraw or transfer"),
        page: int = Query(1),
        limit: Optional[int] = Query(None),
        caller: CallerIdentity = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        """Caller's transaction history, newest first"""
        result = system.engine.history(
            caller.account_id, type, page=page,
            page_size=limit if limit is not None else system.config.history_default_page_size,
            max_page_size=system.config.history_max_page_size,
        )
        return {
            "success": True,
            "transactions": [entry.to_dict() for entry in result.records],
            "pagination": {
                "total": result.total,
                "page": result.page,
                "limit": result.page_size,
                "totalPages": result.total_pages,
            },
        }

    @app.get("/users/check/{identifier}")
    def check_recipient(
        identifier: str,
        caller: CallerIdentity = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        """Confirm a transfer recipient exists before sending"""
        try:
            account = system.engine.lookup_recipient(identifier)
        except NotFound:
            return {"success": True, "exists": False}
        return {"success": True, "exists": True, "uid": account.account_id,
                "username": account.display_name}

    @app.get("/admin/stats")
    def admin_stats(
        admin: CallerIdentity = Depends(require_admin),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        return {"success": True, "stats": system.reporter.stats()}

    @app.get("/admin/transactions")
    def admin_transactions(
        admin: CallerIdentity = Depends(require_admin),
        system: LedgerSystem = Depends(get_ledger_system),
    ):
        entries = system.reporter.recent_activity()
        return {"success": True, "transactions": [entry.to_dict() for entry in entries]}

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "core_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
