import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import ADMIN_COOKIE_NAME, AdminAuth, AdminTokenPayload
from .config import Settings, configure_logging
from .errors import (
    AuthenticationError,
    DuplicateReferralCode,
    NotFoundError,
    UserNotFound,
    ValidationError,
)
from .models import (
    AdminLoginRequest,
    AdminToken,
    CheckUserRequest,
    CreateWalletRequest,
    DeleteTransactionResponse,
    RecordTransactionRequest,
    ReferralCodeValidation,
    TransactionResponse,
    UpdateProfileRequest,
    User,
    UserListResponse,
    UserProfile,
    Wallet,
)
from .pricing import CoinGeckoPriceOracle, PriceOracle
from .referrals import ReferralEngine
from .service import LedgerService
from .storage import InMemoryStorage, Storage
from .users import UserService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: Storage
    price_oracle: PriceOracle
    referrals: ReferralEngine
    ledger: LedgerService
    users: UserService
    admin_auth: AdminAuth


def build_services(
    settings: Settings,
    storage: Optional[Storage] = None,
    price_oracle: Optional[PriceOracle] = None,
) -> Services:
    if storage is None:
        if settings.database_url:
            from .sql import SqlStorage
            storage = SqlStorage(settings.database_url)
        else:
            storage = InMemoryStorage()
    if price_oracle is None:
        price_oracle = CoinGeckoPriceOracle(settings.price_api_url, timeout=settings.price_api_timeout)

    referrals = ReferralEngine(storage, price_oracle, settings.referral_bonus_rate)
    services = Services(
        settings=settings,
        storage=storage,
        price_oracle=price_oracle,
        referrals=referrals,
        ledger=LedgerService(storage, price_oracle, referrals),
        users=UserService(storage, price_oracle, referrals),
        admin_auth=AdminAuth(storage, settings),
    )
    if settings.admin_email and settings.admin_password:
        services.admin_auth.ensure_admin(settings.admin_email, settings.admin_password)
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_external_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-ID")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id.strip()


def require_admin(request: Request, services: Services = Depends(get_services)) -> AdminTokenPayload:
    token = request.cookies.get(ADMIN_COOKIE_NAME)
    authorization = request.headers.get("Authorization", "")
    if not token and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    try:
        return services.admin_auth.verify_token(token)
    except AuthenticationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "wallet-ledger"}


# --- Users ---

@router.post("/users/check", response_model=User, tags=["Users"])
def check_user(
    request: CheckUserRequest,
    external_id: str = Depends(get_external_id),
    services: Services = Depends(get_services),
) -> User:
    try:
        return services.users.check_user(external_id, request)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/users/me/profile", response_model=UserProfile, tags=["Users"])
def get_my_profile(
    external_id: str = Depends(get_external_id),
    services: Services = Depends(get_services),
) -> UserProfile:
    try:
        return services.users.get_profile_by_external_id(external_id)
    except UserNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@router.put("/users/me/profile", response_model=User, tags=["Users"])
def update_my_profile(
    request: UpdateProfileRequest,
    external_id: str = Depends(get_external_id),
    services: Services = Depends(get_services),
) -> User:
    try:
        return services.users.update_profile(external_id, request)
    except UserNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except DuplicateReferralCode:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Referral code already exists")
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# --- Referrals ---

@router.get("/referrals/validate", response_model=ReferralCodeValidation, tags=["Referrals"])
def validate_referral_code(
    response: Response,
    code: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> ReferralCodeValidation:
    try:
        result = services.referrals.validate_referral_code(code)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not result.valid:
        response.status_code = status.HTTP_404_NOT_FOUND
    return result


# --- Admin ---

@router.post("/admin/login", response_model=AdminToken, tags=["Admin"])
def admin_login(
    request: AdminLoginRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> AdminToken:
    try:
        token = services.admin_auth.login(request.email, request.password)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthenticationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    response.set_cookie(
        ADMIN_COOKIE_NAME,
        token.access_token,
        httponly=True,
        secure=services.settings.is_production,
        samesite="lax",
        max_age=services.settings.jwt_expire_minutes * 60,
        path="/",
    )
    return token


@admin_router.get("/users", response_model=UserListResponse, tags=["Admin"])
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: str = "",
    services: Services = Depends(get_services),
) -> UserListResponse:
    return services.users.list_users(page=page, limit=limit, search=search)


@admin_router.get("/users/{user_id}", response_model=UserProfile, tags=["Admin"])
def get_user(user_id: UUID, services: Services = Depends(get_services)) -> UserProfile:
    try:
        return services.users.get_profile(user_id)
    except UserNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@admin_router.post(
    "/users/{user_id}/wallets", response_model=Wallet, status_code=status.HTTP_201_CREATED, tags=["Admin"]
)
def create_wallet(
    user_id: UUID,
    request: CreateWalletRequest,
    services: Services = Depends(get_services),
) -> Wallet:
    try:
        return services.ledger.create_wallet(user_id, request.name, request.currency)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except UserNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@admin_router.post("/wallets/{wallet_id}/transactions", response_model=TransactionResponse, tags=["Admin"])
def record_transaction(
    wallet_id: UUID,
    request: RecordTransactionRequest,
    services: Services = Depends(get_services),
) -> TransactionResponse:
    try:
        return services.ledger.record_transaction(wallet_id, request.type, request.amount)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@admin_router.delete(
    "/wallets/{wallet_id}/transactions/{transaction_id}", response_model=DeleteTransactionResponse, tags=["Admin"]
)
def delete_transaction(
    wallet_id: UUID,
    transaction_id: UUID,
    services: Services = Depends(get_services),
) -> DeleteTransactionResponse:
    try:
        return services.ledger.delete_transaction(wallet_id, transaction_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    price_oracle: Optional[PriceOracle] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Wallet Ledger API",
        description="Custodial wallet ledger with first-transaction referral bonuses",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.state.services = build_services(settings, storage, price_oracle)
    app.include_router(router)
    app.include_router(admin_router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
