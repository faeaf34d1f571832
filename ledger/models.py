from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    INTEREST = "INTEREST"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"

    def signed(self, amount: Decimal) -> Decimal:
        """Balance delta this transaction type applies for a positive amount."""
        return -amount if self is TransactionType.WITHDRAWAL else amount


INCOME_TYPES = (
    TransactionType.REFERRAL_BONUS,
    TransactionType.INTEREST,
    TransactionType.ADMIN_ADJUSTMENT,
)

# Amounts and balances are NUMERIC(28, 10) in the database.
AMOUNT_PRECISION = 28
AMOUNT_SCALE = 10
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)
MAX_AMOUNT = Decimal(10) ** (AMOUNT_PRECISION - AMOUNT_SCALE)

REFERRAL_CODE_MAX_LENGTH = 32


# --- Stored records ---

class User(BaseModel):
    id: UUID
    external_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    referral_code: str
    is_admin: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email


class Wallet(BaseModel):
    id: UUID
    user_id: UUID
    name: str
    currency: str
    balance: Decimal = Decimal("0")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    wallet_id: UUID
    type: TransactionType
    amount: Decimal
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: UUID
    referrer_id: UUID
    referee_id: UUID
    balance: Decimal = Decimal("0")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Admin(BaseModel):
    id: UUID
    email: str
    password_hash: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# --- Requests ---

class CheckUserRequest(BaseModel):
    email: str = Field(..., description="Primary email reported by the identity provider")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    referral_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "email": "jane@example.com",
            "first_name": "Jane",
            "referral_code": "Xk3_a9Qz"
        }
    })


class UpdateProfileRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    referral_code: Optional[str] = None


class CreateWalletRequest(BaseModel):
    name: Optional[str] = None
    currency: Optional[str] = Field(default=None, description="Price oracle id, e.g. 'bitcoin'")


class RecordTransactionRequest(BaseModel):
    type: Optional[str] = None
    amount: Optional[Union[int, float, str]] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"type": "DEPOSIT", "amount": "0.25"}
    })


class AdminLoginRequest(BaseModel):
    email: str
    password: str


# --- Responses ---

class ReferrerInfo(BaseModel):
    name: str
    email: str


class RefereeTransaction(BaseModel):
    amount: Decimal
    currency: str
    usd_value: Decimal


class ReferralBonusSummary(BaseModel):
    amount: Decimal
    currency: str = "USD"
    referee_transaction: RefereeTransaction
    referrer: ReferrerInfo


class TransactionResponse(BaseModel):
    transaction: Transaction
    referral_bonus: Optional[ReferralBonusSummary] = None


class DeleteTransactionResponse(BaseModel):
    message: str
    transaction_id: UUID
    wallet: Wallet


class ReferrerPreview(BaseModel):
    name: str
    code: str


class ReferralCodeValidation(BaseModel):
    valid: bool
    referrer: Optional[ReferrerPreview] = None
    message: Optional[str] = None


class UserSummary(BaseModel):
    id: UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralDetail(Referral):
    counterpart: Optional[UserSummary] = None


class WalletDetail(Wallet):
    transactions: list[Transaction] = Field(default_factory=list)


class ProfileStats(BaseModel):
    total_balance: Decimal
    total_deposits: Decimal
    total_withdrawals: Decimal
    total_referral_bonus: Decimal
    total_interest: Decimal
    total_admin_adjustments: Decimal
    total_income: Decimal
    total_balance_usd: Decimal
    total_deposits_usd: Decimal
    total_withdrawals_usd: Decimal
    total_income_usd: Decimal
    referral_income_usd: Decimal
    projected_interest_usd: Decimal
    referrals_given_count: int
    referrals_received_count: int
    total_transaction_count: int


class UserProfile(BaseModel):
    user: User
    wallets: list[WalletDetail]
    transactions: list[Transaction]
    referrals_given: list[ReferralDetail]
    referrals_received: list[ReferralDetail]
    stats: ProfileStats


class WalletSummary(BaseModel):
    id: UUID
    name: str
    balance: Decimal
    currency: str

    model_config = ConfigDict(from_attributes=True)


class UserListItem(BaseModel):
    user: User
    wallets: list[WalletSummary]
    referrals_given_count: int
    referrals_received_count: int


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_next: bool
    has_prev: bool


class UserListResponse(BaseModel):
    users: list[UserListItem]
    pagination: Pagination


class AdminToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    admin_id: UUID
    email: str
