"""
Custodial Wallet Ledger

This module provides:
- Wallet balances mutated only through recorded transactions
- Exact reversal of a transaction on deletion
- Referral relationships established at signup
- A one-time USD referral bonus on the referee's first transaction
- Read-side profile statistics with fail-open USD pricing
"""

from .models import (
    TransactionType,
    User,
    Wallet,
    Transaction,
    Referral,
    UserProfile,
)
from .pricing import PriceOracle, StaticPriceOracle, CoinGeckoPriceOracle
from .referrals import ReferralEngine
from .service import LedgerService
from .storage import InMemoryStorage
from .users import UserService

__all__ = [
    "TransactionType",
    "User",
    "Wallet",
    "Transaction",
    "Referral",
    "UserProfile",
    "PriceOracle",
    "StaticPriceOracle",
    "CoinGeckoPriceOracle",
    "ReferralEngine",
    "LedgerService",
    "InMemoryStorage",
    "UserService",
]
