from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from .models import (
    INCOME_TYPES,
    ProfileStats,
    ReferralDetail,
    Transaction,
    TransactionType,
    User,
    UserProfile,
    WalletDetail,
)

DAILY_INTEREST_RATE = Decimal("0.001")
MIN_BALANCE_FOR_INTEREST = Decimal("0.0001")
DEFAULT_INTEREST_DAYS = 30

ZERO = Decimal("0")


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def usd_value(amount: Decimal, currency: Optional[str], prices: Mapping[str, Decimal]) -> Decimal:
    """Amount in USD; an unknown currency or missing price counts as zero."""
    price = prices.get(currency) if currency else None
    return amount * price if price is not None else ZERO


def sum_amounts(transactions: Iterable[Transaction], tx_type: TransactionType) -> Decimal:
    return sum((tx.amount for tx in transactions if tx.type == tx_type), ZERO)


def sum_usd(
    transactions: Iterable[Transaction],
    types: Iterable[TransactionType],
    currency_by_wallet: Mapping,
    prices: Mapping[str, Decimal],
) -> Decimal:
    types = set(types)
    return sum(
        (usd_value(tx.amount, currency_by_wallet.get(tx.wallet_id), prices) for tx in transactions if tx.type in types),
        ZERO,
    )


def projected_interest_usd(
    wallets: Iterable[WalletDetail],
    prices: Mapping[str, Decimal],
    days: int = DEFAULT_INTEREST_DAYS,
    now: Optional[datetime] = None,
) -> Decimal:
    """Theoretical daily interest over the last ``days`` days, in USD.

    Each wallet holding at least MIN_BALANCE_FOR_INTEREST earns
    DAILY_INTEREST_RATE of its current balance for every day it existed.
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    total = ZERO
    for wallet in wallets:
        if wallet.balance < MIN_BALANCE_FOR_INTEREST:
            continue
        created_at = _as_utc(wallet.created_at)
        daily = usd_value(wallet.balance * DAILY_INTEREST_RATE, wallet.currency, prices)
        for offset in range(days):
            if now - timedelta(days=offset) >= created_at:
                total += daily
    return total


def build_profile(
    user: User,
    wallets: list[WalletDetail],
    referrals_given: list[ReferralDetail],
    referrals_received: list[ReferralDetail],
    prices: Mapping[str, Decimal],
    now: Optional[datetime] = None,
    interest_days: int = DEFAULT_INTEREST_DAYS,
) -> UserProfile:
    transactions = [tx for wallet in wallets for tx in wallet.transactions]
    transactions.sort(key=lambda tx: _as_utc(tx.created_at), reverse=True)
    currency_by_wallet = {wallet.id: wallet.currency for wallet in wallets}

    total_referral_bonus = sum_amounts(transactions, TransactionType.REFERRAL_BONUS)
    total_interest = sum_amounts(transactions, TransactionType.INTEREST)
    total_admin_adjustments = sum_amounts(transactions, TransactionType.ADMIN_ADJUSTMENT)

    stats = ProfileStats(
        total_balance=sum((w.balance for w in wallets), ZERO),
        total_deposits=sum_amounts(transactions, TransactionType.DEPOSIT),
        total_withdrawals=sum_amounts(transactions, TransactionType.WITHDRAWAL),
        total_referral_bonus=total_referral_bonus,
        total_interest=total_interest,
        total_admin_adjustments=total_admin_adjustments,
        total_income=total_referral_bonus + total_interest + total_admin_adjustments,
        total_balance_usd=sum((usd_value(w.balance, w.currency, prices) for w in wallets), ZERO),
        total_deposits_usd=sum_usd(transactions, [TransactionType.DEPOSIT], currency_by_wallet, prices),
        total_withdrawals_usd=sum_usd(transactions, [TransactionType.WITHDRAWAL], currency_by_wallet, prices),
        total_income_usd=sum_usd(transactions, INCOME_TYPES, currency_by_wallet, prices),
        referral_income_usd=sum((r.balance for r in referrals_given), ZERO),
        projected_interest_usd=projected_interest_usd(wallets, prices, days=interest_days, now=now),
        referrals_given_count=len(referrals_given),
        referrals_received_count=len(referrals_received),
        total_transaction_count=len(transactions),
    )

    return UserProfile(
        user=user,
        wallets=wallets,
        transactions=transactions,
        referrals_given=referrals_given,
        referrals_received=referrals_received,
        stats=stats,
    )
