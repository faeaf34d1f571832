import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import UUID

from .errors import (
    InvalidAmount,
    InvalidType,
    MissingFields,
    TransactionNotFound,
    UserNotFound,
    WalletNotFound,
)
from .models import (
    AMOUNT_QUANTUM,
    AMOUNT_SCALE,
    MAX_AMOUNT,
    DeleteTransactionResponse,
    Transaction,
    TransactionResponse,
    TransactionType,
    Wallet,
)
from .pricing import PriceOracle, StaticPriceOracle
from .referrals import DEFAULT_BONUS_RATE, ReferralEngine
from .storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)


def parse_transaction_type(value) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidType("Invalid transaction type") from None


def parse_amount(value: Union[Decimal, int, float, str, None]) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Invalid amount")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidAmount("Invalid amount") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Invalid amount")
    if amount >= MAX_AMOUNT:
        raise InvalidAmount("Amount is too large")
    if amount.quantize(AMOUNT_QUANTUM) != amount:
        raise InvalidAmount(f"Amount supports at most {AMOUNT_SCALE} decimal places")
    return amount


class LedgerService:
    def __init__(
        self,
        storage: Optional[Storage] = None,
        price_oracle: Optional[PriceOracle] = None,
        referral_engine: Optional[ReferralEngine] = None,
        bonus_rate: Decimal = DEFAULT_BONUS_RATE,
    ):
        self.storage = storage or InMemoryStorage()
        self.price_oracle = price_oracle or StaticPriceOracle()
        self.referrals = referral_engine or ReferralEngine(self.storage, self.price_oracle, bonus_rate)

    def create_wallet(self, user_id: UUID, name: Optional[str], currency: Optional[str]) -> Wallet:
        name = (name or "").strip()
        currency = (currency or "").strip()
        if not name or not currency:
            raise MissingFields("Missing fields")
        if self.storage.get_user(user_id) is None:
            raise UserNotFound(f"User {user_id} not found")

        wallet = self.storage.add_wallet({"user_id": user_id, "name": name, "currency": currency})
        logger.info(f"Wallet {wallet.id} ({currency}) created for user {user_id}")
        return wallet

    def get_wallet(self, wallet_id: UUID) -> Wallet:
        wallet = self.storage.get_wallet(wallet_id)
        if wallet is None:
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        return wallet

    def record_transaction(self, wallet_id: UUID, type, amount) -> TransactionResponse:
        tx_type = parse_transaction_type(type)
        parsed_amount = parse_amount(amount)

        # Price lookups happen before the wallet row is locked.
        price = self.referrals.quote_first_transaction(self.get_wallet(wallet_id))

        with self.storage.atomic():
            wallet = self.storage.get_wallet(wallet_id, for_update=True)
            if wallet is None:
                raise WalletNotFound(f"Wallet {wallet_id} not found")

            pending_referral = self.referrals.pending_first_transaction_referral(wallet)

            transaction = self.storage.add_transaction({
                "wallet_id": wallet.id,
                "type": tx_type,
                "amount": parsed_amount,
            })
            wallet = self.storage.apply_balance_delta(wallet.id, tx_type.signed(parsed_amount))
            logger.info(f"{tx_type.value} of {parsed_amount} recorded on wallet {wallet.id}; balance {wallet.balance}")

            referral_bonus = None
            if pending_referral is not None:
                logger.info(f"Processing referral bonus for first transaction of user {wallet.user_id}")
                referral_bonus = self.referrals.award_first_transaction_bonus(
                    pending_referral, wallet, transaction, price
                )

        return TransactionResponse(transaction=transaction, referral_bonus=referral_bonus)

    def delete_transaction(self, wallet_id: UUID, transaction_id: UUID) -> DeleteTransactionResponse:
        with self.storage.atomic():
            transaction = self.storage.get_transaction(transaction_id)
            if transaction is None:
                raise TransactionNotFound(f"Transaction {transaction_id} not found")

            wallet = self.storage.get_wallet(wallet_id, for_update=True)
            if wallet is None:
                raise WalletNotFound(f"Wallet {wallet_id} not found")

            if transaction.wallet_id != wallet.id:
                raise TransactionNotFound(f"Transaction {transaction_id} not found in wallet {wallet_id}")

            wallet = self.storage.apply_balance_delta(wallet.id, -transaction.type.signed(transaction.amount))
            self.storage.delete_transaction(transaction.id)
            logger.info(f"Transaction {transaction.id} deleted; wallet {wallet.id} balance {wallet.balance}")

        return DeleteTransactionResponse(
            message="Transaction deleted",
            transaction_id=transaction.id,
            wallet=wallet,
        )

    def list_transactions(self, wallet_id: UUID) -> list[Transaction]:
        self.get_wallet(wallet_id)
        return self.storage.list_transactions(wallet_id)

    def replay_balance(self, wallet_id: UUID) -> Decimal:
        """Recompute a wallet balance from its live transactions."""
        return sum(
            (tx.type.signed(tx.amount) for tx in self.list_transactions(wallet_id)),
            Decimal("0"),
        )
