import logging
import secrets
import string
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .errors import MissingFields
from .models import (
    Referral,
    ReferralBonusSummary,
    ReferralCodeValidation,
    RefereeTransaction,
    ReferrerInfo,
    ReferrerPreview,
    Transaction,
    Wallet,
)
from .pricing import PriceOracle
from .storage import Storage

logger = logging.getLogger(__name__)

REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_ALPHABET = string.ascii_letters + string.digits + "_-"
DEFAULT_BONUS_RATE = Decimal("0.10")


class ReferralEngine:
    """Referral relationships and the one-time first-transaction bonus.

    A referral moves NONE -> ESTABLISHED (balance 0) at signup and
    ESTABLISHED -> BONUS_AWARDED when the referee's first ever transaction
    has a positive USD value. The bonus lives on the referral row only; it
    never creates a transaction or touches a wallet.
    """

    def __init__(self, storage: Storage, price_oracle: PriceOracle, bonus_rate: Decimal = DEFAULT_BONUS_RATE):
        self.storage = storage
        self.price_oracle = price_oracle
        self.bonus_rate = bonus_rate

    def generate_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if self.storage.get_user_by_referral_code(code) is None:
                return code

    def establish_referral(self, new_user_id: UUID, referral_code: Optional[str]) -> Optional[Referral]:
        code = (referral_code or "").strip()
        if not code:
            return None

        referrer = self.storage.get_user_by_referral_code(code)
        if referrer is None:
            logger.info(f"Ignoring unknown referral code {code!r} for user {new_user_id}")
            return None
        if referrer.id == new_user_id:
            logger.info(f"Ignoring self-referral for user {new_user_id}")
            return None
        if self.storage.list_referrals(referee_id=new_user_id):
            return None

        referral = self.storage.add_referral({
            "referrer_id": referrer.id,
            "referee_id": new_user_id,
            "balance": Decimal("0"),
        })

        logger.info(f"Referral created: {referrer.email} referred user {new_user_id}")
        return referral

    def validate_referral_code(self, code: Optional[str]) -> ReferralCodeValidation:
        code = (code or "").strip()
        if not code:
            raise MissingFields("Referral code is required")

        referrer = self.storage.get_user_by_referral_code(code)
        if referrer is None:
            return ReferralCodeValidation(valid=False, message="Invalid referral code")
        return ReferralCodeValidation(
            valid=True,
            referrer=ReferrerPreview(name=referrer.display_name, code=referrer.referral_code),
        )

    def pending_first_transaction_referral(self, wallet: Wallet) -> Optional[Referral]:
        """Referral to settle if the next transaction on ``wallet`` is the owner's first.

        Must be evaluated before the transaction is persisted. A referral that
        already carries a bonus is settled for good, even if the transaction
        that earned it was later deleted.
        """
        referrals = self.storage.list_referrals(referee_id=wallet.user_id)
        if len(referrals) != 1:
            return None
        if referrals[0].balance > 0:
            return None

        wallets = self.storage.list_wallets(wallet.user_id)
        is_first_wallet = len(wallets) == 1 and wallets[0].id == wallet.id
        if not is_first_wallet:
            return None

        if self.storage.count_user_transactions(wallet.user_id) != 0:
            return None
        return referrals[0]

    def quote_first_transaction(self, wallet: Wallet) -> Optional[Decimal]:
        """USD price for a bonus-eligible wallet, or None when no bonus is pending."""
        if self.pending_first_transaction_referral(wallet) is None:
            return None
        return self.price_oracle.get_price(wallet.currency)

    def award_first_transaction_bonus(
        self, referral: Referral, wallet: Wallet, transaction: Transaction, price: Optional[Decimal]
    ) -> Optional[ReferralBonusSummary]:
        usd_value = transaction.amount * price if price is not None else Decimal("0")
        bonus = usd_value * self.bonus_rate
        logger.info(
            f"Referral bonus calculation: {transaction.amount} {wallet.currency} = ${usd_value} USD, "
            f"bonus ${bonus} USD"
        )

        if bonus <= 0:
            logger.info("Referral bonus calculation resulted in $0 - no bonus awarded")
            return None

        self.storage.set_referral_balance(referral.id, bonus)
        referrer = self.storage.get_user(referral.referrer_id)
        logger.info(f"Referral bonus of ${bonus} USD recorded for referrer {referrer.email}")

        return ReferralBonusSummary(
            amount=bonus,
            currency="USD",
            referee_transaction=RefereeTransaction(
                amount=transaction.amount,
                currency=wallet.currency,
                usd_value=usd_value,
            ),
            referrer=ReferrerInfo(name=referrer.display_name, email=referrer.email),
        )
