"""
Unit Tests for Profile Statistics

Tests cover:
1. Native-unit totals per transaction type
2. USD valuation with fail-open pricing
3. Projected interest
4. Referral income and counts
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ledger.models import WalletDetail
from ledger.profile import projected_interest_usd, usd_value


@pytest.fixture
def funded_user(ledger, make_user):
    """A user with one dogecoin wallet carrying every transaction type."""
    user = make_user(first_name="Grace", last_name="Hopper")
    wallet = ledger.create_wallet(user.id, "Doge", "dogecoin")
    for tx_type, amount in [
        ("DEPOSIT", "100"), ("WITHDRAWAL", "30"), ("INTEREST", "5"),
        ("REFERRAL_BONUS", "2"), ("ADMIN_ADJUSTMENT", "3"),
    ]:
        ledger.record_transaction(wallet.id, tx_type, amount)
    return user


class TestNativeTotals:
    """Tests for totals in wallet units."""

    def test_totals_by_type(self, users, funded_user):
        """Test that each total sums only its own transaction type."""
        stats = users.get_profile(funded_user.id).stats

        assert stats.total_balance == Decimal("80")
        assert stats.total_deposits == Decimal("100")
        assert stats.total_withdrawals == Decimal("30")
        assert stats.total_interest == Decimal("5")
        assert stats.total_referral_bonus == Decimal("2")
        assert stats.total_admin_adjustments == Decimal("3")
        assert stats.total_transaction_count == 5

    def test_income_includes_admin_adjustments(self, users, funded_user):
        """Test that income is bonus plus interest plus admin adjustments."""
        stats = users.get_profile(funded_user.id).stats

        assert stats.total_income == Decimal("10")

    def test_transactions_flattened_newest_first(self, ledger, users, funded_user):
        """Test that the profile lists every transaction across wallets."""
        second = ledger.create_wallet(funded_user.id, "Btc", "bitcoin")
        ledger.record_transaction(second.id, "DEPOSIT", "0.5")

        profile = users.get_profile(funded_user.id)

        assert len(profile.transactions) == 6
        assert len(profile.wallets) == 2
        timestamps = [tx.created_at for tx in profile.transactions]
        assert timestamps == sorted(timestamps, reverse=True)
        assert profile.wallets[0].transactions[0].type.value == "DEPOSIT"

    def test_empty_profile(self, users, make_user):
        """Test that a user with no wallets has zeroed statistics."""
        user = make_user()

        profile = users.get_profile(user.id)

        assert profile.wallets == []
        assert profile.transactions == []
        assert profile.stats.total_balance == Decimal("0")
        assert profile.stats.total_income_usd == Decimal("0")
        assert profile.stats.projected_interest_usd == Decimal("0")


class TestUsdValuation:
    """Tests for USD-denominated statistics."""

    def test_usd_totals(self, users, funded_user):
        """Test USD conversion at the dogecoin price of $2."""
        stats = users.get_profile(funded_user.id).stats

        assert stats.total_balance_usd == Decimal("160")
        assert stats.total_deposits_usd == Decimal("200")
        assert stats.total_withdrawals_usd == Decimal("60")
        assert stats.total_income_usd == Decimal("20")

    def test_unpriced_wallet_counts_as_zero(self, ledger, users, funded_user):
        """Test that a wallet without a price adds nothing in USD."""
        unpriced = ledger.create_wallet(funded_user.id, "Odd", "obscure-token")
        ledger.record_transaction(unpriced.id, "DEPOSIT", "1000")

        stats = users.get_profile(funded_user.id).stats

        assert stats.total_balance == Decimal("1080")
        assert stats.total_balance_usd == Decimal("160")
        assert stats.total_deposits_usd == Decimal("200")

    def test_price_outage_keeps_native_totals(self, ledger, storage, referrals, make_user):
        """Test that an empty price map zeroes USD but keeps native figures."""
        from ledger.pricing import StaticPriceOracle
        from ledger.users import UserService

        user = make_user()
        wallet = ledger.create_wallet(user.id, "Doge", "dogecoin")
        ledger.record_transaction(wallet.id, "DEPOSIT", "10")
        offline = UserService(storage, StaticPriceOracle(), referrals)

        stats = offline.get_profile(user.id).stats

        assert stats.total_balance == Decimal("10")
        assert stats.total_balance_usd == Decimal("0")

    @pytest.mark.parametrize("currency", [None, "", "missing"])
    def test_usd_value_unknown_currency(self, currency):
        """Test the helper treats unknown currencies as worthless."""
        assert usd_value(Decimal("5"), currency, {"bitcoin": Decimal("1")}) == Decimal("0")


class TestProjectedInterest:
    """Tests for the projected interest estimate."""

    def _wallet(self, balance, currency="bitcoin", created_at=None):
        return WalletDetail(
            id="00000000-0000-0000-0000-000000000001",
            user_id="00000000-0000-0000-0000-000000000002",
            name="Main",
            currency=currency,
            balance=Decimal(balance),
            created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

    def test_full_window(self):
        """Test a wallet older than the window earns every day."""
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        prices = {"bitcoin": Decimal("30000")}

        total = projected_interest_usd([self._wallet("1")], prices, days=30, now=now)

        # 1 BTC * 0.001 * $30000 * 30 days
        assert total == Decimal("900")

    def test_young_wallet_counts_only_its_days(self):
        """Test that days before the wallet existed earn nothing."""
        created = datetime(2024, 6, 1, tzinfo=timezone.utc)
        now = created + timedelta(days=9, hours=12)

        total = projected_interest_usd(
            [self._wallet("1", created_at=created)], {"bitcoin": Decimal("30000")}, now=now
        )

        assert total == Decimal("300")

    def test_naive_timestamps_treated_as_utc(self):
        """Test that stored naive timestamps compare against aware ones."""
        created = datetime(2024, 6, 1)
        now = datetime(2024, 6, 2, tzinfo=timezone.utc)

        total = projected_interest_usd(
            [self._wallet("1", created_at=created)], {"bitcoin": Decimal("10")}, now=now
        )

        assert total == Decimal("0.02")

    @pytest.mark.parametrize("balance", ["0", "0.00001", "-5"])
    def test_dust_and_negative_balances_excluded(self, balance):
        """Test that balances under the minimum earn nothing."""
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)

        total = projected_interest_usd([self._wallet(balance)], {"bitcoin": Decimal("30000")}, now=now)

        assert total == Decimal("0")

    def test_unpriced_wallet_projects_zero(self):
        """Test that a missing price yields no projected interest."""
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)

        assert projected_interest_usd([self._wallet("1", currency="missing")], {}, now=now) == Decimal("0")

    def test_profile_uses_fixed_clock(self, ledger, users, make_user):
        """Test that the profile accepts an explicit clock."""
        user = make_user()
        wallet = ledger.create_wallet(user.id, "Btc", "bitcoin")
        ledger.record_transaction(wallet.id, "DEPOSIT", "1")
        now = ledger.get_wallet(wallet.id).created_at + timedelta(days=4, hours=1)

        stats = users.get_profile(user.id, now=now).stats

        assert stats.projected_interest_usd == Decimal("150")


class TestReferralStats:
    """Tests for referral income and counts on the profile."""

    def test_referral_income_and_counts(self, ledger, users, make_user):
        """Test that the referrer sees the bonus and both sides see the link."""
        referrer = make_user(first_name="Rita")
        referee = make_user(referral_code=referrer.referral_code, first_name="Ray")
        make_user(referral_code=referrer.referral_code)
        wallet = ledger.create_wallet(referee.id, "Doge", "dogecoin")
        ledger.record_transaction(wallet.id, "DEPOSIT", "50")

        referrer_profile = users.get_profile(referrer.id)
        referee_profile = users.get_profile(referee.id)

        assert referrer_profile.stats.referral_income_usd == Decimal("10")
        assert referrer_profile.stats.referrals_given_count == 2
        assert referrer_profile.stats.referrals_received_count == 0
        assert referrer_profile.stats.total_balance == Decimal("0")
        names = {r.counterpart.first_name for r in referrer_profile.referrals_given}
        assert "Ray" in names

        assert referee_profile.stats.referrals_received_count == 1
        assert referee_profile.stats.referral_income_usd == Decimal("0")
        assert referee_profile.referrals_received[0].counterpart.first_name == "Rita"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
