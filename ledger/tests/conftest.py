import pytest
from decimal import Decimal

from ledger.models import CheckUserRequest
from ledger.pricing import StaticPriceOracle
from ledger.referrals import ReferralEngine
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage
from ledger.users import UserService


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def oracle():
    return StaticPriceOracle({"bitcoin": Decimal("30000"), "dogecoin": Decimal("2")})


@pytest.fixture
def referrals(storage, oracle):
    return ReferralEngine(storage, oracle)


@pytest.fixture
def ledger(storage, oracle, referrals):
    return LedgerService(storage, oracle, referrals)


@pytest.fixture
def users(storage, oracle, referrals):
    return UserService(storage, oracle, referrals)


@pytest.fixture
def make_user(users):
    """Create users through the check-or-create flow."""
    counter = {"n": 0}

    def _make_user(referral_code=None, first_name=None, last_name=None):
        counter["n"] += 1
        n = counter["n"]
        return users.check_user(
            f"idp|user-{n}",
            CheckUserRequest(
                email=f"user{n}@example.com",
                first_name=first_name,
                last_name=last_name,
                referral_code=referral_code,
            ),
        )

    return _make_user
