"""
Unit Tests for the User Directory

Tests cover:
1. Check-or-create on first authenticated access
2. Profile updates and referral code uniqueness
3. Paginated, searchable user listing
"""

import pytest
from uuid import uuid4

from ledger.errors import DuplicateReferralCode, MissingFields, UserNotFound, ValidationError
from ledger.models import CheckUserRequest, UpdateProfileRequest


class TestCheckUser:
    """Tests for the check-or-create flow."""

    def test_creates_user_with_referral_code(self, users):
        """Test that a first access creates the user."""
        user = users.check_user(
            "idp|alice",
            CheckUserRequest(email=" alice@example.com ", first_name="Alice", image_url="https://img/a.png"),
        )

        assert user.external_id == "idp|alice"
        assert user.email == "alice@example.com"
        assert user.first_name == "Alice"
        assert user.image_url == "https://img/a.png"
        assert user.referral_code
        assert user.is_admin is False

    def test_is_idempotent(self, users):
        """Test that repeat calls return the same user unchanged."""
        first = users.check_user("idp|bob", CheckUserRequest(email="bob@example.com"))
        second = users.check_user("idp|bob", CheckUserRequest(email="other@example.com", first_name="Robert"))

        assert second.id == first.id
        assert second.email == "bob@example.com"
        assert second.first_name is None

    def test_referral_code_only_honoured_at_creation(self, storage, users, make_user):
        """Test that an existing user cannot attach a referrer later."""
        referrer = make_user()
        user = users.check_user("idp|late", CheckUserRequest(email="late@example.com"))

        users.check_user(
            "idp|late", CheckUserRequest(email="late@example.com", referral_code=referrer.referral_code)
        )

        assert storage.list_referrals(referee_id=user.id) == []

    def test_failed_referral_leaves_no_user(self, storage, users, make_user):
        """Test that the user and its referral are created together or not at all."""
        referrer = make_user()
        real_add_referral = storage.add_referral
        calls = {"n": 0}

        def flaky_add_referral(data):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection lost")
            return real_add_referral(data)

        storage.add_referral = flaky_add_referral
        request = CheckUserRequest(email="retry@example.com", referral_code=referrer.referral_code)

        with pytest.raises(RuntimeError):
            users.check_user("idp|retry", request)
        assert storage.get_user_by_external_id("idp|retry") is None

        user = users.check_user("idp|retry", request)

        referrals = storage.list_referrals(referee_id=user.id)
        assert len(referrals) == 1
        assert referrals[0].referrer_id == referrer.id

    def test_requires_email(self, users):
        """Test that a blank email is rejected."""
        with pytest.raises(MissingFields):
            users.check_user("idp|nobody", CheckUserRequest(email="   "))


class TestUpdateProfile:
    """Tests for profile updates."""

    def test_update_names(self, users, make_user):
        """Test that only provided fields change."""
        user = make_user(first_name="Old", last_name="Name")

        updated = users.update_profile(user.external_id, UpdateProfileRequest(first_name="New"))

        assert updated.first_name == "New"
        assert updated.last_name == "Name"
        assert updated.referral_code == user.referral_code

    def test_change_referral_code(self, users, referrals, make_user):
        """Test that a new code replaces the old one for lookups."""
        user = make_user()
        old_code = user.referral_code

        updated = users.update_profile(user.external_id, UpdateProfileRequest(referral_code=" vanity "))

        assert updated.referral_code == "vanity"
        assert referrals.validate_referral_code("vanity").valid is True
        assert referrals.validate_referral_code(old_code).valid is False

    def test_keep_own_code(self, users, make_user):
        """Test that resubmitting the current code is not a conflict."""
        user = make_user()

        updated = users.update_profile(user.external_id, UpdateProfileRequest(referral_code=user.referral_code))

        assert updated.referral_code == user.referral_code

    def test_duplicate_referral_code(self, users, make_user):
        """Test that another user's code cannot be claimed."""
        taken = make_user()
        user = make_user()

        with pytest.raises(DuplicateReferralCode):
            users.update_profile(user.external_id, UpdateProfileRequest(referral_code=taken.referral_code))

        assert users.get_user(user.id).referral_code == user.referral_code

    def test_blank_referral_code(self, users, make_user):
        """Test that a referral code cannot be cleared."""
        user = make_user()

        with pytest.raises(MissingFields):
            users.update_profile(user.external_id, UpdateProfileRequest(referral_code="  "))

    def test_explicit_null_clears_name(self, users, make_user):
        """Test that a name sent as null is cleared."""
        user = make_user(first_name="Old", last_name="Name")

        updated = users.update_profile(user.external_id, UpdateProfileRequest(first_name=None))

        assert updated.first_name is None
        assert updated.last_name == "Name"

    def test_null_referral_code(self, users, make_user):
        """Test that a referral code sent as null is rejected."""
        user = make_user()

        with pytest.raises(MissingFields):
            users.update_profile(user.external_id, UpdateProfileRequest(referral_code=None))

        assert users.get_user(user.id).referral_code == user.referral_code

    def test_referral_code_too_long(self, users, make_user):
        """Test that codes longer than the stored column are rejected."""
        user = make_user()

        with pytest.raises(ValidationError):
            users.update_profile(user.external_id, UpdateProfileRequest(referral_code="x" * 33))

        assert users.get_user(user.id).referral_code == user.referral_code

    def test_referral_code_at_max_length(self, users, make_user):
        """Test that a code of exactly the maximum length is kept."""
        user = make_user()

        updated = users.update_profile(user.external_id, UpdateProfileRequest(referral_code="x" * 32))

        assert updated.referral_code == "x" * 32

    def test_unknown_user(self, users):
        """Test that updating an unknown identity fails."""
        with pytest.raises(UserNotFound):
            users.update_profile("idp|ghost", UpdateProfileRequest(first_name="Ghost"))


class TestListUsers:
    """Tests for the admin user listing."""

    def test_pagination(self, users, make_user):
        """Test page metadata across a multi-page listing."""
        for _ in range(15):
            make_user()

        first = users.list_users(page=1, limit=10)
        second = users.list_users(page=2, limit=10)

        assert len(first.users) == 10
        assert len(second.users) == 5
        assert first.pagination.model_dump() == {
            "current_page": 1, "total_pages": 2, "total_count": 15, "has_next": True, "has_prev": False,
        }
        assert second.pagination.has_next is False
        assert second.pagination.has_prev is True
        seen = {item.user.id for item in first.users} | {item.user.id for item in second.users}
        assert len(seen) == 15

    def test_page_past_end(self, users, make_user):
        """Test that a page beyond the last one is empty."""
        make_user()

        result = users.list_users(page=5, limit=10)

        assert result.users == []
        assert result.pagination.total_count == 1
        assert result.pagination.has_prev is True

    def test_limit_is_capped(self, users, make_user):
        """Test that oversized pages are clamped."""
        make_user()

        result = users.list_users(page=1, limit=10_000)

        assert result.pagination.total_pages == 1

    def test_search(self, users, make_user):
        """Test case-insensitive search over names and email."""
        make_user(first_name="Grace", last_name="Hopper")
        make_user(first_name="Ada", last_name="Lovelace")
        make_user()

        by_name = users.list_users(search="grace")
        by_last = users.list_users(search="LOVE")
        by_email = users.list_users(search="user3@")

        assert [i.user.first_name for i in by_name.users] == ["Grace"]
        assert [i.user.last_name for i in by_last.users] == ["Lovelace"]
        assert by_email.pagination.total_count == 1

    def test_list_item_summaries(self, ledger, users, make_user):
        """Test that each item carries wallet and referral counts."""
        referrer = make_user(first_name="Rita")
        make_user(referral_code=referrer.referral_code)
        ledger.create_wallet(referrer.id, "Main", "bitcoin")

        result = users.list_users(search="rita")

        item = result.users[0]
        assert item.referrals_given_count == 1
        assert item.referrals_received_count == 0
        assert [w.currency for w in item.wallets] == ["bitcoin"]

    def test_empty_directory(self, users):
        """Test listing with no users."""
        result = users.list_users()

        assert result.users == []
        assert result.pagination.total_pages == 0
        assert result.pagination.has_next is False


class TestGetUser:
    """Tests for direct user lookups."""

    def test_get_user(self, users, make_user):
        """Test lookups by id and by external identity."""
        user = make_user()

        assert users.get_user(user.id).id == user.id
        assert users.get_user_by_external_id(user.external_id).id == user.id

    def test_missing_user(self, users):
        """Test that unknown users raise."""
        with pytest.raises(UserNotFound):
            users.get_user(uuid4())
        with pytest.raises(UserNotFound):
            users.get_profile(uuid4())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
