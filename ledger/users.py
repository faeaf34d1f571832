import logging
import math
from datetime import datetime
from typing import Optional
from uuid import UUID

from .errors import DuplicateReferralCode, MissingFields, PersistenceConflict, UserNotFound, ValidationError
from .models import (
    REFERRAL_CODE_MAX_LENGTH,
    CheckUserRequest,
    Pagination,
    Referral,
    ReferralDetail,
    UpdateProfileRequest,
    User,
    UserListItem,
    UserListResponse,
    UserProfile,
    UserSummary,
    WalletDetail,
    WalletSummary,
)
from .pricing import PriceOracle
from .profile import DEFAULT_INTEREST_DAYS, build_profile
from .referrals import ReferralEngine
from .storage import Storage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class UserService:
    def __init__(self, storage: Storage, price_oracle: PriceOracle, referral_engine: ReferralEngine):
        self.storage = storage
        self.price_oracle = price_oracle
        self.referrals = referral_engine

    def check_user(self, external_id: str, request: CheckUserRequest) -> User:
        """Return the caller's user record, creating it on first access.

        The referral code is only honoured when the user is created, so a
        referee can never end up with a second referrer. The user and its
        referral are written in one atomic unit.
        """
        existing = self.storage.get_user_by_external_id(external_id)
        if existing:
            return existing

        email = request.email.strip()
        if not external_id or not email:
            raise MissingFields("Identity and email are required")

        with self.storage.atomic():
            existing = self.storage.get_user_by_external_id(external_id)
            if existing:
                return existing
            user = self.storage.add_user({
                "external_id": external_id,
                "email": email,
                "first_name": request.first_name,
                "last_name": request.last_name,
                "image_url": request.image_url,
                "referral_code": self.referrals.generate_referral_code(),
            })
            self.referrals.establish_referral(user.id, request.referral_code)
        logger.info(f"User {user.id} created for identity {external_id}")
        return user

    def get_user(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    def get_user_by_external_id(self, external_id: str) -> User:
        user = self.storage.get_user_by_external_id(external_id)
        if user is None:
            raise UserNotFound("User not found")
        return user

    def update_profile(self, external_id: str, request: UpdateProfileRequest) -> User:
        user = self.get_user_by_external_id(external_id)
        changes = request.model_dump(exclude_unset=True)

        if "referral_code" in changes:
            code = (changes["referral_code"] or "").strip()
            if not code:
                raise MissingFields("Referral code cannot be empty")
            if len(code) > REFERRAL_CODE_MAX_LENGTH:
                raise ValidationError(f"Referral code must be at most {REFERRAL_CODE_MAX_LENGTH} characters")
            changes["referral_code"] = code

        if not changes:
            return user

        try:
            with self.storage.atomic():
                return self.storage.update_user(user.id, changes)
        except DuplicateReferralCode:
            raise
        except PersistenceConflict as e:
            raise DuplicateReferralCode("Referral code already exists") from e

    def list_users(self, page: int = 1, limit: int = 10, search: str = "") -> UserListResponse:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        users, total_count = self.storage.list_users(search=search, offset=(page - 1) * limit, limit=limit)
        total_pages = math.ceil(total_count / limit)

        items = [
            UserListItem(
                user=user,
                wallets=[WalletSummary.model_validate(w) for w in self.storage.list_wallets(user.id)],
                referrals_given_count=len(self.storage.list_referrals(referrer_id=user.id)),
                referrals_received_count=len(self.storage.list_referrals(referee_id=user.id)),
            )
            for user in users
        ]

        return UserListResponse(
            users=items,
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                total_count=total_count,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
        )

    def get_profile(
        self, user_id: UUID, now: Optional[datetime] = None, interest_days: int = DEFAULT_INTEREST_DAYS
    ) -> UserProfile:
        user = self.get_user(user_id)

        wallets = [
            WalletDetail(**wallet.model_dump(), transactions=self.storage.list_transactions(wallet.id))
            for wallet in self.storage.list_wallets(user.id)
        ]
        referrals_given = [
            self._referral_detail(r, r.referee_id) for r in self.storage.list_referrals(referrer_id=user.id)
        ]
        referrals_received = [
            self._referral_detail(r, r.referrer_id) for r in self.storage.list_referrals(referee_id=user.id)
        ]
        prices = self.price_oracle.get_prices(w.currency for w in wallets)

        return build_profile(
            user, wallets, referrals_given, referrals_received, prices,
            now=now, interest_days=interest_days,
        )

    def get_profile_by_external_id(self, external_id: str) -> UserProfile:
        return self.get_profile(self.get_user_by_external_id(external_id).id)

    def _referral_detail(self, referral: Referral, counterpart_id: UUID) -> ReferralDetail:
        counterpart = self.storage.get_user(counterpart_id)
        return ReferralDetail(
            **referral.model_dump(),
            counterpart=UserSummary.model_validate(counterpart) if counterpart else None,
        )
