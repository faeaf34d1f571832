import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from .errors import DuplicateReferralCode, PersistenceConflict
from .models import Admin, Referral, Transaction, User, Wallet


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Storage:
    """Persistence contract shared by the in-memory and SQL backends.

    Every mutating ledger operation runs inside ``atomic()`` so the wallet
    read-modify-write and the referral update land together or not at all.
    """

    @contextmanager
    def atomic(self) -> Iterator[None]:
        raise NotImplementedError

    # users
    def add_user(self, data: dict) -> User:
        raise NotImplementedError

    def get_user(self, user_id: UUID) -> Optional[User]:
        raise NotImplementedError

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        raise NotImplementedError

    def get_user_by_referral_code(self, code: str) -> Optional[User]:
        raise NotImplementedError

    def update_user(self, user_id: UUID, changes: dict) -> User:
        raise NotImplementedError

    def list_users(self, search: str = "", offset: int = 0, limit: int = 10) -> tuple[list[User], int]:
        raise NotImplementedError

    # wallets
    def add_wallet(self, data: dict) -> Wallet:
        raise NotImplementedError

    def get_wallet(self, wallet_id: UUID, for_update: bool = False) -> Optional[Wallet]:
        raise NotImplementedError

    def list_wallets(self, user_id: UUID) -> list[Wallet]:
        raise NotImplementedError

    def apply_balance_delta(self, wallet_id: UUID, delta: Decimal) -> Wallet:
        raise NotImplementedError

    # transactions
    def add_transaction(self, data: dict) -> Transaction:
        raise NotImplementedError

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        raise NotImplementedError

    def list_transactions(self, wallet_id: UUID) -> list[Transaction]:
        raise NotImplementedError

    def delete_transaction(self, transaction_id: UUID) -> None:
        raise NotImplementedError

    def count_user_transactions(self, user_id: UUID) -> int:
        return sum(len(self.list_transactions(w.id)) for w in self.list_wallets(user_id))

    # referrals
    def add_referral(self, data: dict) -> Referral:
        raise NotImplementedError

    def list_referrals(self, referrer_id: Optional[UUID] = None, referee_id: Optional[UUID] = None) -> list[Referral]:
        raise NotImplementedError

    def set_referral_balance(self, referral_id: UUID, balance: Decimal) -> Referral:
        raise NotImplementedError

    # admins
    def add_admin(self, data: dict) -> Admin:
        raise NotImplementedError

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        raise NotImplementedError


class InMemoryStorage(Storage):
    TABLES = (
        "users", "wallets", "transactions", "referrals", "admins",
        "referral_code_index", "external_id_index", "referee_index",
    )

    def __init__(self):
        self.users: dict[UUID, dict] = {}
        self.wallets: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.referrals: dict[UUID, dict] = {}
        self.admins: dict[UUID, dict] = {}
        self.referral_code_index: dict[str, UUID] = {}
        self.external_id_index: dict[str, UUID] = {}
        self.referee_index: dict[UUID, UUID] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[dict] = None

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Serialize writers and restore every table if the outermost block fails."""
        with self._lock:
            if self._snapshot is not None:
                yield
                return
            self._snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}
            try:
                yield
            except Exception:
                for name, table in self._snapshot.items():
                    setattr(self, name, table)
                raise
            finally:
                self._snapshot = None

    def add_user(self, data: dict) -> User:
        with self._lock:
            if data["external_id"] in self.external_id_index:
                raise PersistenceConflict(f"User {data['external_id']} already exists")
            if data["referral_code"] in self.referral_code_index:
                raise DuplicateReferralCode("Referral code already exists")
            user_data = {
                "id": uuid4(), "first_name": None, "last_name": None,
                "image_url": None, "is_admin": False, "created_at": utcnow(),
                **data,
            }
            self.users[user_data["id"]] = user_data
            self.external_id_index[user_data["external_id"]] = user_data["id"]
            self.referral_code_index[user_data["referral_code"]] = user_data["id"]
            return User(**user_data)

    def get_user(self, user_id: UUID) -> Optional[User]:
        user_data = self.users.get(user_id)
        return User(**user_data) if user_data else None

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        user_id = self.external_id_index.get(external_id)
        return self.get_user(user_id) if user_id else None

    def get_user_by_referral_code(self, code: str) -> Optional[User]:
        user_id = self.referral_code_index.get(code)
        return self.get_user(user_id) if user_id else None

    def update_user(self, user_id: UUID, changes: dict) -> User:
        with self._lock:
            user_data = self.users[user_id]
            new_code = changes.get("referral_code")
            if new_code is not None and new_code != user_data["referral_code"]:
                owner = self.referral_code_index.get(new_code)
                if owner is not None and owner != user_id:
                    raise DuplicateReferralCode("Referral code already exists")
                del self.referral_code_index[user_data["referral_code"]]
                self.referral_code_index[new_code] = user_id
            user_data.update(changes)
            return User(**user_data)

    def list_users(self, search: str = "", offset: int = 0, limit: int = 10) -> tuple[list[User], int]:
        needle = search.strip().lower()
        matches = []
        for user_data in self.users.values():
            fields = (user_data["email"], user_data["first_name"], user_data["last_name"], user_data["external_id"])
            if not needle or any(f and needle in f.lower() for f in fields):
                matches.append(user_data)
        matches.sort(key=lambda u: u["created_at"], reverse=True)
        return [User(**u) for u in matches[offset:offset + limit]], len(matches)

    def add_wallet(self, data: dict) -> Wallet:
        with self._lock:
            wallet_data = {"id": uuid4(), "balance": Decimal("0"), "created_at": utcnow(), **data}
            self.wallets[wallet_data["id"]] = wallet_data
            return Wallet(**wallet_data)

    def get_wallet(self, wallet_id: UUID, for_update: bool = False) -> Optional[Wallet]:
        wallet_data = self.wallets.get(wallet_id)
        return Wallet(**wallet_data) if wallet_data else None

    def list_wallets(self, user_id: UUID) -> list[Wallet]:
        wallets = [Wallet(**w) for w in self.wallets.values() if w["user_id"] == user_id]
        wallets.sort(key=lambda w: w.created_at)
        return wallets

    def apply_balance_delta(self, wallet_id: UUID, delta: Decimal) -> Wallet:
        with self._lock:
            wallet_data = self.wallets[wallet_id]
            wallet_data["balance"] = wallet_data["balance"] + delta
            return Wallet(**wallet_data)

    def add_transaction(self, data: dict) -> Transaction:
        with self._lock:
            entry_data = {"id": uuid4(), "created_at": utcnow(), **data}
            self.transactions[entry_data["id"]] = entry_data
            return Transaction(**entry_data)

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        entry_data = self.transactions.get(transaction_id)
        return Transaction(**entry_data) if entry_data else None

    def list_transactions(self, wallet_id: UUID) -> list[Transaction]:
        entries = [Transaction(**e) for e in self.transactions.values() if e["wallet_id"] == wallet_id]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def delete_transaction(self, transaction_id: UUID) -> None:
        with self._lock:
            self.transactions.pop(transaction_id, None)

    def add_referral(self, data: dict) -> Referral:
        with self._lock:
            if data["referee_id"] in self.referee_index:
                raise PersistenceConflict(f"User {data['referee_id']} already has a referrer")
            referral_data = {"id": uuid4(), "balance": Decimal("0"), "created_at": utcnow(), **data}
            self.referrals[referral_data["id"]] = referral_data
            self.referee_index[referral_data["referee_id"]] = referral_data["id"]
            return Referral(**referral_data)

    def list_referrals(self, referrer_id: Optional[UUID] = None, referee_id: Optional[UUID] = None) -> list[Referral]:
        referrals = [
            Referral(**r) for r in self.referrals.values()
            if (referrer_id is None or r["referrer_id"] == referrer_id)
            and (referee_id is None or r["referee_id"] == referee_id)
        ]
        referrals.sort(key=lambda r: r.created_at)
        return referrals

    def set_referral_balance(self, referral_id: UUID, balance: Decimal) -> Referral:
        with self._lock:
            referral_data = self.referrals[referral_id]
            referral_data["balance"] = balance
            return Referral(**referral_data)

    def add_admin(self, data: dict) -> Admin:
        with self._lock:
            if self.get_admin_by_email(data["email"]):
                raise PersistenceConflict(f"Admin {data['email']} already exists")
            admin_data = {"id": uuid4(), "created_at": utcnow(), **data}
            self.admins[admin_data["id"]] = admin_data
            return Admin(**admin_data)

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        for admin_data in self.admins.values():
            if admin_data["email"] == email:
                return Admin(**admin_data)
        return None
