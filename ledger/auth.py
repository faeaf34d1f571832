import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import bcrypt
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import Settings
from .errors import AuthenticationError, MissingFields
from .models import Admin, AdminToken
from .storage import Storage

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ADMIN_COOKIE_NAME = "admin-token"


class AdminTokenPayload(BaseModel):
    admin_id: UUID
    email: str
    exp: Optional[int] = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class AdminAuth:
    def __init__(self, storage: Storage, settings: Settings):
        self.storage = storage
        self.settings = settings

    def register_admin(self, email: str, password: str) -> Admin:
        email = email.strip().lower()
        if not email or not password:
            raise MissingFields("Email and password are required")
        return self.storage.add_admin({"email": email, "password_hash": hash_password(password)})

    def ensure_admin(self, email: str, password: str) -> Admin:
        existing = self.storage.get_admin_by_email(email.strip().lower())
        if existing:
            return existing
        admin = self.register_admin(email, password)
        logger.info(f"Bootstrap admin {admin.email} created")
        return admin

    def login(self, email: str, password: str) -> AdminToken:
        if not email or not password:
            raise MissingFields("Email and password are required")
        admin = self.storage.get_admin_by_email(email.strip().lower())
        if admin is None or not verify_password(password, admin.password_hash):
            raise AuthenticationError("Invalid credentials")
        return AdminToken(access_token=self.create_token(admin), admin_id=admin.id, email=admin.email)

    def create_token(self, admin: Admin) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.settings.jwt_expire_minutes)
        claims = {"sub": str(admin.id), "email": admin.email, "exp": expire}
        return jwt.encode(claims, self.settings.jwt_secret, algorithm=ALGORITHM)

    def verify_token(self, token: Optional[str]) -> AdminTokenPayload:
        if not token:
            raise AuthenticationError("No authentication token provided")
        try:
            claims = jwt.decode(token, self.settings.jwt_secret, algorithms=[ALGORITHM])
            return AdminTokenPayload(admin_id=claims["sub"], email=claims["email"], exp=claims.get("exp"))
        except (JWTError, KeyError, ValueError):
            raise AuthenticationError("Invalid or expired token") from None
