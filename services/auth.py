"""Account authentication, session tokens and the role/capability gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Dict, FrozenSet, Optional
from uuid import uuid4

import bcrypt
from jose import JWTError, jwt

from app.schemas import AccountRecord, Role
from datastore.document_store import DocumentCollection, build_default_store
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_HASH_ROUNDS = 12


class Capability(str, Enum):
    read_sensor_data = "read_sensor_data"
    write_sensor_data = "write_sensor_data"
    manage_users = "manage_users"
    manage_own_account = "manage_own_account"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.admin: frozenset(Capability),
    Role.user: frozenset({Capability.read_sensor_data, Capability.manage_own_account}),
}


@dataclass(frozen=True)
class Principal:
    account_id: str
    email: str
    role: Role


def authorize(principal: Principal, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(principal.role, frozenset())


def hash_password(password: str, rounds: int = DEFAULT_HASH_ROUNDS) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


class AuthService:
    """Login, logout and password changes for the admin and user collections."""

    def __init__(
        self,
        users: DocumentCollection[AccountRecord],
        admins: DocumentCollection[AccountRecord],
        settings: Settings,
        hash_rounds: int = DEFAULT_HASH_ROUNDS,
    ) -> None:
        self.collections = {Role.user: users, Role.admin: admins}
        self.settings = settings
        self.hash_rounds = hash_rounds

    def login(self, email: str, password: str, role: Role = Role.user) -> str:
        collection = self.collections[role]
        account = collection.find_one({"email": email.lower(), "is_deleted": False})
        if account is None or not account.is_active or not verify_password(password, account.password_hash):
            logger.warning("Rejected login", extra={"email": email, "reason": "bad credentials"})
            raise PermissionError("Invalid email or password.")

        token = self._issue_token(account)
        collection.find_one_and_update(
            {"id": account.id},
            {"token": token, "last_login": datetime.now(timezone.utc)},
        )
        logger.info("Account logged in", extra={"email": account.email})
        return token

    def logout(self, principal: Principal) -> None:
        self.collections[principal.role].find_one_and_update({"id": principal.account_id}, {"token": None})
        logger.info("Account logged out", extra={"email": principal.email})

    def change_password(self, principal: Principal, current_password: str, new_password: str) -> AccountRecord:
        collection = self.collections[principal.role]
        account = collection.find_by_id(principal.account_id)
        if account is None:
            raise KeyError(f"Account {principal.account_id!r} not found.")
        if not verify_password(current_password, account.password_hash):
            raise ValueError("Current password does not match.")
        updated = collection.find_one_and_update(
            {"id": account.id},
            {"password_hash": hash_password(new_password, self.hash_rounds), "updated_by": account.id},
        )
        logger.info("Password changed", extra={"email": account.email})
        return updated

    def resolve(self, token: str) -> Principal:
        """Map a bearer token to its principal; only the latest issued token is accepted."""
        try:
            claims = jwt.decode(token, self.settings.secret_key, algorithms=[ALGORITHM])
        except JWTError as exc:
            raise PermissionError("Could not validate credentials.") from exc

        try:
            role = Role(claims.get("role"))
        except ValueError as exc:
            raise PermissionError("Could not validate credentials.") from exc
        account = self.collections[role].find_by_id(str(claims.get("sub")))
        if account is None or account.is_deleted or not account.is_active or account.token != token:
            raise PermissionError("Session is no longer valid.")
        return Principal(account_id=account.id, email=account.email, role=account.role)

    def profile(self, principal: Principal) -> AccountRecord:
        account = self.collections[principal.role].find_by_id(principal.account_id)
        if account is None or account.is_deleted:
            raise KeyError(f"Account {principal.account_id!r} not found.")
        return account

    def seed_default_accounts(self) -> None:
        defaults = (
            (Role.admin, self.settings.default_admin_email, self.settings.default_admin_password, "admin"),
            (Role.user, self.settings.default_user_email, self.settings.default_user_password, "user01"),
        )
        for role, configured_email, password, username in defaults:
            email = configured_email.strip().lower()
            collection = self.collections[role]
            if collection.find_one({"email": email}) is not None:
                continue
            collection.create(
                AccountRecord(
                    email=email,
                    username=username,
                    name=username,
                    password_hash=hash_password(password, self.hash_rounds),
                    role=role,
                )
            )
            logger.info("Seeded default account", extra={"email": email})

    def _issue_token(self, account: AccountRecord) -> str:
        expires = datetime.now(timezone.utc) + timedelta(minutes=self.settings.token_ttl_minutes)
        claims = {
            "sub": account.id,
            "email": account.email,
            "role": account.role.value,
            "jti": uuid4().hex,
            "exp": expires,
        }
        return jwt.encode(claims, self.settings.secret_key, algorithm=ALGORITHM)


@lru_cache
def build_default_auth_service() -> AuthService:
    store = build_default_store()
    return AuthService(users=store.users, admins=store.admins, settings=get_settings())
