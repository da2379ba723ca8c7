from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Dict, Optional

from app.schemas import AccountRecord, Role, UserCreate
from datastore.document_store import DocumentCollection, build_default_store
from models.records import Page, PageRequest
from services.auth import DEFAULT_HASH_ROUNDS, hash_password
from services.pagination import paginate

logger = logging.getLogger(__name__)

USER_SORT_FIELDS = {
    "createdAt": "created_at",
    "email": "email",
    "username": "username",
    "lastLogin": "last_login",
}


class UserService:
    """Registration and admin lookups over the ``users`` collection."""

    def __init__(self, collection: DocumentCollection[AccountRecord], hash_rounds: int = DEFAULT_HASH_ROUNDS) -> None:
        self.collection = collection
        self.hash_rounds = hash_rounds

    def create_user(self, payload: UserCreate, actor: Optional[str] = None) -> AccountRecord:
        email = payload.email.lower()
        if self.collection.find_one({"email": email, "is_deleted": False}) is not None:
            raise ValueError("User with this email already exists.")
        account = self.collection.create(
            AccountRecord(
                email=email,
                name=payload.name,
                username=payload.username,
                password_hash=hash_password(payload.password, self.hash_rounds),
                role=Role.user,
                created_by=actor,
            )
        )
        logger.info("Created user", extra={"email": email, "record_id": account.id})
        return account

    def list_users(self, request: PageRequest, search: Optional[str] = None) -> Page[AccountRecord]:
        query: Dict[str, Any] = {"is_deleted": False}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}} for field in ("email", "username", "name")
            ]
        return paginate(self.collection.find(query), request, USER_SORT_FIELDS)

    def get_user(self, user_id: str) -> AccountRecord:
        account = self.collection.find_by_id(user_id)
        if account is None or account.is_deleted:
            raise KeyError(f"User {user_id!r} not found.")
        return account


@lru_cache
def build_default_user_service() -> UserService:
    return UserService(build_default_store().users)
