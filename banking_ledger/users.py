"""
User Directory Module

Minimal owner records. Accounts reference a user by id; the lifecycle
checks ownership through this directory before opening an account.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid
import re

from .errors import InvalidArgumentError, UserNotFoundError
from .storage import StorageInterface, StorageRecord, StorageTransaction
from .logging_config import get_logger

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


@dataclass
class User(StorageRecord):
    """Registered user who can own accounts"""
    full_name: str
    email: str

    def __post_init__(self):
        if not self.full_name or not self.full_name.strip():
            raise InvalidArgumentError("Full name is required")
        if not EMAIL_PATTERN.match(self.email):
            raise InvalidArgumentError("Invalid email format")


class UserDirectory:
    """Creates and looks up users"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "users"
        self.logger = get_logger("banking_ledger.users")

    def create_user(self, full_name: str, email: str) -> User:
        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name.strip(),
            email=email
        )
        self.storage.save(self.table_name, user.id, user.to_dict())
        self.logger.info("User created", extra={"action": "create_user", "resource": f"user:{user.id}"})
        return user

    def get_user(self, user_id: str) -> User:
        """Get user by ID; raises UserNotFoundError"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            raise UserNotFoundError(user_id)
        return self._user_from_dict(data)

    def exists(self, user_id: str, transaction: Optional[StorageTransaction] = None) -> bool:
        if transaction is not None:
            return transaction.exists(self.table_name, user_id)
        return self.storage.exists(self.table_name, user_id)

    def list_users(self) -> List[User]:
        return [self._user_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def _user_from_dict(self, data: Dict) -> User:
        return User(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            full_name=data['full_name'],
            email=data['email']
        )
