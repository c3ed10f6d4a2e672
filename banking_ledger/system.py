"""
System Wiring Module

Builds the stores, engines and lifecycle services around one storage
backend. Everything is wired explicitly through constructors.
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .storage import StorageInterface, create_storage
from .users import UserDirectory
from .accounts import AccountManager, AccountNumberGenerator, AccountStore
from .ledger import LedgerStore
from .transactions import TransactionProcessor


class BankingSystem:
    """Banking ledger with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url,
            lock_timeout=self.config.lock_timeout_seconds
        )

        self.user_directory = UserDirectory(self.storage)
        self.account_store = AccountStore(
            self.storage,
            number_generator=AccountNumberGenerator(self.config.account_number_prefix),
            number_attempts=self.config.account_number_attempts
        )
        self.ledger_store = LedgerStore(self.storage)
        self.account_manager = AccountManager(self.storage, self.account_store, self.user_directory)
        self.transaction_processor = TransactionProcessor(
            self.storage, self.account_store, self.ledger_store
        )

    def close(self) -> None:
        self.storage.close()
