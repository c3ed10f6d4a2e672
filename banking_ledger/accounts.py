"""
Account Management Module

Owns account records: lookups, creation with generated account numbers,
row locking and atomic balance writes (AccountStore), and the account
lifecycle exposed to callers (AccountManager).

Balances are only ever written through ``AccountStore.update_balances``
inside a caller-supplied storage transaction.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from enum import Enum
import itertools
import secrets
import threading
import uuid

from .currency import Money, Currency
from .errors import (
    AccountNotFoundError, CurrencyMismatchError, InsufficientFundsError,
    InvalidArgumentError, OwnerNotFoundError
)
from .storage import StorageInterface, StorageRecord, StorageTransaction
from .users import UserDirectory
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"


@dataclass
class Account(StorageRecord):
    """
    Monetary account owned by a single user.
    The balance is never negative and always in the account currency.
    """
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    alias: Optional[str] = None

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise CurrencyMismatchError(self.currency, self.balance.currency)

        if self.balance.is_negative():
            raise InvalidArgumentError(f"Account {self.id} balance cannot be negative")


class AccountNumberGenerator:
    """
    Human-facing account numbers: ``<prefix>-<epoch ms>-<sequence>-<random>``.

    The per-process sequence keeps numbers from one generator distinct even
    within the same millisecond; the random suffix separates processes.
    """

    def __init__(self, prefix: str = "ACC"):
        self.prefix = prefix
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def generate(self) -> str:
        with self._lock:
            sequence = next(self._sequence)
        millis = int(datetime.now(timezone.utc).timestamp() * 1000)
        return f"{self.prefix}-{millis}-{sequence:06d}-{secrets.randbelow(1000):03d}"


class AccountStore:
    """Persistence contract for accounts"""

    def __init__(
        self,
        storage: StorageInterface,
        number_generator: Optional[AccountNumberGenerator] = None,
        number_attempts: int = 5
    ):
        self.storage = storage
        self.number_generator = number_generator or AccountNumberGenerator()
        self.number_attempts = number_attempts
        self.table_name = "accounts"

    def get_by_id(
        self,
        account_id: str,
        transaction: Optional[StorageTransaction] = None,
        role: Optional[str] = None
    ) -> Account:
        """
        Get account by ID

        Args:
            account_id: Account ID
            transaction: Read through this unit of work instead of committed state
            role: "from"/"to", only used to describe a missing account

        Raises:
            AccountNotFoundError: If no such account exists
        """
        source = transaction if transaction is not None else self.storage
        data = source.load(self.table_name, account_id)
        if not data:
            raise AccountNotFoundError(account_id, role)
        return self._account_from_dict(data)

    def get_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.table_name, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def get_by_owner(self, owner_id: str) -> List[Account]:
        """Get all accounts for an owner, oldest first"""
        accounts = [
            self._account_from_dict(data)
            for data in self.storage.find(self.table_name, {"owner_id": owner_id})
        ]
        accounts.sort(key=lambda account: account.created_at)
        return accounts

    def list_all(self) -> List[Account]:
        return [self._account_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def create(
        self,
        transaction: StorageTransaction,
        owner_id: str,
        account_type: AccountType,
        currency: Currency,
        alias: Optional[str] = None
    ) -> Account:
        """Create a zero-balance account within the given unit of work"""
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=self._next_account_number(transaction),
            owner_id=owner_id,
            account_type=account_type,
            currency=currency,
            balance=Money.zero(currency),
            alias=alias
        )
        self._save_account(transaction, account)
        return account

    def lock(self, transaction: StorageTransaction, account_ids: Iterable[str]) -> None:
        """Exclusively lock accounts for the rest of the unit of work, in sorted id order"""
        transaction.lock(self.table_name, account_ids)

    def update_balances(
        self,
        transaction: StorageTransaction,
        updates: Sequence[Tuple[str, Money]]
    ) -> List[Account]:
        """
        Write new balances for several accounts as one change.

        Every update is validated before any of them is staged, so a bad
        entry leaves the unit of work untouched.

        Raises:
            AccountNotFoundError: An account does not exist
            CurrencyMismatchError: A balance is not in its account's currency
            InsufficientFundsError: A balance would become negative
        """
        now = datetime.now(timezone.utc)
        updated = []
        for account_id, new_balance in updates:
            account = self.get_by_id(account_id, transaction)
            if new_balance.currency != account.currency:
                raise CurrencyMismatchError(account.currency, new_balance.currency)
            if new_balance.is_negative():
                raise InsufficientFundsError(
                    account_id,
                    account.balance.amount,
                    (account.balance - new_balance).amount
                )
            account.balance = new_balance
            account.updated_at = now
            updated.append(account)

        for account in updated:
            self._save_account(transaction, account)
        return updated

    def update_alias(self, transaction: StorageTransaction, account_id: str, alias: Optional[str]) -> Account:
        account = self.get_by_id(account_id, transaction)
        account.alias = alias
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(transaction, account)
        return account

    def _next_account_number(self, transaction: StorageTransaction) -> str:
        for _ in range(self.number_attempts):
            account_number = self.number_generator.generate()
            if not transaction.find(self.table_name, {"account_number": account_number}):
                return account_number
        raise InvalidArgumentError(
            f"Could not generate a unique account number after {self.number_attempts} attempts"
        )

    def _save_account(self, transaction: StorageTransaction, account: Account) -> None:
        transaction.save(self.table_name, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        result['currency'] = account.currency.code
        result['balance'] = str(account.balance.amount)
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money.from_string(data['balance'], currency),
            alias=data.get('alias')
        )


class AccountManager:
    """
    Account lifecycle: open, look up, list by owner, rename
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        user_directory: UserDirectory
    ):
        self.storage = storage
        self.account_store = account_store
        self.user_directory = user_directory
        self.logger = get_logger("banking_ledger.accounts")

    def open_account(
        self,
        owner_id: str,
        account_type: AccountType,
        currency: Currency,
        alias: Optional[str] = None
    ) -> Account:
        """
        Open a new zero-balance account

        Args:
            owner_id: ID of the owning user
            account_type: SAVINGS or CHECKING
            currency: Account currency
            alias: Optional display label

        Returns:
            Created Account object

        Raises:
            OwnerNotFoundError: If the owner does not exist
        """
        with self.storage.atomic() as transaction:
            if not self.user_directory.exists(owner_id, transaction):
                raise OwnerNotFoundError(owner_id)
            account = self.account_store.create(
                transaction, owner_id, account_type, currency, alias
            )

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            action="open_account", resource=f"account:{account.id}",
            extra={
                "owner_id": owner_id,
                "account_type": account_type.value,
                "currency": currency.code
            }
        )
        return account

    def get_account(self, account_id: str) -> Account:
        return self.account_store.get_by_id(account_id)

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        return self.account_store.get_by_number(account_number)

    def list_by_owner(self, owner_id: str) -> List[Account]:
        return self.account_store.get_by_owner(owner_id)

    def rename_account(self, account_id: str, alias: Optional[str]) -> Account:
        """Change the display label of an account"""
        with self.storage.atomic() as transaction:
            self.account_store.lock(transaction, [account_id])
            account = self.account_store.update_alias(transaction, account_id, alias)

        log_action(
            self.logger, "info", "Account alias updated",
            action="rename_account", resource=f"account:{account_id}"
        )
        return account
