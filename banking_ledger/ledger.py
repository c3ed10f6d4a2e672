"""
Ledger Module

Append-only record of completed monetary movements. Each entry is written
exactly once, in the same storage transaction as the balance changes it
describes, and is never updated afterwards.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import threading
import uuid

from .currency import Money, Currency
from .errors import (
    CurrencyMismatchError, DuplicateEntryError, InvalidAmountError,
    InvalidArgumentError, TransactionNotFoundError
)
from .storage import StorageInterface, StorageRecord, StorageTransaction


class TransactionType(Enum):
    """Types of ledger movements"""
    TRANSFER = "TRANSFER"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(Enum):
    """Only COMPLETED is ever persisted; failures abort before any write"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Transaction(StorageRecord):
    """
    Ledger entry for one movement of funds
    """
    transaction_type: TransactionType
    from_account_id: Optional[str]  # None for deposits
    to_account_id: Optional[str]
    amount: Money
    currency: Currency
    status: TransactionStatus = TransactionStatus.COMPLETED
    description: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidAmountError(self.amount.amount)

        if self.amount.currency != self.currency:
            raise CurrencyMismatchError(self.currency, self.amount.currency)

        if self.transaction_type == TransactionType.TRANSFER:
            if not self.from_account_id or not self.to_account_id:
                raise InvalidArgumentError("Transfer entries need both accounts")
            if self.from_account_id == self.to_account_id:
                raise InvalidArgumentError("Transfer entries need two distinct accounts")
        elif self.transaction_type == TransactionType.DEPOSIT:
            if not self.to_account_id or self.from_account_id:
                raise InvalidArgumentError("Deposit entries credit exactly one account")
        elif self.transaction_type == TransactionType.WITHDRAWAL:
            if not self.from_account_id or self.to_account_id:
                raise InvalidArgumentError("Withdrawal entries debit exactly one account")

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    def involves(self, account_id: str) -> bool:
        return account_id in (self.from_account_id, self.to_account_id)


class LedgerStore:
    """Persistence contract for ledger entries"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self._clock_lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None

    def next_timestamp(self) -> datetime:
        """Wall-clock time, nudged forward so entries from this store never tie"""
        with self._clock_lock:
            now = datetime.now(timezone.utc)
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    def new_entry(
        self,
        transaction_type: TransactionType,
        amount: Money,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """Build a COMPLETED entry ready for ``append``"""
        now = self.next_timestamp()
        return Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_type=transaction_type,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            currency=amount.currency,
            status=TransactionStatus.COMPLETED,
            description=description
        )

    def append(self, transaction: StorageTransaction, entry: Transaction) -> Transaction:
        """
        Insert one entry within the given unit of work

        Raises:
            DuplicateEntryError: If an entry with the same id already exists
        """
        if transaction.exists(self.table_name, entry.id):
            raise DuplicateEntryError(entry.id)
        transaction.save(self.table_name, entry.id, self._transaction_to_dict(entry))
        return entry

    def get(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise TransactionNotFoundError(transaction_id)
        return self._transaction_from_dict(data)

    def list_by_account(self, account_id: str) -> List[Transaction]:
        """
        Entries where the account is the source or the destination,
        most recent first
        """
        records = {}
        for field_name in ("from_account_id", "to_account_id"):
            for data in self.storage.find(self.table_name, {field_name: account_id}):
                records[data['id']] = data

        entries = [self._transaction_from_dict(data) for data in records.values()]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries

    def list_all(self) -> List[Transaction]:
        entries = [self._transaction_from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda entry: entry.created_at)
        return entries

    def _transaction_to_dict(self, entry: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = entry.to_dict()
        result['transaction_type'] = entry.transaction_type.value
        result['status'] = entry.status.value
        result['currency'] = entry.currency.code
        result['amount'] = str(entry.amount.amount)
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_type=TransactionType(data['transaction_type']),
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            amount=Money.from_string(data['amount'], currency),
            currency=currency,
            status=TransactionStatus(data['status']),
            description=data.get('description')
        )
