"""
Error Taxonomy Module

Typed failures raised by the ledger engine. Every error carries a stable
``code`` the API boundary translates into a status, plus the identifiers
needed to describe what went wrong. Errors raised inside a storage
transaction abort it, so a raised error always means nothing was persisted.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(ValueError):
    """Base class for all ledger engine failures"""

    code = "LEDGER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation for logs and API responses"""
        return {"error": self.code, "detail": self.message}


# Not found

class NotFoundError(LedgerError):
    """A referenced entity does not exist"""

    code = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    """Account lookup failed; ``role`` says which side of a movement it was"""

    def __init__(self, account_id: str, role: Optional[str] = None):
        self.account_id = account_id
        self.role = role
        if role:
            message = f"{role.capitalize()} account with id={account_id} not found"
        else:
            message = f"Account with id={account_id} not found"
        super().__init__(message)


class OwnerNotFoundError(NotFoundError):
    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(f"Owner with id={owner_id} not found")


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


# Invalid arguments

class InvalidArgumentError(LedgerError):
    """Request is well-typed but violates a monetary rule"""

    code = "INVALID_ARGUMENT"


class SameAccountError(InvalidArgumentError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__("Cannot transfer to the same account")


class InvalidAmountError(InvalidArgumentError):
    def __init__(self, amount: Any, reason: str = "Amount must be positive"):
        self.amount = amount
        super().__init__(f"{reason}: {amount}")


class CurrencyMismatchError(InvalidArgumentError):
    def __init__(self, expected: Any, actual: Any):
        self.expected = getattr(expected, "code", expected)
        self.actual = getattr(actual, "code", actual)
        super().__init__(
            f"Currency mismatch between accounts: {self.expected} != {self.actual}"
        )


class DuplicateEntryError(InvalidArgumentError):
    """Ledger entries are append-only; the same id cannot be written twice"""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Ledger entry {transaction_id} already recorded")


# Business rule

class InsufficientFundsError(LedgerError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, available: Decimal, requested: Decimal):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"available {available}, requested {requested}"
        )


# Storage

class LockTimeoutError(LedgerError):
    """A row lock could not be acquired before the configured timeout"""

    code = "LOCK_TIMEOUT"

    def __init__(self, table: str, record_id: str, timeout: float):
        self.table = table
        self.record_id = record_id
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout}s waiting for lock on {table}:{record_id}"
        )
