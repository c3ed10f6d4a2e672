"""
Transaction Processing Module

Transfer and deposit engines. Each operation validates its arguments,
locks the accounts it touches, writes the new balances and appends one
COMPLETED ledger entry, all inside a single storage transaction. A failed
check raises before commit, so either every write lands or none does.
"""

from decimal import Decimal
from typing import List, Optional

from .currency import AmountLike, Money, has_valid_precision, parse_amount
from .errors import (
    CurrencyMismatchError, InsufficientFundsError, InvalidAmountError,
    LedgerError, SameAccountError
)
from .storage import StorageInterface
from .accounts import AccountStore
from .ledger import LedgerStore, Transaction, TransactionType
from .logging_config import get_logger, log_action


def _positive_amount(amount: AmountLike) -> Decimal:
    value = parse_amount(amount)
    if value <= Decimal('0'):
        raise InvalidAmountError(amount)
    if not has_valid_precision(value):
        raise InvalidAmountError(amount, "Amount has more than two decimal places")
    return value


class TransferEngine:
    """Moves funds between two accounts of the same currency"""

    def __init__(self, storage: StorageInterface, account_store: AccountStore, ledger_store: LedgerStore):
        self.storage = storage
        self.account_store = account_store
        self.ledger_store = ledger_store
        self.logger = get_logger("banking_ledger.transactions")

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Transfer funds between accounts

        Checks run in a fixed order and the first failure wins: same
        account, non-positive amount, missing source, missing destination,
        currency mismatch, insufficient funds.

        Args:
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount in the accounts' currency
            description: Optional free text stored on the entry

        Returns:
            The persisted TRANSFER entry

        Raises:
            SameAccountError, InvalidAmountError, AccountNotFoundError,
            CurrencyMismatchError, InsufficientFundsError, LockTimeoutError
        """
        try:
            if from_account_id == to_account_id:
                raise SameAccountError(from_account_id)
            value = _positive_amount(amount)

            with self.storage.atomic() as transaction:
                self.account_store.lock(transaction, [from_account_id, to_account_id])

                from_account = self.account_store.get_by_id(from_account_id, transaction, role="from")
                to_account = self.account_store.get_by_id(to_account_id, transaction, role="to")

                if from_account.currency != to_account.currency:
                    raise CurrencyMismatchError(from_account.currency, to_account.currency)

                money = Money(value, from_account.currency)
                if from_account.balance < money:
                    raise InsufficientFundsError(
                        from_account_id, from_account.balance.amount, money.amount
                    )

                self.account_store.update_balances(transaction, [
                    (from_account_id, from_account.balance - money),
                    (to_account_id, to_account.balance + money),
                ])
                entry = self.ledger_store.append(transaction, self.ledger_store.new_entry(
                    TransactionType.TRANSFER,
                    money,
                    from_account_id=from_account_id,
                    to_account_id=to_account_id,
                    description=description
                ))
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e.message}",
                action="transfer_rejected",
                extra={
                    "code": e.code,
                    "from_account": from_account_id,
                    "to_account": to_account_id,
                    "amount": str(amount)
                }
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer", resource=f"transaction:{entry.id}",
            extra={
                "from_account": from_account_id,
                "to_account": to_account_id,
                "amount": entry.amount.to_string()
            }
        )
        return entry


class DepositEngine:
    """Credits a single account from outside the system"""

    def __init__(self, storage: StorageInterface, account_store: AccountStore, ledger_store: LedgerStore):
        self.storage = storage
        self.account_store = account_store
        self.ledger_store = ledger_store
        self.logger = get_logger("banking_ledger.transactions")

    def deposit(
        self,
        to_account_id: str,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Deposit funds into an account

        Raises:
            InvalidAmountError, AccountNotFoundError, LockTimeoutError
        """
        try:
            value = _positive_amount(amount)

            with self.storage.atomic() as transaction:
                self.account_store.lock(transaction, [to_account_id])
                account = self.account_store.get_by_id(to_account_id, transaction, role="to")

                money = Money(value, account.currency)
                self.account_store.update_balances(transaction, [
                    (to_account_id, account.balance + money),
                ])
                entry = self.ledger_store.append(transaction, self.ledger_store.new_entry(
                    TransactionType.DEPOSIT,
                    money,
                    to_account_id=to_account_id,
                    description=description
                ))
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Deposit rejected: {e.message}",
                action="deposit_rejected",
                extra={"code": e.code, "to_account": to_account_id, "amount": str(amount)}
            )
            raise

        log_action(
            self.logger, "info", "Deposit completed",
            action="deposit", resource=f"transaction:{entry.id}",
            extra={"to_account": to_account_id, "amount": entry.amount.to_string()}
        )
        return entry


class TransactionProcessor:
    """
    Entry point for monetary operations: transfers, deposits and
    ledger queries
    """

    def __init__(self, storage: StorageInterface, account_store: AccountStore, ledger_store: LedgerStore):
        self.ledger_store = ledger_store
        self.transfer_engine = TransferEngine(storage, account_store, ledger_store)
        self.deposit_engine = DepositEngine(storage, account_store, ledger_store)

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> Transaction:
        return self.transfer_engine.transfer(from_account_id, to_account_id, amount, description)

    def deposit(self, to_account_id: str, amount: AmountLike, description: Optional[str] = None) -> Transaction:
        return self.deposit_engine.deposit(to_account_id, amount, description)

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self.ledger_store.get(transaction_id)

    def list_account_transactions(self, account_id: str) -> List[Transaction]:
        """Ledger entries touching the account, most recent first"""
        return self.ledger_store.list_by_account(account_id)
