"""
Test suite for transfers and deposits

Covers the happy paths, the validation order of the transfer checks and
the guarantee that a rejected operation leaves balances and the ledger
exactly as they were.
"""

import random
import pytest
from decimal import Decimal

from banking_ledger.storage import InMemoryStorage
from banking_ledger.currency import Money, Currency
from banking_ledger.config import LedgerConfig
from banking_ledger.system import BankingSystem
from banking_ledger.accounts import AccountType
from banking_ledger.ledger import TransactionStatus, TransactionType
from banking_ledger.errors import (
    AccountNotFoundError, CurrencyMismatchError, InsufficientFundsError,
    InvalidAmountError, LedgerError, SameAccountError
)


class RecordingStorage(InMemoryStorage):
    """Counts every storage access"""

    def __init__(self):
        super().__init__()
        self.calls = []

    def load(self, table, record_id):
        self.calls.append(("load", table, record_id))
        return super().load(table, record_id)

    def begin_transaction(self):
        self.calls.append(("begin",))
        return super().begin_transaction()


class LedgerTestCase:
    """Shared fixture: one owner with a few accounts"""

    def setup_method(self):
        self.storage = self.make_storage()
        self.system = BankingSystem(storage=self.storage, config=LedgerConfig(database_url="memory://"))
        self.processor = self.system.transaction_processor
        self.owner = self.system.user_directory.create_user("Ana Torres", "ana@example.com")

    def make_storage(self):
        return InMemoryStorage()

    def open(self, currency=Currency.PEN, balance=None):
        account = self.system.account_manager.open_account(
            self.owner.id, AccountType.SAVINGS, currency
        )
        if balance is not None:
            self.processor.deposit(account.id, balance)
        return account

    def balance(self, account):
        return self.system.account_manager.get_account(account.id).balance.amount

    def snapshot(self):
        return (
            sorted((record["id"], record["balance"]) for record in self.storage.load_all("accounts")),
            self.storage.count("transactions")
        )


class TestTransfer(LedgerTestCase):

    def test_transfer_between_accounts(self):
        a = self.open(balance="100.00")
        b = self.open(balance="50.00")

        entry = self.processor.transfer(a.id, b.id, Decimal("25.50"), description="Rent")

        assert self.balance(a) == Decimal("74.50")
        assert self.balance(b) == Decimal("75.50")
        assert entry.transaction_type == TransactionType.TRANSFER
        assert entry.status == TransactionStatus.COMPLETED
        assert entry.amount == Money("25.50", Currency.PEN)
        assert entry.from_account_id == a.id
        assert entry.to_account_id == b.id
        assert entry.description == "Rent"
        assert self.processor.get_transaction(entry.id).amount.amount == Decimal("25.50")

    def test_transfer_whole_balance(self):
        a = self.open(balance="10.00")
        b = self.open()

        self.processor.transfer(a.id, b.id, "10.00")

        assert self.balance(a) == Decimal("0.00")
        assert self.balance(b) == Decimal("10.00")

    def test_insufficient_funds(self):
        a = self.open(balance="10.00")
        b = self.open()
        before = self.snapshot()

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.processor.transfer(a.id, b.id, "10.01")

        assert exc_info.value.available == Decimal("10.00")
        assert exc_info.value.requested == Decimal("10.01")
        assert self.snapshot() == before

    def test_same_account(self):
        a = self.open(balance="10.00")
        before = self.snapshot()

        with pytest.raises(SameAccountError, match="same account"):
            self.processor.transfer(a.id, a.id, "1.00")
        assert self.snapshot() == before

    @pytest.mark.parametrize("amount", ["0", "0.00", "-5.00", Decimal("-0.01"), "abc", "1.001"])
    def test_invalid_amounts(self, amount):
        a = self.open(balance="10.00")
        b = self.open()
        before = self.snapshot()

        with pytest.raises(InvalidAmountError):
            self.processor.transfer(a.id, b.id, amount)
        assert self.snapshot() == before

    def test_currency_mismatch(self):
        pen = self.open(Currency.PEN, balance="100.00")
        usd = self.open(Currency.USD)
        before = self.snapshot()

        with pytest.raises(CurrencyMismatchError) as exc_info:
            self.processor.transfer(pen.id, usd.id, "10.00")

        assert "PEN" in str(exc_info.value)
        assert "USD" in str(exc_info.value)
        assert self.snapshot() == before

    def test_missing_accounts_name_their_role(self):
        a = self.open(balance="10.00")

        with pytest.raises(AccountNotFoundError) as exc_info:
            self.processor.transfer("ghost", a.id, "1.00")
        assert exc_info.value.role == "from"
        assert str(exc_info.value).startswith("From account")

        with pytest.raises(AccountNotFoundError) as exc_info:
            self.processor.transfer(a.id, "ghost", "1.00")
        assert exc_info.value.role == "to"

        with pytest.raises(AccountNotFoundError) as exc_info:
            self.processor.transfer("ghost-1", "ghost-2", "1.00")
        assert exc_info.value.role == "from"

    def test_currency_mismatch_reported_before_insufficient_funds(self):
        pen = self.open(Currency.PEN)
        usd = self.open(Currency.USD)

        with pytest.raises(CurrencyMismatchError):
            self.processor.transfer(pen.id, usd.id, "1000.00")

    def test_invalid_amount_reported_before_missing_account(self):
        with pytest.raises(InvalidAmountError):
            self.processor.transfer("ghost-1", "ghost-2", "-1")

    def test_same_account_reported_before_invalid_amount(self):
        with pytest.raises(SameAccountError):
            self.processor.transfer("ghost", "ghost", "-1")

    def test_ledger_failure_rolls_back_balances(self, monkeypatch):
        a = self.open(balance="10.00")
        b = self.open()
        before = self.snapshot()

        def broken_append(transaction, entry):
            raise RuntimeError("disk full")

        monkeypatch.setattr(self.system.ledger_store, "append", broken_append)

        with pytest.raises(RuntimeError):
            self.processor.transfer(a.id, b.id, "4.00")

        assert self.snapshot() == before
        assert self.balance(a) == Decimal("10.00")

    def test_every_error_is_a_ledger_error(self):
        a = self.open(balance="1.00")
        b = self.open()
        for args in [(a.id, a.id, "1"), (a.id, b.id, "0"), (a.id, "x", "1"), (a.id, b.id, "5")]:
            with pytest.raises(LedgerError):
                self.processor.transfer(*args)

    def test_random_transfers_conserve_money(self):
        rng = random.Random(42)
        accounts = [self.open(balance="100.00") for _ in range(5)]
        total = sum(self.balance(account) for account in accounts)
        completed = 0

        for _ in range(300):
            source, target = rng.sample(accounts, 2)
            amount = Decimal(rng.randint(1, 4000)) / 100
            try:
                self.processor.transfer(source.id, target.id, amount)
                completed += 1
            except InsufficientFundsError:
                pass

        balances = [self.balance(account) for account in accounts]
        assert sum(balances) == total
        assert all(balance >= 0 for balance in balances)
        # 5 deposits plus the transfers that went through
        assert self.storage.count("transactions") == 5 + completed


class TestSameAccountShortCircuit(LedgerTestCase):

    def make_storage(self):
        return RecordingStorage()

    def test_no_storage_access(self):
        self.storage.calls.clear()

        with pytest.raises(SameAccountError):
            self.processor.transfer("x", "x", "1.00")

        assert self.storage.calls == []


class TestDeposit(LedgerTestCase):

    def test_deposit(self):
        a = self.open()

        entry = self.processor.deposit(a.id, "40.25", description="Payroll")

        assert self.balance(a) == Decimal("40.25")
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.from_account_id is None
        assert entry.to_account_id == a.id
        assert entry.description == "Payroll"

    def test_deposit_accepts_float_exactly(self):
        a = self.open()
        self.processor.deposit(a.id, 0.1)
        self.processor.deposit(a.id, 0.2)
        assert self.balance(a) == Decimal("0.30")

    def test_deposit_to_missing_account(self):
        before = self.snapshot()
        with pytest.raises(AccountNotFoundError):
            self.processor.deposit("ghost", "1.00")
        assert self.snapshot() == before

    def test_balance_overflow_is_rejected(self):
        a = self.open(Currency.USD)
        self.processor.deposit(a.id, "50000000000000000000000000.00")
        before = self.snapshot()

        with pytest.raises(InvalidAmountError, match="exceeds supported precision"):
            self.processor.deposit(a.id, "50000000000000000000000000.00")
        with pytest.raises(InvalidAmountError, match="exceeds supported precision"):
            self.processor.deposit(a.id, "1" + "0" * 27)

        assert self.snapshot() == before

    def test_failed_lookups_leave_no_lock_entries(self):
        for i in range(1000):
            with pytest.raises(AccountNotFoundError):
                self.processor.deposit(f"ghost-{i}", "1.00")
        a = self.open(balance="5.00")
        b = self.open()
        self.processor.transfer(a.id, b.id, "1.00")

        assert self.storage._record_locks == {}

    def test_deposit_invalid_amount(self):
        a = self.open()
        with pytest.raises(InvalidAmountError):
            self.processor.deposit(a.id, "0")
        with pytest.raises(InvalidAmountError):
            self.processor.deposit(a.id, "2.345")
        assert self.balance(a) == Decimal("0.00")


class TestHistory(LedgerTestCase):

    def test_account_history_most_recent_first(self):
        a = self.open()
        b = self.open()
        first = self.processor.deposit(a.id, "30.00")
        second = self.processor.transfer(a.id, b.id, "10.00")
        third = self.processor.transfer(b.id, a.id, "5.00")

        history = self.processor.list_account_transactions(a.id)
        assert [entry.id for entry in history] == [third.id, second.id, first.id]
        assert [entry.id for entry in self.processor.list_account_transactions(b.id)] == [third.id, second.id]

    def test_history_for_unused_account(self):
        a = self.open()
        assert self.processor.list_account_transactions(a.id) == []
