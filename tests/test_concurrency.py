"""
Concurrency tests for transfers

Many threads hammer the same accounts; balances must stay exact and never
go negative, and opposite-direction transfers must not deadlock.
"""

import random
import tempfile
import threading
import time
from decimal import Decimal
from pathlib import Path

from banking_ledger.storage import InMemoryStorage, SQLiteStorage
from banking_ledger.currency import Currency
from banking_ledger.config import LedgerConfig
from banking_ledger.system import BankingSystem
from banking_ledger.accounts import AccountType
from banking_ledger.errors import InsufficientFundsError


class JitteryStorage(InMemoryStorage):
    """Sleeps a little on every read to widen race windows"""

    def load(self, table, record_id):
        time.sleep(random.uniform(0, 0.002))
        return super().load(table, record_id)


def _run_threads(count, target):
    barrier = threading.Barrier(count)
    results = []
    results_lock = threading.Lock()

    def worker(index):
        barrier.wait()
        try:
            outcome = target(index)
        except Exception as e:
            outcome = e
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)
    return results


class ConcurrencyTestCase:

    lock_timeout = 5.0

    def setup_method(self):
        self.storage = self.make_storage()
        self.system = BankingSystem(
            storage=self.storage,
            config=LedgerConfig(database_url="memory://", lock_timeout_seconds=self.lock_timeout)
        )
        self.processor = self.system.transaction_processor
        self.owner = self.system.user_directory.create_user("Ana Torres", "ana@example.com")

    def teardown_method(self):
        self.system.close()

    def make_storage(self):
        return InMemoryStorage(lock_timeout=self.lock_timeout)

    def open(self, balance=None):
        account = self.system.account_manager.open_account(
            self.owner.id, AccountType.CHECKING, Currency.USD
        )
        if balance is not None:
            self.processor.deposit(account.id, balance)
        return account

    def balance(self, account):
        return self.system.account_manager.get_account(account.id).balance.amount


class TestConcurrentTransfers(ConcurrencyTestCase):

    def test_fifty_concurrent_debits(self):
        source = self.open(balance="50.00")
        target = self.open()

        results = _run_threads(50, lambda i: self.processor.transfer(source.id, target.id, "1.00"))

        assert not any(isinstance(result, Exception) for result in results)
        assert self.balance(source) == Decimal("0.00")
        assert self.balance(target) == Decimal("50.00")
        assert len(self.processor.list_account_transactions(source.id)) == 51

    def test_overdraw_race(self):
        source = self.open(balance="10.00")
        target = self.open()

        results = _run_threads(30, lambda i: self.processor.transfer(source.id, target.id, "1.00"))

        failures = [result for result in results if isinstance(result, Exception)]
        assert len(results) - len(failures) == 10
        assert len(failures) == 20
        assert all(isinstance(failure, InsufficientFundsError) for failure in failures)
        assert self.balance(source) == Decimal("0.00")
        assert self.balance(target) == Decimal("10.00")

    def test_opposite_directions_do_not_deadlock(self):
        a = self.open(balance="100.00")
        b = self.open(balance="100.00")

        def move(index):
            if index % 2:
                return self.processor.transfer(a.id, b.id, "1.00")
            return self.processor.transfer(b.id, a.id, "1.00")

        results = _run_threads(40, move)

        assert not any(isinstance(result, Exception) for result in results)
        assert self.balance(a) == Decimal("100.00")
        assert self.balance(b) == Decimal("100.00")

    def test_balance_never_observed_negative(self):
        source = self.open(balance="5.00")
        target = self.open()
        stop = threading.Event()
        observed = []

        def watch():
            while not stop.is_set():
                observed.append(self.balance(source))

        watcher = threading.Thread(target=watch)
        watcher.start()
        try:
            _run_threads(20, lambda i: self.processor.transfer(source.id, target.id, "0.50"))
        finally:
            stop.set()
            watcher.join(timeout=10)

        assert observed
        assert min(observed) >= Decimal("0")
        assert self.balance(source) + self.balance(target) == Decimal("5.00")


class TestJitteryStorage(ConcurrencyTestCase):

    def make_storage(self):
        return JitteryStorage(lock_timeout=self.lock_timeout)

    def test_ring_of_transfers_conserves_total(self):
        accounts = [self.open(balance="20.00") for _ in range(4)]

        def move(index):
            source = accounts[index % 4]
            target = accounts[(index + 1) % 4]
            return self.processor.transfer(source.id, target.id, "3.00")

        results = _run_threads(24, move)

        for result in results:
            if isinstance(result, Exception):
                assert isinstance(result, InsufficientFundsError)
        balances = [self.balance(account) for account in accounts]
        assert sum(balances) == Decimal("80.00")
        assert all(balance >= 0 for balance in balances)


class TestSQLiteConcurrency(ConcurrencyTestCase):

    def make_storage(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        return SQLiteStorage(Path(self.temp_dir.name) / "ledger.db", lock_timeout=30)

    def teardown_method(self):
        super().teardown_method()
        self.temp_dir.cleanup()

    def test_concurrent_debits(self):
        source = self.open(balance="20.00")
        target = self.open()

        results = _run_threads(30, lambda i: self.processor.transfer(source.id, target.id, "1.00"))

        failures = [result for result in results if isinstance(result, Exception)]
        assert len(failures) == 10
        assert all(isinstance(failure, InsufficientFundsError) for failure in failures)
        assert self.balance(source) == Decimal("0.00")
        assert self.balance(target) == Decimal("20.00")
