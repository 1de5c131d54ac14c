"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
from datetime import datetime, timezone, timedelta
from pathlib import Path

from ewallet.errors import AccountNotFound, DuplicateAccount, StoreUnavailable
from ewallet.storage import (
    InMemoryStorage, SQLiteStorage, format_timestamp, parse_timestamp,
    ACCOUNTS_TABLE, TRANSACTIONS_TABLE
)


BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def account_row(account_id, balance=0):
    return {
        "id": account_id,
        "display_name": f"Account {account_id}",
        "balance": balance,
        "created_at": format_timestamp(BASE_TIME)
    }


def transaction_row(account_id, kind="deposit", amount=100, minutes=0,
                    resulting_balance=100, operation_id=None, counterparty_id=None):
    return {
        "kind": kind,
        "account_id": account_id,
        "counterparty_id": counterparty_id,
        "amount": amount,
        "timestamp": format_timestamp(BASE_TIME + timedelta(minutes=minutes)),
        "resulting_balance": resulting_balance,
        "operation_id": operation_id or f"op-{account_id}-{minutes}-{kind}"
    }


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestTimestamps:
    """Test timestamp formatting helpers"""

    def test_naive_datetime_treated_as_utc(self):
        """Test that naive datetimes are stored as UTC"""
        naive = datetime(2026, 1, 1, 12, 0)
        assert format_timestamp(naive) == format_timestamp(BASE_TIME)

    def test_round_trip_keeps_microseconds(self):
        """Test that formatted timestamps sort lexically and parse back"""
        earlier = BASE_TIME
        later = BASE_TIME + timedelta(microseconds=1)
        assert format_timestamp(earlier) < format_timestamp(later)
        assert parse_timestamp(format_timestamp(later)) == later


class TestAccountRows:
    """Test account persistence"""

    def test_insert_and_load(self, storage):
        """Test saving and loading an account"""
        storage.insert_account(account_row("alice"))

        loaded = storage.load_account("alice")
        assert loaded["id"] == "alice"
        assert loaded["balance"] == 0
        assert storage.load_account("nobody") is None
        assert storage.count(ACCOUNTS_TABLE) == 1

    def test_duplicate_insert_rejected(self, storage):
        """Test that an existing id cannot be inserted twice"""
        storage.insert_account(account_row("alice"))

        with pytest.raises(DuplicateAccount):
            storage.insert_account(account_row("alice"))
        assert storage.count(ACCOUNTS_TABLE) == 1

    def test_load_accounts_ordered_by_id(self, storage):
        """Test listing accounts"""
        for account_id in ["carol", "alice", "bob"]:
            storage.insert_account(account_row(account_id))

        assert [row["id"] for row in storage.load_accounts()] == ["alice", "bob", "carol"]

    def test_update_balance_and_total(self, storage):
        """Test balance updates and the balance total"""
        storage.insert_account(account_row("alice"))
        storage.insert_account(account_row("bob"))

        storage.update_balance("alice", 700)
        storage.update_balance("bob", 300)

        assert storage.load_account("alice")["balance"] == 700
        assert storage.total_balance() == 1000

    def test_update_missing_account(self, storage):
        """Test that updating an unknown account fails"""
        with pytest.raises(AccountNotFound):
            storage.update_balance("ghost", 10)

    def test_count_unknown_table(self, storage):
        """Test that only the two ledger tables can be counted"""
        with pytest.raises(ValueError):
            storage.count("journal_entries")


class TestTransactionRows:
    """Test the append-only transaction log"""

    def setup_rows(self, storage):
        storage.insert_account(account_row("alice"))
        storage.insert_account(account_row("bob"))
        ids = [
            storage.append_transaction(transaction_row("alice", minutes=0)),
            storage.append_transaction(transaction_row("bob", minutes=1)),
            storage.append_transaction(transaction_row(
                "alice", kind="withdrawal", amount=40, minutes=2, resulting_balance=60
            )),
        ]
        return ids

    def test_ids_increase(self, storage):
        """Test that appended rows get increasing ids"""
        ids = self.setup_rows(storage)

        assert ids == sorted(ids)
        assert len(set(ids)) == 3
        assert storage.latest_transaction_id() == ids[-1]
        assert storage.count(TRANSACTIONS_TABLE) == 3

    def test_empty_log(self, storage):
        """Test the empty-log markers"""
        assert storage.latest_transaction_id() == 0
        assert storage.latest_timestamp() is None
        assert storage.find_transactions() == []

    def test_latest_timestamp(self, storage):
        """Test that the latest timestamp follows the last row"""
        self.setup_rows(storage)
        assert storage.latest_timestamp() == format_timestamp(BASE_TIME + timedelta(minutes=2))

    def test_find_by_account_and_kind(self, storage):
        """Test account and kind filters"""
        self.setup_rows(storage)

        alice_rows = storage.find_transactions(account_id="alice")
        assert [row["kind"] for row in alice_rows] == ["deposit", "withdrawal"]

        withdrawals = storage.find_transactions(kinds=["withdrawal"])
        assert len(withdrawals) == 1
        assert withdrawals[0]["amount"] == 40

    def test_find_by_time_range(self, storage):
        """Test inclusive time bounds"""
        self.setup_rows(storage)

        rows = storage.find_transactions(
            start=BASE_TIME + timedelta(minutes=1),
            end=BASE_TIME + timedelta(minutes=2)
        )
        assert [row["account_id"] for row in rows] == ["bob", "alice"]

    def test_find_with_id_window_and_limit(self, storage):
        """Test keyset pagination parameters"""
        ids = self.setup_rows(storage)

        page = storage.find_transactions(after_id=ids[0], limit=1)
        assert [row["id"] for row in page] == [ids[1]]

        bounded = storage.find_transactions(max_id=ids[1])
        assert [row["id"] for row in bounded] == ids[:2]

    def test_find_descending(self, storage):
        """Test newest-first ordering"""
        ids = self.setup_rows(storage)

        rows = storage.find_transactions(descending=True, limit=2)
        assert [row["id"] for row in rows] == [ids[2], ids[1]]

    def test_find_by_operation(self, storage):
        """Test lookup of the rows written by one operation"""
        self.setup_rows(storage)
        storage.append_transaction(transaction_row(
            "alice", kind="transfer_out", minutes=3, operation_id="op-x",
            counterparty_id="bob", resulting_balance=0
        ))
        storage.append_transaction(transaction_row(
            "bob", kind="transfer_in", minutes=3, operation_id="op-x",
            counterparty_id="alice", resulting_balance=200
        ))

        rows = storage.find_transactions(operation_id="op-x")
        assert [row["kind"] for row in rows] == ["transfer_out", "transfer_in"]

    def test_duplicate_operation_record_rejected(self, storage):
        """Test that an operation writes at most one row per account"""
        storage.insert_account(account_row("alice"))
        storage.append_transaction(transaction_row("alice", operation_id="op-1"))

        with pytest.raises(StoreUnavailable):
            storage.append_transaction(transaction_row("alice", minutes=1, operation_id="op-1"))
        assert storage.count(TRANSACTIONS_TABLE) == 1


class TestAtomicity:
    """Test transaction boundaries"""

    def test_atomic_commits(self, storage):
        """Test that a successful block is kept"""
        with storage.atomic():
            storage.insert_account(account_row("alice"))
            storage.update_balance("alice", 100)
            storage.append_transaction(transaction_row("alice"))

        assert storage.load_account("alice")["balance"] == 100
        assert storage.count(TRANSACTIONS_TABLE) == 1

    def test_atomic_rolls_back_on_error(self, storage):
        """Test that a failing block leaves no trace"""
        storage.insert_account(account_row("alice"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.update_balance("alice", 100)
                storage.append_transaction(transaction_row("alice"))
                raise RuntimeError("boom")

        assert storage.load_account("alice")["balance"] == 0
        assert storage.count(TRANSACTIONS_TABLE) == 0
        assert storage.latest_transaction_id() == 0

    def test_nested_blocks_join_outer_unit(self, storage):
        """Test that an inner block is undone when the outer one fails"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.insert_account(account_row("alice"))
                with storage.atomic():
                    storage.insert_account(account_row("bob"))
                raise RuntimeError("boom")

        assert storage.count(ACCOUNTS_TABLE) == 0

    def test_rolled_back_record_frees_its_operation(self, storage):
        """Test that an operation id can be reused after its unit rolled back"""
        storage.insert_account(account_row("alice"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.append_transaction(transaction_row("alice", operation_id="op-1"))
                raise RuntimeError("boom")

        with storage.atomic():
            storage.append_transaction(transaction_row("alice", operation_id="op-1"))
        assert len(storage.find_transactions(operation_id="op-1")) == 1

    def test_store_usable_after_rollback(self, storage):
        """Test that a rollback does not poison later writes"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.insert_account(account_row("alice"))
                raise RuntimeError("boom")

        with storage.atomic():
            storage.insert_account(account_row("alice"))
        assert storage.count(ACCOUNTS_TABLE) == 1


class TestSQLiteStorage:
    """SQLite-specific behaviour"""

    def test_data_survives_reopen(self):
        """Test that committed rows are durable"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "wallet.db"

            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.insert_account(account_row("alice"))
                storage.update_balance("alice", 100)
                storage.append_transaction(transaction_row("alice"))
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load_account("alice")["balance"] == 100
            assert reopened.latest_transaction_id() == 1
            reopened.close()

    def test_negative_balance_rejected_by_schema(self):
        """Test the balance CHECK constraint"""
        storage = SQLiteStorage()
        storage.insert_account(account_row("alice"))

        with pytest.raises(StoreUnavailable):
            storage.update_balance("alice", -1)
        assert storage.load_account("alice")["balance"] == 0
        storage.close()

    def test_closed_store_is_unavailable(self):
        """Test that use after close surfaces StoreUnavailable"""
        storage = SQLiteStorage()
        storage.close()

        with pytest.raises(StoreUnavailable):
            storage.load_account("alice")
        with pytest.raises(StoreUnavailable):
            storage.insert_account(account_row("alice"))
        with pytest.raises(StoreUnavailable):
            with storage.atomic():
                pass

    def test_missing_display_name_is_not_a_duplicate(self):
        """Test that a NOT NULL violation is not reported as a taken id"""
        storage = SQLiteStorage()
        row = account_row("fresh")
        row["display_name"] = None

        with pytest.raises(StoreUnavailable):
            storage.insert_account(row)
        assert storage.load_account("fresh") is None
        storage.close()

    def test_unopenable_path(self):
        """Test that a path in a missing directory cannot be opened"""
        with tempfile.TemporaryDirectory() as temp_dir:
            with pytest.raises(StoreUnavailable):
                SQLiteStorage(Path(temp_dir) / "missing" / "wallet.db")
