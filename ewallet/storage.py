"""
Storage Backend Module

Provides the abstract store interface and implementations for in-memory
(testing) and SQLite (persistence). Amounts are stored as integer minor
units and timestamps as UTC ISO-8601 strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterator, Sequence, Set, Tuple, Union
from datetime import datetime, timezone
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager
import copy
import sqlite3
import threading

from .errors import AccountNotFound, DuplicateAccount, StoreUnavailable


ACCOUNTS_TABLE = "accounts"
TRANSACTIONS_TABLE = "transactions"
_TABLES = (ACCOUNTS_TABLE, TRANSACTIONS_TABLE)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as a sortable UTC ISO string"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by format_timestamp"""
    return datetime.fromisoformat(value)


class StorageRecord:
    """Base class for all stored records"""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = format_timestamp(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    _lock: threading.RLock

    @abstractmethod
    def insert_account(self, record: Dict[str, Any]) -> None:
        """Insert a new account row, raising DuplicateAccount if the id exists"""
        pass

    @abstractmethod
    def load_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Load an account row"""
        pass

    @abstractmethod
    def load_accounts(self) -> List[Dict[str, Any]]:
        """Load all account rows ordered by id"""
        pass

    @abstractmethod
    def update_balance(self, account_id: str, balance: int) -> None:
        """Overwrite an account's stored balance"""
        pass

    @abstractmethod
    def append_transaction(self, record: Dict[str, Any]) -> int:
        """Append a transaction row and return its assigned id"""
        pass

    @abstractmethod
    def find_transactions(
        self,
        account_id: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        after_id: int = 0,
        max_id: Optional[int] = None,
        operation_id: Optional[str] = None,
        limit: Optional[int] = None,
        descending: bool = False
    ) -> List[Dict[str, Any]]:
        """Find transaction rows matching filters, ordered by id"""
        pass

    @abstractmethod
    def latest_transaction_id(self) -> int:
        """Highest assigned transaction id, 0 when the log is empty"""
        pass

    @abstractmethod
    def latest_timestamp(self) -> Optional[str]:
        """Timestamp of the most recent transaction row"""
        pass

    @abstractmethod
    def total_balance(self) -> int:
        """Sum of all stored account balances"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a store transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Context manager for atomic operations

        Holds the store lock for the whole unit, so readers on other threads
        see either the state before the block or the state after it.
        """
        with self._lock:
            self.begin_transaction()
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            self.commit()

    @contextmanager
    def snapshot(self) -> Iterator[None]:
        """Hold the store lock so a group of reads sees one consistent state"""
        with self._lock:
            yield


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._accounts: Dict[str, Dict[str, Any]] = {}
        self._transactions: List[Dict[str, Any]] = []
        self._operation_keys: Set[Tuple[str, str]] = set()
        self._next_transaction_id = 1
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot = None

    def insert_account(self, record: Dict[str, Any]) -> None:
        with self._lock:
            if record["id"] in self._accounts:
                raise DuplicateAccount(record["id"])
            self._accounts[record["id"]] = dict(record)

    def load_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._accounts.get(account_id)
            return dict(record) if record else None

    def load_accounts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(self._accounts[key]) for key in sorted(self._accounts)]

    def update_balance(self, account_id: str, balance: int) -> None:
        with self._lock:
            if account_id not in self._accounts:
                raise AccountNotFound(account_id)
            self._accounts[account_id]["balance"] = balance

    def append_transaction(self, record: Dict[str, Any]) -> int:
        with self._lock:
            key = (record["operation_id"], record["account_id"])
            if key in self._operation_keys:
                raise StoreUnavailable(
                    f"duplicate record for operation {record['operation_id']}"
                )
            self._operation_keys.add(key)
            stored = dict(record)
            stored["id"] = self._next_transaction_id
            self._next_transaction_id += 1
            self._transactions.append(stored)
            return stored["id"]

    def find_transactions(
        self,
        account_id: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        after_id: int = 0,
        max_id: Optional[int] = None,
        operation_id: Optional[str] = None,
        limit: Optional[int] = None,
        descending: bool = False
    ) -> List[Dict[str, Any]]:
        start_key = format_timestamp(start) if start else None
        end_key = format_timestamp(end) if end else None

        with self._lock:
            rows = reversed(self._transactions) if descending else iter(self._transactions)
            results = []
            for record in rows:
                if account_id is not None and record["account_id"] != account_id:
                    continue
                if kinds and record["kind"] not in kinds:
                    continue
                if start_key and record["timestamp"] < start_key:
                    continue
                if end_key and record["timestamp"] > end_key:
                    continue
                if record["id"] <= after_id:
                    continue
                if max_id is not None and record["id"] > max_id:
                    continue
                if operation_id is not None and record["operation_id"] != operation_id:
                    continue
                results.append(dict(record))
                if limit is not None and len(results) >= limit:
                    break
            return results

    def latest_transaction_id(self) -> int:
        with self._lock:
            return self._transactions[-1]["id"] if self._transactions else 0

    def latest_timestamp(self) -> Optional[str]:
        with self._lock:
            return self._transactions[-1]["timestamp"] if self._transactions else None

    def total_balance(self) -> int:
        with self._lock:
            return sum(record["balance"] for record in self._accounts.values())

    def count(self, table: str) -> int:
        with self._lock:
            if table == ACCOUNTS_TABLE:
                return len(self._accounts)
            if table == TRANSACTIONS_TABLE:
                return len(self._transactions)
            raise ValueError(f"Unknown table: {table}")

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        with self._lock:
            if self._depth == 0:
                self._snapshot = (
                    copy.deepcopy(self._accounts),
                    len(self._transactions),
                    self._next_transaction_id
                )
            self._depth += 1

    def commit(self) -> None:
        with self._lock:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            self._depth -= 1
            if self._depth == 0 and self._snapshot is not None:
                accounts, transaction_count, next_id = self._snapshot
                self._accounts = accounts
                for removed in self._transactions[transaction_count:]:
                    self._operation_keys.discard((removed["operation_id"], removed["account_id"]))
                del self._transactions[transaction_count:]
                self._next_transaction_id = next_id
                self._snapshot = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self._depth = 0

        try:
            # Autocommit mode; atomic() issues BEGIN IMMEDIATE itself
            self._connection = sqlite3.connect(
                self.db_path, timeout=timeout,
                check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row

        with self._lock, self._translate_errors("initialize store"):
            self._connection.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
            self._connection.execute("PRAGMA foreign_keys = ON")
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create tables and indexes if missing"""
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {ACCOUNTS_TABLE} (
                id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                balance INTEGER NOT NULL CHECK (balance >= 0),
                created_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {TRANSACTIONS_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                account_id TEXT NOT NULL REFERENCES {ACCOUNTS_TABLE}(id),
                counterparty_id TEXT REFERENCES {ACCOUNTS_TABLE}(id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                timestamp TEXT NOT NULL,
                resulting_balance INTEGER NOT NULL,
                operation_id TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{TRANSACTIONS_TABLE}_account
            ON {TRANSACTIONS_TABLE}(account_id, id)
        """)
        self._connection.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_{TRANSACTIONS_TABLE}_operation
            ON {TRANSACTIONS_TABLE}(operation_id, account_id)
        """)

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Surface sqlite3 failures as StoreUnavailable"""
        if self._connection is None:
            raise StoreUnavailable(f"{operation}: store is closed")
        try:
            yield
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{operation}: {e}") from e

    def insert_account(self, record: Dict[str, Any]) -> None:
        with self._lock:
            if self._connection is None:
                raise StoreUnavailable("insert account: store is closed")
            try:
                self._connection.execute(f"""
                    INSERT INTO {ACCOUNTS_TABLE} (id, display_name, balance, created_at)
                    VALUES (?, ?, ?, ?)
                """, (record["id"], record["display_name"], record["balance"],
                      record["created_at"]))
            except sqlite3.IntegrityError as e:
                # Only key violations mean the id is taken
                if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
                    raise DuplicateAccount(record["id"]) from e
                raise StoreUnavailable(f"insert account: {e}") from e
            except sqlite3.Error as e:
                raise StoreUnavailable(f"insert account: {e}") from e

    def load_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self._translate_errors("load account"):
            cursor = self._connection.execute(f"""
                SELECT id, display_name, balance, created_at
                FROM {ACCOUNTS_TABLE} WHERE id = ?
            """, (account_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def load_accounts(self) -> List[Dict[str, Any]]:
        with self._lock, self._translate_errors("load accounts"):
            cursor = self._connection.execute(f"""
                SELECT id, display_name, balance, created_at
                FROM {ACCOUNTS_TABLE} ORDER BY id
            """)
            return [dict(row) for row in cursor.fetchall()]

    def update_balance(self, account_id: str, balance: int) -> None:
        with self._lock, self._translate_errors("update balance"):
            cursor = self._connection.execute(f"""
                UPDATE {ACCOUNTS_TABLE} SET balance = ? WHERE id = ?
            """, (balance, account_id))
            if cursor.rowcount == 0:
                raise AccountNotFound(account_id)

    def append_transaction(self, record: Dict[str, Any]) -> int:
        with self._lock, self._translate_errors("append transaction"):
            cursor = self._connection.execute(f"""
                INSERT INTO {TRANSACTIONS_TABLE}
                    (kind, account_id, counterparty_id, amount, timestamp,
                     resulting_balance, operation_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (record["kind"], record["account_id"], record["counterparty_id"],
                  record["amount"], record["timestamp"], record["resulting_balance"],
                  record["operation_id"]))
            return cursor.lastrowid

    def find_transactions(
        self,
        account_id: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        after_id: int = 0,
        max_id: Optional[int] = None,
        operation_id: Optional[str] = None,
        limit: Optional[int] = None,
        descending: bool = False
    ) -> List[Dict[str, Any]]:
        conditions = []
        params: List[Any] = []

        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if kinds:
            conditions.append(f"kind IN ({', '.join('?' for _ in kinds)})")
            params.extend(kinds)
        if start:
            conditions.append("timestamp >= ?")
            params.append(format_timestamp(start))
        if end:
            conditions.append("timestamp <= ?")
            params.append(format_timestamp(end))
        if after_id:
            conditions.append("id > ?")
            params.append(after_id)
        if max_id is not None:
            conditions.append("id <= ?")
            params.append(max_id)
        if operation_id is not None:
            conditions.append("operation_id = ?")
            params.append(operation_id)

        sql = f"""
            SELECT id, kind, account_id, counterparty_id, amount, timestamp,
                   resulting_balance, operation_id
            FROM {TRANSACTIONS_TABLE}
        """
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY id DESC" if descending else " ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock, self._translate_errors("find transactions"):
            cursor = self._connection.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def latest_transaction_id(self) -> int:
        with self._lock, self._translate_errors("latest transaction id"):
            cursor = self._connection.execute(
                f"SELECT COALESCE(MAX(id), 0) AS max_id FROM {TRANSACTIONS_TABLE}"
            )
            return cursor.fetchone()["max_id"]

    def latest_timestamp(self) -> Optional[str]:
        with self._lock, self._translate_errors("latest timestamp"):
            cursor = self._connection.execute(f"""
                SELECT timestamp FROM {TRANSACTIONS_TABLE} ORDER BY id DESC LIMIT 1
            """)
            row = cursor.fetchone()
            return row["timestamp"] if row else None

    def total_balance(self) -> int:
        with self._lock, self._translate_errors("total balance"):
            cursor = self._connection.execute(
                f"SELECT COALESCE(SUM(balance), 0) AS total FROM {ACCOUNTS_TABLE}"
            )
            return cursor.fetchone()["total"]

    def count(self, table: str) -> int:
        if table not in _TABLES:
            raise ValueError(f"Unknown table: {table}")
        with self._lock, self._translate_errors("count"):
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()["count"]

    def begin_transaction(self) -> None:
        """Start a store transaction, or join the one already open"""
        with self._lock:
            if self._depth == 0:
                with self._translate_errors("begin transaction"):
                    self._connection.execute("BEGIN IMMEDIATE")
            self._depth += 1

    def commit(self) -> None:
        """Commit current transaction once the outermost block finishes"""
        with self._lock:
            self._depth -= 1
            if self._depth > 0:
                return
            try:
                with self._translate_errors("commit"):
                    self._connection.execute("COMMIT")
            except StoreUnavailable:
                if self._connection is not None and self._connection.in_transaction:
                    self._connection.rollback()
                raise

    def rollback(self) -> None:
        """Rollback current transaction once the outermost block unwinds"""
        with self._lock:
            self._depth -= 1
            if self._depth > 0:
                return
            if self._connection is not None and self._connection.in_transaction:
                with self._translate_errors("rollback"):
                    self._connection.execute("ROLLBACK")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
