"""
Ledger Engine

Applies deposits, withdrawals and transfers. Every mutation computes the new
balance(s) and appends the records proving the change inside one atomic
store unit, so replaying the log from zero always reproduces the stored
balances.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional
from contextlib import contextmanager
from enum import Enum
import threading
import uuid

from .accounts import AccountRegistry
from .errors import (
    AccountNotFound, IdempotencyConflict, InsufficientFunds, InvalidAmount,
    LedgerError, SameAccount
)
from .storage import StorageInterface, StorageRecord, format_timestamp, parse_timestamp
from .logging_config import get_logger, log_action


class TransactionKind(Enum):
    """Kinds of ledger records"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"

    @property
    def is_transfer(self) -> bool:
        return self in (TransactionKind.TRANSFER_OUT, TransactionKind.TRANSFER_IN)

    @property
    def is_credit(self) -> bool:
        """Credits raise the balance of the affected account"""
        return self in (TransactionKind.DEPOSIT, TransactionKind.TRANSFER_IN)


@dataclass(frozen=True)
class Transaction(StorageRecord):
    """
    Immutable ledger record

    The amount is always positive; direction comes from the kind.
    """
    id: int
    kind: TransactionKind
    account_id: str
    counterparty_id: Optional[str]
    amount: int
    timestamp: datetime
    resulting_balance: int
    operation_id: str

    @property
    def signed_amount(self) -> int:
        """Effect of this record on the affected account's balance"""
        return self.amount if self.kind.is_credit else -self.amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Create instance from a stored row"""
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = parse_timestamp(timestamp)
        return cls(
            id=int(data['id']),
            kind=TransactionKind(data['kind']),
            account_id=data['account_id'],
            counterparty_id=data.get('counterparty_id'),
            amount=int(data['amount']),
            timestamp=timestamp,
            resulting_balance=int(data['resulting_balance']),
            operation_id=data['operation_id']
        )


@dataclass(frozen=True)
class TransferReceipt:
    """The linked pair of records produced by one transfer"""
    debit: Transaction   # TransferOut on the source
    credit: Transaction  # TransferIn on the destination

    @property
    def operation_id(self) -> str:
        return self.debit.operation_id

    @property
    def amount(self) -> int:
        return self.debit.amount

    @property
    def timestamp(self) -> datetime:
        return self.debit.timestamp


class AccountLockManager:
    """
    Per-account locks, always acquired in ascending account id order so two
    transfers over the same pair in opposite directions cannot deadlock
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, *account_ids: str) -> Iterator[List[str]]:
        """Hold the locks of all given accounts for the duration of the block"""
        ordered = sorted(set(account_ids))
        acquired = []
        try:
            for account_id in ordered:
                lock = self._lock_for(account_id)
                lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


# Largest value a 64-bit SQLite INTEGER column holds
MAX_AMOUNT = 2 ** 63 - 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEngine:
    """
    The only writer of balances and transaction records
    """

    def __init__(
        self,
        storage: StorageInterface,
        registry: Optional[AccountRegistry] = None,
        lock_manager: Optional[AccountLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.registry = registry or AccountRegistry(storage)
        self.locks = lock_manager or AccountLockManager()
        self._clock = clock or _utc_now
        self.logger = get_logger("ewallet.ledger")

    def deposit(
        self,
        account_id: str,
        amount: int,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Credit an account

        Args:
            account_id: Account receiving the funds
            amount: Positive amount in minor units
            idempotency_key: Optional key; repeating it returns the original record

        Returns:
            The Deposit record

        Raises:
            InvalidAmount: If amount is not a positive integer, or the new
                balance would exceed MAX_AMOUNT
            AccountNotFound: If the account does not exist
        """
        try:
            self._validate_amount(amount)
            with self.locks.hold(account_id), self.storage.atomic():
                existing = self._existing_operation(
                    idempotency_key, TransactionKind.DEPOSIT, account_id, None, amount
                )
                if existing:
                    return existing[0]

                balance = self._load_balance(account_id)
                new_balance = self._check_credit(balance, amount)
                timestamp = self._next_timestamp()
                self.storage.update_balance(account_id, new_balance)
                record = self._append(
                    TransactionKind.DEPOSIT, account_id, None, amount,
                    timestamp, new_balance, idempotency_key or self._new_operation_id()
                )
        except LedgerError as e:
            self._log_rejection("deposit", account_id, amount, e, idempotency_key)
            raise

        self._log_applied("deposit", record)
        return record

    def withdraw(
        self,
        account_id: str,
        amount: int,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Debit an account

        Raises:
            InvalidAmount: If amount is not a positive integer
            AccountNotFound: If the account does not exist
            InsufficientFunds: If the balance is smaller than the amount
        """
        try:
            self._validate_amount(amount)
            with self.locks.hold(account_id), self.storage.atomic():
                existing = self._existing_operation(
                    idempotency_key, TransactionKind.WITHDRAWAL, account_id, None, amount
                )
                if existing:
                    return existing[0]

                balance = self._load_balance(account_id)
                if balance - amount < 0:
                    raise InsufficientFunds(account_id, balance, amount)

                new_balance = balance - amount
                timestamp = self._next_timestamp()
                self.storage.update_balance(account_id, new_balance)
                record = self._append(
                    TransactionKind.WITHDRAWAL, account_id, None, amount,
                    timestamp, new_balance, idempotency_key or self._new_operation_id()
                )
        except LedgerError as e:
            self._log_rejection("withdraw", account_id, amount, e, idempotency_key)
            raise

        self._log_applied("withdraw", record)
        return record

    def transfer(
        self,
        from_id: str,
        to_id: str,
        amount: int,
        idempotency_key: Optional[str] = None
    ) -> TransferReceipt:
        """
        Move funds between two accounts

        Both balance updates and the TransferOut/TransferIn pair are written
        in one atomic unit and share a timestamp and operation id.

        Raises:
            InvalidAmount: If amount is not a positive integer
            SameAccount: If source and destination are the same account
            AccountNotFound: If either side is missing (see its ``side``)
            InsufficientFunds: If the source balance is smaller than the amount
        """
        try:
            self._validate_amount(amount)
            if from_id == to_id:
                raise SameAccount(from_id)

            # Accounts are never deleted, so existence can be settled before locking
            self._require_account(from_id, "source")
            self._require_account(to_id, "destination")

            with self.locks.hold(from_id, to_id), self.storage.atomic():
                existing = self._existing_operation(
                    idempotency_key, TransactionKind.TRANSFER_OUT, from_id, to_id, amount
                )
                if existing:
                    return self._receipt_from(existing)

                source_balance = self._load_balance(from_id, "source")
                destination_balance = self._load_balance(to_id, "destination")
                if source_balance - amount < 0:
                    raise InsufficientFunds(from_id, source_balance, amount)

                operation_id = idempotency_key or self._new_operation_id()
                timestamp = self._next_timestamp()
                new_source = source_balance - amount
                new_destination = self._check_credit(destination_balance, amount)

                self.storage.update_balance(from_id, new_source)
                self.storage.update_balance(to_id, new_destination)
                debit = self._append(
                    TransactionKind.TRANSFER_OUT, from_id, to_id, amount,
                    timestamp, new_source, operation_id
                )
                credit = self._append(
                    TransactionKind.TRANSFER_IN, to_id, from_id, amount,
                    timestamp, new_destination, operation_id
                )
        except LedgerError as e:
            self._log_rejection(
                "transfer", from_id, amount, e, idempotency_key, counterparty_id=to_id
            )
            raise

        receipt = TransferReceipt(debit=debit, credit=credit)
        self._log_applied("transfer", debit, credit_id=credit.id)
        return receipt

    @staticmethod
    def _validate_amount(amount: Any) -> None:
        # bool is an int subclass but never a meaningful amount
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(amount)
        if amount <= 0 or amount > MAX_AMOUNT:
            raise InvalidAmount(amount)

    @staticmethod
    def _check_credit(balance: int, amount: int) -> int:
        """Balance after a credit, refused when it leaves the storable range"""
        new_balance = balance + amount
        if new_balance > MAX_AMOUNT:
            raise InvalidAmount(amount)
        return new_balance

    @staticmethod
    def _new_operation_id() -> str:
        return uuid.uuid4().hex

    def _require_account(self, account_id: str, side: Optional[str] = None) -> None:
        if self.storage.load_account(account_id) is None:
            raise AccountNotFound(account_id, side)

    def _load_balance(self, account_id: str, side: Optional[str] = None) -> int:
        """Read the current balance inside the caller's atomic unit"""
        record = self.storage.load_account(account_id)
        if record is None:
            raise AccountNotFound(account_id, side)
        return int(record["balance"])

    def _next_timestamp(self) -> datetime:
        """Clock reading clamped so timestamps never decrease along the log"""
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        latest = self.storage.latest_timestamp()
        if latest:
            latest_time = parse_timestamp(latest)
            if latest_time > now:
                return latest_time
        return now

    def _append(
        self,
        kind: TransactionKind,
        account_id: str,
        counterparty_id: Optional[str],
        amount: int,
        timestamp: datetime,
        resulting_balance: int,
        operation_id: str
    ) -> Transaction:
        record = {
            "kind": kind.value,
            "account_id": account_id,
            "counterparty_id": counterparty_id,
            "amount": amount,
            "timestamp": format_timestamp(timestamp),
            "resulting_balance": resulting_balance,
            "operation_id": operation_id
        }
        record["id"] = self.storage.append_transaction(record)
        return Transaction.from_dict(record)

    def _existing_operation(
        self,
        idempotency_key: Optional[str],
        kind: TransactionKind,
        account_id: str,
        counterparty_id: Optional[str],
        amount: int
    ) -> Optional[List[Transaction]]:
        """Records already written under this idempotency key, if any"""
        if idempotency_key is None:
            return None

        rows = self.storage.find_transactions(operation_id=idempotency_key)
        if not rows:
            return None

        records = [Transaction.from_dict(row) for row in rows]
        first = records[0]
        if (first.kind != kind or first.account_id != account_id or
                first.counterparty_id != counterparty_id or first.amount != amount):
            raise IdempotencyConflict(idempotency_key)

        log_action(
            self.logger, "info", "Idempotent replay, nothing applied",
            action="replay_operation", resource=f"operation:{idempotency_key}",
            correlation_id=idempotency_key,
            extra={"transaction_ids": [r.id for r in records]}
        )
        return records

    @staticmethod
    def _receipt_from(records: List[Transaction]) -> TransferReceipt:
        by_kind: Dict[TransactionKind, Transaction] = {r.kind: r for r in records}
        return TransferReceipt(
            debit=by_kind[TransactionKind.TRANSFER_OUT],
            credit=by_kind[TransactionKind.TRANSFER_IN]
        )

    def _log_applied(self, action: str, record: Transaction, **extra: Any) -> None:
        details = {
            "transaction_id": record.id,
            "kind": record.kind.value,
            "account_id": record.account_id,
            "counterparty_id": record.counterparty_id,
            "amount": record.amount,
            "resulting_balance": record.resulting_balance,
            "operation_id": record.operation_id
        }
        details.update(extra)
        log_action(
            self.logger, "info", f"{action.capitalize()} applied",
            action=action, resource=f"account:{record.account_id}",
            correlation_id=record.operation_id, extra=details
        )

    def _log_rejection(
        self,
        action: str,
        account_id: str,
        amount: Any,
        error: LedgerError,
        idempotency_key: Optional[str] = None,
        **extra: Any
    ) -> None:
        details: Dict[str, Any] = {"amount": str(amount)}
        details.update(extra)
        details.update(error.to_dict())
        level = "error" if error.retryable else "warning"
        log_action(
            self.logger, level, f"{action.capitalize()} rejected: {error.kind}",
            action=action, resource=f"account:{account_id}",
            correlation_id=idempotency_key, extra=details
        )
