"""
History Reader

Read-only queries over the transaction log: per-account history with
kind and time filters, balance lookups, and a replay audit that checks the
stored balances against the log.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Union

from .accounts import AccountRegistry
from .ledger import Transaction, TransactionKind
from .storage import StorageInterface
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class HistoryFilter:
    """Optional narrowing of a history query; time bounds are inclusive"""
    kinds: Optional[FrozenSet[TransactionKind]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.kinds is not None:
            kinds = frozenset(TransactionKind(kind) for kind in self.kinds)
            if not kinds:
                raise ValueError("History filter kinds must not be empty; use None for all kinds")
            object.__setattr__(self, 'kinds', kinds)
        if self.start and self.end and self.start > self.end:
            raise ValueError("History filter start must not be after end")

    @classmethod
    def of_kinds(cls, *kinds: Union[TransactionKind, str]) -> 'HistoryFilter':
        return cls(kinds=frozenset(TransactionKind(kind) for kind in kinds))


class TransactionHistory:
    """
    Lazy, finite and restartable sequence of records in ascending id order

    Each iteration pages through the store and stops at the highest record
    id that existed when the iteration began, so records appended while
    iterating are not picked up and every operation is seen whole or not at
    all.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_id: Optional[str] = None,
        history_filter: Optional[HistoryFilter] = None,
        page_size: int = 100
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.storage = storage
        self.account_id = account_id
        self.filter = history_filter or HistoryFilter()
        self.page_size = page_size

    def __iter__(self) -> Iterator[Transaction]:
        upper_id = self.storage.latest_transaction_id()
        kinds = sorted(kind.value for kind in self.filter.kinds) if self.filter.kinds else None
        after_id = 0

        while True:
            rows = self.storage.find_transactions(
                account_id=self.account_id,
                kinds=kinds,
                start=self.filter.start,
                end=self.filter.end,
                after_id=after_id,
                max_id=upper_id,
                limit=self.page_size
            )
            for row in rows:
                yield Transaction.from_dict(row)
            if len(rows) < self.page_size:
                return
            after_id = rows[-1]["id"]

    def to_list(self) -> List[Transaction]:
        return list(self)


class HistoryReader:
    """
    Read-only view over accounts and the transaction log
    """

    def __init__(
        self,
        storage: StorageInterface,
        registry: Optional[AccountRegistry] = None,
        page_size: int = 100
    ):
        self.storage = storage
        self.registry = registry or AccountRegistry(storage)
        self.page_size = page_size
        self.logger = get_logger("ewallet.history")

    def history_for(
        self,
        account_id: str,
        history_filter: Optional[HistoryFilter] = None
    ) -> TransactionHistory:
        """
        Get the transaction history of an account

        Args:
            account_id: Account to read
            history_filter: Optional kind and time-range filter

        Returns:
            TransactionHistory that can be iterated any number of times

        Raises:
            AccountNotFound: If the account does not exist
        """
        self.registry.get_account(account_id)
        return TransactionHistory(self.storage, account_id, history_filter, self.page_size)

    def current_balance(self, account_id: str) -> int:
        """Stored balance of an account"""
        return self.registry.get_account(account_id).balance

    def recent(self, account_id: str, limit: int = 10) -> List[Transaction]:
        """Most recent records of an account, newest first"""
        self.registry.get_account(account_id)
        rows = self.storage.find_transactions(
            account_id=account_id, limit=limit, descending=True
        )
        return [Transaction.from_dict(row) for row in rows]

    def replay_balance(self, account_id: str) -> int:
        """Balance obtained by folding the account's history from zero"""
        return sum(record.signed_amount for record in self.history_for(account_id))

    def total_balance(self) -> int:
        """Sum of all stored balances"""
        return self.storage.total_balance()

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Replay the whole log against the stored balances

        Checks that every account's balance equals the fold of its records,
        that each record's cached resulting balance matches the running fold,
        that every TransferOut has exactly one matching TransferIn, and that
        the sum of balances equals deposits minus withdrawals.

        Returns:
            Dictionary with integrity check results
        """
        result: Dict[str, Any] = {
            'valid': True,
            'accounts_checked': 0,
            'transactions_checked': 0,
            'balance_mismatches': [],
            'resulting_balance_breaks': [],
            'unpaired_transfers': [],
            'total_balance': 0,
            'net_flow': 0
        }

        with self.storage.snapshot():
            accounts = self.registry.list_accounts()
            running = {account.id: 0 for account in accounts}
            transfers_out: Dict[str, Transaction] = {}
            transfers_in: Dict[str, Transaction] = {}
            net_flow = 0

            for record in TransactionHistory(self.storage, page_size=self.page_size):
                result['transactions_checked'] += 1
                balance = running.get(record.account_id, 0) + record.signed_amount
                running[record.account_id] = balance

                if balance != record.resulting_balance:
                    result['resulting_balance_breaks'].append({
                        'transaction_id': record.id,
                        'account_id': record.account_id,
                        'expected': balance,
                        'recorded': record.resulting_balance
                    })

                if record.kind == TransactionKind.DEPOSIT:
                    net_flow += record.amount
                elif record.kind == TransactionKind.WITHDRAWAL:
                    net_flow -= record.amount
                elif record.kind == TransactionKind.TRANSFER_OUT:
                    transfers_out[record.operation_id] = record
                else:
                    transfers_in[record.operation_id] = record

        for account in accounts:
            replayed = running.get(account.id, 0)
            if replayed != account.balance:
                result['balance_mismatches'].append({
                    'account_id': account.id,
                    'stored': account.balance,
                    'replayed': replayed
                })

        for operation_id in sorted(set(transfers_out) | set(transfers_in)):
            debit = transfers_out.get(operation_id)
            credit = transfers_in.get(operation_id)
            if not self._is_matching_pair(debit, credit):
                result['unpaired_transfers'].append({
                    'operation_id': operation_id,
                    'transfer_out_id': debit.id if debit else None,
                    'transfer_in_id': credit.id if credit else None
                })

        result['accounts_checked'] = len(accounts)
        result['total_balance'] = sum(account.balance for account in accounts)
        result['net_flow'] = net_flow
        result['valid'] = (
            not result['balance_mismatches'] and
            not result['resulting_balance_breaks'] and
            not result['unpaired_transfers'] and
            result['total_balance'] == net_flow
        )

        log_action(
            self.logger, "info" if result['valid'] else "error",
            "Ledger integrity verified" if result['valid'] else "Ledger integrity check failed",
            action="verify_integrity", resource="ledger",
            extra={
                'transactions_checked': result['transactions_checked'],
                'accounts_checked': result['accounts_checked']
            }
        )

        return result

    @staticmethod
    def _is_matching_pair(debit: Optional[Transaction], credit: Optional[Transaction]) -> bool:
        if debit is None or credit is None:
            return False
        return (
            debit.amount == credit.amount and
            debit.timestamp == credit.timestamp and
            debit.counterparty_id == credit.account_id and
            credit.counterparty_id == debit.account_id
        )

