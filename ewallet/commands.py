"""
Command Dispatcher

The interface the presentation layer talks to. Each command maps onto one
ledger core call and comes back as a CommandResult holding either the value
or the typed error; nothing here formats human-readable text.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .accounts import AccountRegistry
from .config import WalletConfig, get_config
from .errors import LedgerError
from .history import HistoryFilter, HistoryReader
from .ledger import LedgerEngine
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .logging_config import get_logger


class WalletSystem:
    """Ledger core with all components initialized over one store"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        settings: Optional[WalletConfig] = None
    ):
        self.config = settings or get_config()
        if storage is None:
            storage = SQLiteStorage(
                self.config.database_path,
                timeout=self.config.store_timeout_seconds
            )
        self.storage = storage
        self.registry = AccountRegistry(self.storage)
        self.ledger = LedgerEngine(self.storage, self.registry)
        self.history = HistoryReader(
            self.storage, self.registry, page_size=self.config.history_page_size
        )

    @classmethod
    def in_memory(cls, settings: Optional[WalletConfig] = None) -> 'WalletSystem':
        return cls(InMemoryStorage(), settings)

    def close(self) -> None:
        self.storage.close()


@dataclass(frozen=True)
class CreateAccount:
    account_id: str
    display_name: str


@dataclass(frozen=True)
class Deposit:
    account_id: str
    amount: int
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class Withdraw:
    account_id: str
    amount: int
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class Transfer:
    from_id: str
    to_id: str
    amount: int
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class GetBalance:
    account_id: str


@dataclass(frozen=True)
class GetHistory:
    account_id: str
    filter: Optional[HistoryFilter] = None


@dataclass(frozen=True)
class CommandResult:
    """Either a value or a typed ledger error"""
    value: Any = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the value, raising the carried error if there is one"""
        if self.error is not None:
            raise self.error
        return self.value


class CommandDispatcher:
    """
    Maps discrete commands onto the ledger core
    """

    def __init__(self, system: WalletSystem):
        self.system = system
        self.logger = get_logger("ewallet.commands")
        self._handlers: Dict[type, Callable[[Any], Any]] = {
            CreateAccount: self._create_account,
            Deposit: self._deposit,
            Withdraw: self._withdraw,
            Transfer: self._transfer,
            GetBalance: self._get_balance,
            GetHistory: self._get_history,
        }

    def dispatch(self, command: Any) -> CommandResult:
        """
        Execute a command

        Returns:
            CommandResult with the command's value, or with the LedgerError
            that stopped it

        Raises:
            TypeError: If the command type is not one of the six core commands
        """
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {type(command).__name__}")

        try:
            return CommandResult(value=handler(command))
        except LedgerError as e:
            self.logger.debug("Command %s failed with %s", type(command).__name__, e.kind)
            return CommandResult(error=e)

    def _create_account(self, command: CreateAccount):
        return self.system.registry.create_account(command.account_id, command.display_name)

    def _deposit(self, command: Deposit):
        return self.system.ledger.deposit(
            command.account_id, command.amount, idempotency_key=command.idempotency_key
        )

    def _withdraw(self, command: Withdraw):
        return self.system.ledger.withdraw(
            command.account_id, command.amount, idempotency_key=command.idempotency_key
        )

    def _transfer(self, command: Transfer):
        return self.system.ledger.transfer(
            command.from_id, command.to_id, command.amount,
            idempotency_key=command.idempotency_key
        )

    def _get_balance(self, command: GetBalance):
        return self.system.history.current_balance(command.account_id)

    def _get_history(self, command: GetHistory):
        return self.system.history.history_for(command.account_id, command.filter)
