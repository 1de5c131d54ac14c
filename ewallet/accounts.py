"""
Account Management Module

Registers wallet accounts and looks them up by identifier. Balances are
only ever changed by the ledger engine; accounts are never deleted so that
historical transactions keep pointing at something real.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List

from .errors import AccountNotFound
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .logging_config import get_logger, log_action


@dataclass
class Account(StorageRecord):
    """Wallet account holding a balance in integer minor units"""
    id: str
    display_name: str
    balance: int
    created_at: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from a stored row"""
        created_at = data['created_at']
        if isinstance(created_at, str):
            created_at = parse_timestamp(created_at)
        return cls(
            id=data['id'],
            display_name=data['display_name'],
            balance=int(data['balance']),
            created_at=created_at
        )


class AccountRegistry:
    """
    Creates and looks up accounts, enforcing identifier uniqueness
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("ewallet.accounts")

    def create_account(self, account_id: str, display_name: str) -> Account:
        """
        Create a new account with a zero balance

        Args:
            account_id: Unique, immutable account identifier
            display_name: Human-readable label

        Returns:
            Created Account object

        Raises:
            ValueError: If the id is blank or the display name is not text
            DuplicateAccount: If the identifier is already registered
        """
        if not isinstance(account_id, str) or not account_id.strip():
            raise ValueError("Account id must be a non-empty string")
        if not isinstance(display_name, str):
            raise ValueError("Display name must be a string")

        account = Account(
            id=account_id,
            display_name=display_name,
            balance=0,
            created_at=datetime.now(timezone.utc)
        )

        with self.storage.atomic():
            self.storage.insert_account(account.to_dict())

        log_action(
            self.logger, "info", "Account created",
            action="create_account", resource=f"account:{account_id}",
            extra={"account_id": account_id, "display_name": display_name}
        )

        return account

    def get_account(self, account_id: str) -> Account:
        """
        Get account by ID

        Raises:
            AccountNotFound: If no account has this identifier
        """
        account_dict = self.storage.load_account(account_id)
        if account_dict is None:
            raise AccountNotFound(account_id)
        return Account.from_dict(account_dict)

    def account_exists(self, account_id: str) -> bool:
        """Check if an account is registered"""
        return self.storage.load_account(account_id) is not None

    def list_accounts(self) -> List[Account]:
        """Get all accounts ordered by identifier"""
        return [Account.from_dict(data) for data in self.storage.load_accounts()]
