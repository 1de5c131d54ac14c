"""
Ledger Error Kinds

Typed errors raised by the ledger core. Each error carries structured
fields only; turning them into user-facing text is the caller's job.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger core errors"""

    kind = "LedgerError"
    retryable = False

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation of the error"""
        return {"error": self.kind}


class AccountNotFound(LedgerError):
    """No account with the given identifier exists"""

    kind = "AccountNotFound"

    def __init__(self, account_id: str, side: Optional[str] = None):
        self.account_id = account_id
        # "source" or "destination" for transfers
        self.side = side
        super().__init__(account_id)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["account_id"] = self.account_id
        if self.side:
            result["side"] = self.side
        return result


class DuplicateAccount(LedgerError):
    """An account with the given identifier already exists"""

    kind = "DuplicateAccount"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(account_id)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["account_id"] = self.account_id
        return result


class InvalidAmount(LedgerError):
    """Amount is not a positive integer number of minor units"""

    kind = "InvalidAmount"

    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(amount)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["amount"] = self.amount if isinstance(self.amount, int) else str(self.amount)
        return result


class InsufficientFunds(LedgerError):
    """Debit would drive the balance below zero"""

    kind = "InsufficientFunds"

    def __init__(self, account_id: str, balance: int, requested: int):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(account_id, balance, requested)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            "account_id": self.account_id,
            "balance": self.balance,
            "requested": self.requested
        })
        return result


class SameAccount(LedgerError):
    """Transfer source and destination are the same account"""

    kind = "SameAccount"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(account_id)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["account_id"] = self.account_id
        return result


class IdempotencyConflict(LedgerError):
    """Idempotency key was already used for a different operation"""

    kind = "IdempotencyConflict"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(idempotency_key)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["idempotency_key"] = self.idempotency_key
        return result


class StoreUnavailable(LedgerError):
    """The store could not begin, execute or commit a transaction"""

    kind = "StoreUnavailable"
    retryable = True

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason
        return result
