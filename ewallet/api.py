"""
FastAPI REST API Module

Thin HTTP presentation layer over the command dispatcher. Request bodies are
checked syntactically by pydantic; semantic checks stay in the ledger core
and come back as typed errors mapped onto status codes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field
import uvicorn

from .accounts import Account
from .commands import (
    CommandDispatcher, CommandResult, CreateAccount, Deposit, GetBalance,
    GetHistory, Transfer, WalletSystem, Withdraw
)
from .config import get_config
from .errors import (
    AccountNotFound, DuplicateAccount, IdempotencyConflict, InsufficientFunds,
    InvalidAmount, LedgerError, SameAccount, StoreUnavailable
)
from .history import HistoryFilter
from .ledger import Transaction, TransferReceipt
from .logging_config import setup_logging


ERROR_STATUS = {
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    DuplicateAccount: status.HTTP_409_CONFLICT,
    IdempotencyConflict: status.HTTP_409_CONFLICT,
    InvalidAmount: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SameAccount: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InsufficientFunds: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# Pydantic models for API requests
class CreateAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1, description="Unique account identifier")
    display_name: str


class DepositRequest(BaseModel):
    account_id: str
    amount: int = Field(..., description="Amount in minor currency units")
    idempotency_key: Optional[str] = None


class WithdrawRequest(BaseModel):
    account_id: str
    amount: int = Field(..., description="Amount in minor currency units")
    idempotency_key: Optional[str] = None


class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: int = Field(..., description="Amount in minor currency units")
    idempotency_key: Optional[str] = None


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "display_name": account.display_name,
        "balance": account.balance,
        "created_at": account.created_at.isoformat()
    }


def transaction_to_dict(record: Transaction) -> Dict[str, Any]:
    return {
        "id": record.id,
        "kind": record.kind.value,
        "account_id": record.account_id,
        "counterparty_id": record.counterparty_id,
        "amount": record.amount,
        "timestamp": record.timestamp.isoformat(),
        "resulting_balance": record.resulting_balance,
        "operation_id": record.operation_id
    }


def receipt_to_dict(receipt: TransferReceipt) -> Dict[str, Any]:
    return {
        "operation_id": receipt.operation_id,
        "transfer_out": transaction_to_dict(receipt.debit),
        "transfer_in": transaction_to_dict(receipt.credit)
    }


def unwrap(result: CommandResult) -> Any:
    """Return the command value or raise the matching HTTP error"""
    if result.ok:
        return result.value
    error = result.error
    status_code = ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=status_code, detail=error.to_dict())


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Global wallet system instance, created on first use
_wallet_system: Optional[WalletSystem] = None


def get_wallet_system() -> WalletSystem:
    global _wallet_system
    if _wallet_system is None:
        _wallet_system = WalletSystem()
    return _wallet_system


def get_dispatcher(system: WalletSystem = Depends(get_wallet_system)) -> CommandDispatcher:
    return CommandDispatcher(system)


app = FastAPI(
    title="E-Wallet Ledger API",
    description="Accounts, deposits, withdrawals and transfers over an append-only ledger",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Account Endpoints
@app.post("/accounts", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher)
):
    """Register a new account with a zero balance"""
    account = unwrap(dispatcher.dispatch(
        CreateAccount(account_id=request.account_id, display_name=request.display_name)
    ))
    return account_to_dict(account)


@app.get("/accounts/{account_id}")
def get_account(
    account_id: str,
    system: WalletSystem = Depends(get_wallet_system)
):
    """Get account details"""
    try:
        account = system.registry.get_account(account_id)
    except LedgerError as e:
        unwrap(CommandResult(error=e))
    return account_to_dict(account)


@app.get("/accounts/{account_id}/balance")
def get_balance(
    account_id: str,
    dispatcher: CommandDispatcher = Depends(get_dispatcher)
):
    """Get the stored balance of an account"""
    balance = unwrap(dispatcher.dispatch(GetBalance(account_id=account_id)))
    return {"account_id": account_id, "balance": balance}


@app.get("/accounts/{account_id}/transactions")
def get_account_transactions(
    account_id: str,
    kind: Optional[List[str]] = Query(None),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    dispatcher: CommandDispatcher = Depends(get_dispatcher)
):
    """Get transaction history for account, oldest first"""
    try:
        history_filter = HistoryFilter(kinds=kind, start=_as_utc(start), end=_as_utc(end))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "InvalidFilter", "reason": str(e)}
        )

    history = unwrap(dispatcher.dispatch(
        GetHistory(account_id=account_id, filter=history_filter)
    ))
    try:
        transactions = [transaction_to_dict(record) for record in history]
    except LedgerError as e:
        unwrap(CommandResult(error=e))
    return {"account_id": account_id, "transactions": transactions}


# Transaction Endpoints
@app.post("/transactions/deposit", status_code=status.HTTP_201_CREATED)
def deposit(
    request: DepositRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher)
):
    """Make a deposit"""
    record = unwrap(dispatcher.dispatch(Deposit(
        account_id=request.account_id,
        amount=request.amount,
        idempotency_key=request.idempotency_key
    )))
    return transaction_to_dict(record)


@app.post("/transactions/withdraw", status_code=status.HTTP_201_CREATED)
def withdraw(
    request: WithdrawRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher)
):
    """Make a withdrawal"""
    record = unwrap(dispatcher.dispatch(Withdraw(
        account_id=request.account_id,
        amount=request.amount,
        idempotency_key=request.idempotency_key
    )))
    return transaction_to_dict(record)


@app.post("/transactions/transfer", status_code=status.HTTP_201_CREATED)
def transfer(
    request: TransferRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher)
):
    """Make a transfer between accounts"""
    receipt = unwrap(dispatcher.dispatch(Transfer(
        from_id=request.from_account_id,
        to_id=request.to_account_id,
        amount=request.amount,
        idempotency_key=request.idempotency_key
    )))
    return receipt_to_dict(receipt)


@app.get("/ledger/integrity")
def verify_ledger_integrity(system: WalletSystem = Depends(get_wallet_system)):
    """Replay the log against stored balances"""
    try:
        return system.history.verify_integrity()
    except LedgerError as e:
        unwrap(CommandResult(error=e))


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format)
    uvicorn.run(
        "ewallet.api:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
