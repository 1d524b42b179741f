"""
Ledger Engine

The only component that changes balances. Every operation runs as one
atomic unit over the Account Store and the Transaction Log: the balance
change and its transaction record(s) are committed together or not at all.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import uuid

from .accounts import AccountStore
from .transactions import TransactionLog, TransactionRecord, TransactionKind
from .errors import (
    AccountNotFound, InvalidTransfer, LedgerError, RecipientNotFound,
)
from .money import validate_amount
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a committed transfer"""
    sender_balance: int
    recipient_balance: int
    reference: str
    records: Tuple[TransactionRecord, TransactionRecord]


@dataclass(frozen=True)
class AccountHistory:
    """Transaction records of one account together with its balance"""
    account_id: str
    balance: int
    transactions: List[TransactionRecord]


class LedgerEngine:
    """
    Deposit, withdraw and transfer as atomic balance-mutating operations
    """

    def __init__(
        self,
        accounts: AccountStore,
        transactions: TransactionLog,
        max_transaction_amount: Optional[int] = None
    ):
        if accounts.storage is not transactions.storage:
            raise ValueError("Account store and transaction log must share one storage backend")

        self.accounts = accounts
        self.transactions = transactions
        self.storage = accounts.storage
        self.max_transaction_amount = max_transaction_amount
        self.logger = get_logger("core_ledger.ledger")

    def deposit(self, account_id: str, amount: int) -> int:
        """Credit an account; returns the new balance"""
        return self._post(account_id, TransactionKind.DEPOSIT, amount)

    def withdraw(self, account_id: str, amount: int) -> int:
        """Debit an account; returns the new balance"""
        return self._post(account_id, TransactionKind.WITHDRAW, amount)

    def _post(self, account_id: str, kind: TransactionKind, amount: int) -> int:
        """Apply a single-account deposit or withdrawal and record it"""
        try:
            validate_amount(amount, self.max_transaction_amount)
            delta = amount if kind.is_credit else -amount

            with self.accounts.locked(account_id):
                with self.storage.atomic():
                    new_balance = self.accounts.apply_balance_delta(account_id, delta)
                    record = TransactionRecord.create(account_id, kind, amount)
                    self.transactions.append(record)
        except LedgerError as e:
            self._log_rejected(kind.value, e, account_id=account_id, amount=amount)
            raise

        log_action(
            self.logger, "info", f"{kind.value} committed",
            action=kind.value, resource=f"account:{account_id}",
            extra={
                "record_id": record.id,
                "amount": amount,
                "balance": new_balance
            }
        )
        return new_balance

    def transfer(self, sender_account_id: str, recipient_account_id: str, amount: int) -> TransferResult:
        """
        Move funds between two accounts

        Both accounts are locked in ascending id order for the duration of
        the unit, so concurrent transfers in opposite directions cannot
        deadlock. The debit, the credit and both records commit together.

        Raises:
            InvalidAmount: If amount is not a positive integer
            InvalidTransfer: If sender and recipient are the same or missing
            RecipientNotFound: If the recipient account does not exist
            AccountNotFound: If the sender account does not exist
            InsufficientFunds: If the sender cannot cover the amount
        """
        try:
            validate_amount(amount, self.max_transaction_amount)

            if not sender_account_id or not recipient_account_id:
                raise InvalidTransfer("Sender and recipient accounts are required")

            if sender_account_id == recipient_account_id:
                raise InvalidTransfer("Cannot transfer to the same account", account_id=sender_account_id)

            if not self.accounts.exists(recipient_account_id):
                raise RecipientNotFound(
                    f"Recipient account {recipient_account_id} not found",
                    account_id=recipient_account_id
                )

            reference = f"TRANSFER-{uuid.uuid4()}"
            with self.accounts.locked(sender_account_id, recipient_account_id):
                with self.storage.atomic():
                    sender_balance = self.accounts.apply_balance_delta(sender_account_id, -amount)
                    try:
                        recipient_balance = self.accounts.apply_balance_delta(recipient_account_id, amount)
                    except AccountNotFound:
                        raise RecipientNotFound(
                            f"Recipient account {recipient_account_id} not found",
                            account_id=recipient_account_id
                        )

                    out_record = TransactionRecord.create(
                        sender_account_id, TransactionKind.TRANSFER_OUT, amount,
                        reference=reference, counterparty_account_id=recipient_account_id
                    )
                    in_record = TransactionRecord.create(
                        recipient_account_id, TransactionKind.TRANSFER_IN, amount,
                        reference=reference, counterparty_account_id=sender_account_id
                    )
                    self.transactions.append(out_record)
                    self.transactions.append(in_record)
        except LedgerError as e:
            self._log_rejected(
                "transfer", e, account_id=sender_account_id, amount=amount,
                recipient_account_id=recipient_account_id
            )
            raise

        log_action(
            self.logger, "info", "transfer committed",
            action="transfer", resource=f"account:{sender_account_id}",
            extra={
                "reference": reference,
                "recipient_account_id": recipient_account_id,
                "amount": amount,
                "sender_balance": sender_balance,
                "recipient_balance": recipient_balance
            }
        )
        return TransferResult(
            sender_balance=sender_balance,
            recipient_balance=recipient_balance,
            reference=reference,
            records=(out_record, in_record)
        )

    def history(self, account_id: str) -> AccountHistory:
        """
        Transaction records of an account, oldest first, with its balance

        The account lock is held while reading so the balance always equals
        the sum of the listed records.
        """
        with self.accounts.locked(account_id):
            account = self.accounts.get(account_id)
            records = self.transactions.list_by_account(account_id)
        return AccountHistory(account_id=account_id, balance=account.balance, transactions=records)

    def replay_balance(self, account_id: str) -> int:
        """Recompute a balance from the log alone"""
        return sum(record.signed_amount for record in self.transactions.list_by_account(account_id))

    def verify_account(self, account_id: str) -> bool:
        """Check that the stored balance matches the log"""
        history = self.history(account_id)
        return history.balance == sum(record.signed_amount for record in history.transactions)

    def _log_rejected(self, operation: str, error: LedgerError, **extra) -> None:
        log_action(
            self.logger, "warning", f"{operation} rejected: {error.message}",
            action=f"{operation}_rejected", resource=f"account:{extra.get('account_id')}",
            extra={"error": error.code, **extra}
        )
