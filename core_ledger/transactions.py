"""
Transaction Log Module

Append-only record of ledger events. Each record belongs to exactly one
account; a transfer is two records (one per leg) sharing a reference.
Amounts are positive minor units and direction is carried only by the
record kind.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface
from .errors import DuplicateRecordError, StoreUnavailable


class TransactionKind(Enum):
    """Kinds of ledger events"""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"

    @property
    def is_transfer(self) -> bool:
        return self in (TransactionKind.TRANSFER_OUT, TransactionKind.TRANSFER_IN)

    @property
    def is_credit(self) -> bool:
        """True when the event adds to the owning account's balance"""
        return self in (TransactionKind.DEPOSIT, TransactionKind.TRANSFER_IN)


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable ledger event
    """
    id: str
    account_id: str
    kind: TransactionKind
    amount: int
    timestamp: datetime
    reference: str
    counterparty_account_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError("Transaction amount must be an integer number of minor units")

        if self.amount <= 0:
            raise ValueError("Transaction amount must be positive")

        if self.kind.is_transfer and not self.counterparty_account_id:
            raise ValueError(f"{self.kind.value} record requires a counterparty account")

        if not self.kind.is_transfer and self.counterparty_account_id:
            raise ValueError(f"{self.kind.value} record cannot have a counterparty account")

        if self.counterparty_account_id == self.account_id:
            raise ValueError("Counterparty must differ from the owning account")

    @classmethod
    def create(
        cls,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        reference: Optional[str] = None,
        counterparty_account_id: Optional[str] = None
    ) -> 'TransactionRecord':
        """Build a new record with a fresh id and the current time"""
        record_id = str(uuid.uuid4())
        return cls(
            id=record_id,
            account_id=account_id,
            kind=kind,
            amount=amount,
            timestamp=datetime.now(timezone.utc),
            reference=reference or f"{kind.value.upper()}-{record_id[:8]}",
            counterparty_account_id=counterparty_account_id
        )

    @property
    def signed_amount(self) -> int:
        """Effect on the owning account's balance"""
        return self.amount if self.kind.is_credit else -self.amount

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'kind': self.kind.value,
            'amount': self.amount,
            'timestamp': self.timestamp.isoformat(),
            'reference': self.reference,
            'counterparty_account_id': self.counterparty_account_id
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransactionRecord':
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            amount=data['amount'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            reference=data['reference'],
            counterparty_account_id=data.get('counterparty_account_id')
        )


class TransactionLog:
    """
    Durable append-only store of transaction records, queryable by account
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_transactions"

        self.storage.create_index(self.table_name, "account_id")
        self.storage.create_index(self.table_name, "reference")

    def append(self, record: TransactionRecord) -> str:
        """
        Append a record to the log

        Returns:
            The record id

        Raises:
            StoreUnavailable: If the record id is already taken or the store fails
        """
        try:
            self.storage.insert(self.table_name, record.id, record.to_dict())
        except DuplicateRecordError:
            raise StoreUnavailable(f"Transaction record {record.id} already exists")
        return record.id

    def get(self, record_id: str) -> Optional[TransactionRecord]:
        data = self.storage.load(self.table_name, record_id)
        if data:
            return TransactionRecord.from_dict(data)
        return None

    def list_by_account(self, account_id: str) -> List[TransactionRecord]:
        """All records for an account in the order they were committed"""
        return [
            TransactionRecord.from_dict(data)
            for data in self.storage.find(self.table_name, {"account_id": account_id})
        ]

    def records_for_reference(self, reference: str) -> List[TransactionRecord]:
        """Both legs of a transfer, or the single record of a deposit/withdrawal"""
        return [
            TransactionRecord.from_dict(data)
            for data in self.storage.find(self.table_name, {"reference": reference})
        ]

    def count(self) -> int:
        return self.storage.count(self.table_name)
