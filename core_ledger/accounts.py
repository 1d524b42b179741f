"""
Account Store Module

Durable mapping from account identity to Account. Balances are integers in
minor currency units and may only change through ``apply_balance_delta``,
which serializes concurrent deltas on the same account with a per-account
lock.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, Iterable, List, Optional
from contextlib import contextmanager, ExitStack
import threading
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import (
    AccountAlreadyExists, AccountNotFound, DuplicateRecordError,
    InsufficientFunds, InvalidAmount, ValidationError,
)
from .logging_config import get_logger, log_action


@dataclass
class AccountProfile:
    """Descriptive fields with no bearing on the balance"""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    account_number: Optional[str] = None
    branch_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    father_name: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    account_type: Optional[str] = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'AccountProfile':
        data = data or {}
        unknown = set(data) - set(cls.field_names())
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Account(StorageRecord):
    """Ledger account owned by one registered identity"""
    identity: str
    balance: int = 0
    profile: AccountProfile = field(default_factory=AccountProfile)

    def __post_init__(self):
        if isinstance(self.profile, dict):
            self.profile = AccountProfile.from_dict(self.profile)

        if isinstance(self.balance, bool) or not isinstance(self.balance, int):
            raise ValueError("Account balance must be an integer number of minor units")

        if self.balance < 0:
            raise ValueError(f"Account balance cannot be negative: {self.balance}")

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['profile'] = self.profile.to_dict()
        return result


class AccountStore:
    """
    Stores accounts and owns every balance mutation

    Lock order: account locks (ascending id) are always taken before the
    storage lock.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "accounts"
        self.logger = get_logger("core_ledger.accounts")
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

        self.storage.create_index(self.table_name, "identity", unique=True)

    def create(self, identity: str, initial_profile: Optional[Dict] = None) -> Account:
        """
        Create a new account with a zero balance

        Args:
            identity: Unique human-facing identifier (username)
            initial_profile: Optional profile fields

        Returns:
            Created Account

        Raises:
            AccountAlreadyExists: If the identity is already registered
            ValidationError: If the identity is blank or a profile field is unknown
        """
        identity = self._normalize_identity(identity)
        profile = AccountProfile.from_dict(initial_profile)

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            identity=identity,
            profile=profile
        )

        try:
            self.storage.insert(self.table_name, account.id, account.to_dict())
        except DuplicateRecordError:
            raise AccountAlreadyExists(f"Identity '{identity}' already exists")

        log_action(
            self.logger, "info", "Account created",
            user_id=identity, action="create_account", resource=f"account:{account.id}"
        )
        return account

    def lookup(self, identity: str) -> Account:
        """Get account by identity"""
        identity = self._normalize_identity(identity)
        accounts = self.storage.find(self.table_name, {"identity": identity})
        if not accounts:
            raise AccountNotFound(f"No account for identity '{identity}'")
        return Account.from_dict(accounts[0])

    def get(self, account_id: str) -> Account:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
        return Account.from_dict(data)

    def exists(self, account_id: str) -> bool:
        return self.storage.exists(self.table_name, account_id)

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def apply_balance_delta(self, account_id: str, delta: int,
                            expected_min_balance: int = 0) -> int:
        """
        Atomically add ``delta`` to an account balance

        The read, the minimum-balance check and the write happen while the
        account's mutation lock is held, so two concurrent deltas never both
        start from the same balance.

        Returns:
            The new balance

        Raises:
            InvalidAmount: If delta is not an integer
            AccountNotFound: If the account does not exist
            InsufficientFunds: If the new balance would be below expected_min_balance
            ValueError: If expected_min_balance is negative
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidAmount(f"Balance delta must be an integer, got {type(delta).__name__}")

        if expected_min_balance < 0:
            raise ValueError(
                f"Minimum balance cannot be negative: {expected_min_balance}"
            )

        with self.locked(account_id):
            account = self.get(account_id)
            new_balance = account.balance + delta
            if new_balance < expected_min_balance:
                raise InsufficientFunds(
                    f"Insufficient funds: balance {account.balance}, requested {-delta}",
                    account_id=account_id
                )

            account.balance = new_balance
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, account.id, account.to_dict())
            return new_balance

    def update_profile(self, account_id: str, **profile_fields) -> Account:
        """
        Update descriptive profile fields

        Holds the account lock because the whole document, balance included,
        is rewritten.
        """
        allowed = set(AccountProfile.field_names())
        unknown = set(profile_fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        with self.locked(account_id):
            account = self.get(account_id)
            for name, value in profile_fields.items():
                setattr(account.profile, name, value)
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, account.id, account.to_dict())

        log_action(
            self.logger, "info", "Account profile updated",
            user_id=account.identity, action="update_profile",
            resource=f"account:{account.id}", extra={"fields": sorted(profile_fields)}
        )
        return account

    def total_balance(self, account_ids: Optional[Iterable[str]] = None) -> int:
        """Sum of balances for the given accounts, or for every account"""
        if account_ids is None:
            return sum(account.balance for account in self.list_accounts())
        return sum(self.get(account_id).balance for account_id in account_ids)

    @contextmanager
    def locked(self, *account_ids: str):
        """
        Hold the mutation locks of several accounts

        Locks are acquired in ascending account-id order whatever order the
        ids are given in, so two transfers in opposite directions cannot
        deadlock. Locks are re-entrant for the holding thread.
        """
        with ExitStack() as stack:
            for account_id in sorted(set(account_ids)):
                stack.enter_context(self._lock_for(account_id))
            yield

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
        if lock is not None:
            return lock

        # Unknown ids get a throwaway lock; get() reports them missing
        if not self.storage.exists(self.table_name, account_id):
            return threading.RLock()

        with self._locks_guard:
            return self._locks.setdefault(account_id, threading.RLock())

    @staticmethod
    def _normalize_identity(identity: str) -> str:
        if not isinstance(identity, str) or not identity.strip():
            raise ValidationError("Identity must be a non-empty string")
        return identity.strip()
