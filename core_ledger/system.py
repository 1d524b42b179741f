"""
Ledger system wiring
"""

from typing import Optional

from .storage import StorageInterface, create_storage
from .accounts import AccountStore
from .transactions import TransactionLog
from .ledger import LedgerEngine
from .auth import AuthGateway
from .config import LedgerConfig, get_config


class LedgerSystem:
    """Core ledger with all components initialized over one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(self.config.storage_backend, self.config.database_path)
        self.storage = storage

        # Initialize core components
        self.accounts = AccountStore(self.storage)
        self.transactions = TransactionLog(self.storage)
        self.ledger = LedgerEngine(
            self.accounts, self.transactions,
            max_transaction_amount=self.config.max_transaction_amount
        )
        self.auth = AuthGateway(
            self.storage, self.accounts,
            jwt_secret=self.config.jwt_secret,
            jwt_algorithm=self.config.jwt_algorithm,
            token_expiry_minutes=self.config.jwt_expiry_minutes,
            password_min_length=self.config.password_min_length
        )

    def close(self) -> None:
        self.storage.close()
