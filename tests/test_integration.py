"""
Integration Tests for Core Ledger

End-to-end scenarios through the wired LedgerSystem, including a SQLite
database that is closed and reopened between steps.
"""

import pytest
import tempfile
import shutil
from pathlib import Path

from core_ledger.config import LedgerConfig
from core_ledger.system import LedgerSystem
from core_ledger.storage import SQLiteStorage
from core_ledger.transactions import TransactionKind
from core_ledger.errors import AccountAlreadyExists, InsufficientFunds


class TestLedgerSystemIntegration:
    """Full workflows over file-backed SQLite storage"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = str(Path(self.temp_dir) / "ledger.db")
        self.config = LedgerConfig(
            storage_backend="sqlite",
            database_path=self.db_path,
            jwt_secret="integration-secret",
        )

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def open_system(self):
        return LedgerSystem(config=self.config)

    def test_system_uses_configured_storage(self):
        system = self.open_system()
        assert isinstance(system.storage, SQLiteStorage)
        assert system.storage.db_path == self.db_path
        assert system.ledger.max_transaction_amount == self.config.max_transaction_amount
        system.close()

    def test_balances_and_history_survive_restart(self):
        system = self.open_system()
        alice = system.auth.register("alice", "alice@example.com", "s3cretpass", "s3cretpass")
        bob = system.auth.register("bob", "bob@example.com", "s3cretpass", "s3cretpass")
        system.ledger.deposit(alice.id, 10000)
        result = system.ledger.transfer(alice.id, bob.id, 2500)
        system.close()

        system = self.open_system()
        assert system.accounts.lookup("alice").balance == 7500
        assert system.accounts.lookup("bob").balance == 2500

        history = system.ledger.history(bob.id)
        assert [r.kind for r in history.transactions] == [TransactionKind.TRANSFER_IN]
        assert history.transactions[0].reference == result.reference

        token = system.auth.authenticate("alice", "s3cretpass")
        assert system.auth.resolve(token).id == alice.id

        with pytest.raises(AccountAlreadyExists):
            system.auth.register("alice", "again@example.com", "s3cretpass", "s3cretpass")
        system.close()

    def test_failed_operations_leave_no_trace_after_restart(self):
        system = self.open_system()
        alice = system.auth.register("alice", "alice@example.com", "s3cretpass", "s3cretpass")
        bob = system.auth.register("bob", "bob@example.com", "s3cretpass", "s3cretpass")
        system.ledger.deposit(alice.id, 100)

        with pytest.raises(InsufficientFunds):
            system.ledger.transfer(alice.id, bob.id, 101)
        system.close()

        system = self.open_system()
        assert system.accounts.total_balance() == 100
        assert system.transactions.count() == 1
        assert system.ledger.verify_account(alice.id)
        assert system.ledger.verify_account(bob.id)
        system.close()

    def test_memory_backend(self):
        config = LedgerConfig(storage_backend="memory", jwt_secret="integration-secret")
        system = LedgerSystem(config=config)
        account = system.auth.register("carol", "carol@example.com", "s3cretpass", "s3cretpass")

        assert system.ledger.deposit(account.id, 5) == 5
        system.close()
