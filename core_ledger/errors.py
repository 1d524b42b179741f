"""
Ledger Error Taxonomy

Every failure the ledger can report has its own exception class with a
stable ``code`` so callers can branch on the kind of failure instead of
parsing messages.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""
    code = "ledger_error"

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id

    def to_dict(self):
        return {"error": self.code, "detail": self.message}


class InvalidAmount(LedgerError):
    """Amount is non-positive, fractional, a float, or otherwise malformed"""
    code = "invalid_amount"


class InsufficientFunds(LedgerError):
    """Operation would take an account balance below its minimum"""
    code = "insufficient_funds"


class AccountNotFound(LedgerError):
    """No account exists for the given id or identity"""
    code = "not_found"


class RecipientNotFound(AccountNotFound):
    """Transfer recipient does not exist"""
    code = "recipient_not_found"


class InvalidTransfer(LedgerError):
    """Self-transfer or malformed sender/recipient pair"""
    code = "invalid_transfer"


class AccountAlreadyExists(LedgerError):
    """Identity is already registered"""
    code = "already_exists"


class StoreUnavailable(LedgerError):
    """Underlying durable store failed; the operation was not committed"""
    code = "store_unavailable"


class DuplicateRecordError(LedgerError):
    """Insert collided with an existing primary key or unique index value"""
    code = "duplicate_record"

    def __init__(self, message: str, table: str, field: Optional[str] = None):
        super().__init__(message)
        self.table = table
        self.field = field


class AuthenticationError(LedgerError):
    """Credentials or bearer token could not be verified"""
    code = "authentication_failed"


class ValidationError(LedgerError):
    """Request data failed validation before reaching the ledger"""
    code = "validation_error"
