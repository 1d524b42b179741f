"""
Identity and Authentication Gateway

Registration, password verification and bearer token handling. Sits in
front of the ledger: it resolves a request to a verified account identity
and never hands credentials to the ledger engine.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional

import jwt

from .accounts import Account, AccountStore
from .errors import (
    AccountAlreadyExists, AccountNotFound, AuthenticationError,
    DuplicateRecordError, ValidationError,
)
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


@dataclass
class Credential(StorageRecord):
    """Password hash for one identity"""
    identity: str
    account_id: str
    password_hash: str
    password_salt: str


class AuthGateway:
    """
    Registers users and verifies who is making a request
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        token_expiry_minutes: int = 60,
        password_min_length: int = 8
    ):
        self.storage = storage
        self.accounts = accounts
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.token_expiry_minutes = token_expiry_minutes
        self.password_min_length = password_min_length
        self.table_name = "credentials"
        self.logger = get_logger("core_ledger.auth")

    def register(
        self,
        identity: str,
        email: str,
        password: str,
        confirm_password: str,
        profile: Optional[Dict] = None
    ) -> Account:
        """
        Create an account and its credential in one atomic unit

        Raises:
            ValidationError: Missing fields, mismatched or too-short password
            AccountAlreadyExists: If the identity is taken
        """
        if not identity or not email or not password or not confirm_password:
            raise ValidationError("All fields are required")

        if password != confirm_password:
            raise ValidationError("Passwords do not match")

        if len(password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters"
            )

        initial_profile = dict(profile or {})
        initial_profile['email'] = email

        salt = self._generate_salt()
        password_hash = self._hash_password(password, salt)
        try:
            with self.storage.atomic():
                account = self.accounts.create(identity, initial_profile)
                now = datetime.now(timezone.utc)
                credential = Credential(
                    id=account.identity,
                    created_at=now,
                    updated_at=now,
                    identity=account.identity,
                    account_id=account.id,
                    password_hash=password_hash,
                    password_salt=salt
                )
                self.storage.insert(self.table_name, credential.id, credential.to_dict())
        except DuplicateRecordError:
            # A concurrent registration of the same identity won the commit
            raise AccountAlreadyExists(f"Identity '{identity.strip()}' already exists")

        log_action(
            self.logger, "info", "User registered",
            user_id=account.identity, action="register", resource=f"account:{account.id}"
        )
        return account

    def authenticate(self, identity: str, password: str) -> str:
        """
        Verify a password and issue a bearer token

        Raises:
            AuthenticationError: If the identity is unknown or the password is wrong
        """
        credential = self._load_credential(identity)
        if not credential or not self._verify_password(credential, password or ""):
            log_action(
                self.logger, "warning", "Login failed",
                action="login_failed", resource="auth", extra={"identity": identity}
            )
            raise AuthenticationError("Invalid credentials")

        log_action(
            self.logger, "info", "Login successful",
            user_id=credential.identity, action="login", resource="auth"
        )
        return self.issue_token(credential.identity)

    def issue_token(self, identity: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": identity,
            "iat": now,
            "exp": now + timedelta(minutes=self.token_expiry_minutes)
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def verify_token(self, token: str) -> str:
        """Return the identity a token was issued to"""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token")

        identity = payload.get("sub")
        if not identity:
            raise AuthenticationError("Invalid token")
        return identity

    def resolve(self, token: str) -> Account:
        """Verified account for a bearer token"""
        identity = self.verify_token(token)
        try:
            return self.accounts.lookup(identity)
        except AccountNotFound:
            raise AuthenticationError("Token subject has no account")

    def _load_credential(self, identity: str) -> Optional[Credential]:
        if not isinstance(identity, str) or not identity.strip():
            return None
        data = self.storage.load(self.table_name, identity.strip())
        if data:
            return Credential.from_dict(data)
        return None

    def _generate_salt(self) -> str:
        return secrets.token_hex(16)

    def _hash_password(self, password: str, salt: str) -> str:
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def _verify_password(self, credential: Credential, password: str) -> bool:
        expected = self._hash_password(password, credential.password_salt)
        return hmac.compare_digest(expected, credential.password_hash)
