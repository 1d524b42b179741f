"""
Pydantic schemas for API requests and responses
"""

from typing import List, Optional
from pydantic import BaseModel, Field


# Auth schemas
class RegisterRequest(BaseModel):
    identity: str = Field(..., description="Unique username")
    email: str
    password: str
    confirm_password: str
    name: Optional[str] = None
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    identity: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# Account schemas
class ProfileModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    account_number: Optional[str] = None
    branch_name: Optional[str] = None
    date_of_birth: Optional[str] = None  # ISO date string
    father_name: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    account_type: Optional[str] = None


class AccountResponse(BaseModel):
    account_id: str
    identity: str
    balance: str = Field(..., description="Decimal amount as string")
    balance_minor: int
    profile: ProfileModel


# Transaction schemas
class AmountRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")


class TransferRequest(BaseModel):
    recipient: str = Field(..., description="Recipient identity")
    amount: str = Field(..., description="Decimal amount as string")


class BalanceResponse(BaseModel):
    account_id: str
    balance: str
    balance_minor: int
    reference: Optional[str] = None


class TransactionModel(BaseModel):
    id: str
    kind: str
    amount: str
    amount_minor: int
    timestamp: str
    reference: str
    counterparty_account_id: Optional[str] = None


class HistoryResponse(BaseModel):
    account_id: str
    balance: str
    balance_minor: int
    transactions: List[TransactionModel]
