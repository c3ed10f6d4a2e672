"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from ..currency import Currency
from ..accounts import Account, AccountType
from ..ledger import Transaction
from ..users import User


# User schemas
class CreateUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: str


class UserResponse(BaseModel):
    id: str
    full_name: str
    email: str
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> 'UserResponse':
        return cls(id=user.id, full_name=user.full_name, email=user.email, created_at=user.created_at)


# Account schemas
class OpenAccountRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    account_type: AccountType
    currency: str = Field(..., description="Currency code (PEN, USD)")
    alias: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def currency_supported(cls, value: str) -> str:
        if value not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {value}")
        return value

    def to_currency(self) -> Currency:
        return Currency[self.currency]


class RenameAccountRequest(BaseModel):
    alias: Optional[str] = None


class AccountResponse(BaseModel):
    id: str
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: str
    balance: str = Field(..., description="Decimal amount as string")
    alias: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(
            id=account.id,
            account_number=account.account_number,
            owner_id=account.owner_id,
            account_type=account.account_type,
            currency=account.currency.code,
            balance=str(account.balance.amount),
            alias=account.alias,
            created_at=account.created_at,
            updated_at=account.updated_at
        )


# Transaction schemas
class DepositRequest(BaseModel):
    to_account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: Optional[str] = None


class TransferRequest(BaseModel):
    from_account_id: str = Field(..., min_length=1)
    to_account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: Optional[str] = None


class TransactionResponse(BaseModel):
    id: str
    transaction_type: str
    status: str
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    amount: str = Field(..., description="Decimal amount as string")
    currency: str
    description: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_transaction(cls, entry: Transaction) -> 'TransactionResponse':
        return cls(
            id=entry.id,
            transaction_type=entry.transaction_type.value,
            status=entry.status.value,
            from_account_id=entry.from_account_id,
            to_account_id=entry.to_account_id,
            amount=str(entry.amount.amount),
            currency=entry.currency.code,
            description=entry.description,
            created_at=entry.created_at
        )
