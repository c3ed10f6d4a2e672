"""
Account management endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, status

from .dependencies import get_banking_system
from .schemas import (
    AccountResponse, OpenAccountRequest, RenameAccountRequest, TransactionResponse
)
from ..system import BankingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=AccountResponse)
def open_account(
    request: OpenAccountRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Open a new zero-balance account"""
    account = system.account_manager.open_account(
        owner_id=request.owner_id,
        account_type=request.account_type,
        currency=request.to_currency(),
        alias=request.alias
    )
    return AccountResponse.from_account(account)


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, system: BankingSystem = Depends(get_banking_system)):
    """Get account details"""
    return AccountResponse.from_account(system.account_manager.get_account(account_id))


@router.patch("/{account_id}", response_model=AccountResponse)
def rename_account(
    account_id: str,
    request: RenameAccountRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_manager.rename_account(account_id, request.alias)
    return AccountResponse.from_account(account)


@router.get("/{account_id}/transactions", response_model=List[TransactionResponse])
def get_account_transactions(account_id: str, system: BankingSystem = Depends(get_banking_system)):
    """Get transaction history for account, most recent first"""
    return [
        TransactionResponse.from_transaction(entry)
        for entry in system.transaction_processor.list_account_transactions(account_id)
    ]
