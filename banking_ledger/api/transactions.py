"""
Transaction endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_banking_system
from .schemas import DepositRequest, TransactionResponse, TransferRequest
from ..system import BankingSystem


router = APIRouter()


@router.post("/deposit", status_code=status.HTTP_201_CREATED, response_model=TransactionResponse)
def deposit(
    request: DepositRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a deposit"""
    entry = system.transaction_processor.deposit(
        to_account_id=request.to_account_id,
        amount=request.amount,
        description=request.description
    )
    return TransactionResponse.from_transaction(entry)


@router.post("/transfer", status_code=status.HTTP_201_CREATED, response_model=TransactionResponse)
def transfer(
    request: TransferRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a transfer between accounts"""
    entry = system.transaction_processor.transfer(
        from_account_id=request.from_account_id,
        to_account_id=request.to_account_id,
        amount=request.amount,
        description=request.description
    )
    return TransactionResponse.from_transaction(entry)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(transaction_id: str, system: BankingSystem = Depends(get_banking_system)):
    return TransactionResponse.from_transaction(
        system.transaction_processor.get_transaction(transaction_id)
    )
