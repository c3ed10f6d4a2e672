"""
User endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, status

from .dependencies import get_banking_system
from .schemas import AccountResponse, CreateUserRequest, UserResponse
from ..system import BankingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=UserResponse)
def create_user(
    request: CreateUserRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Register a user who can own accounts"""
    user = system.user_directory.create_user(request.full_name, request.email)
    return UserResponse.from_user(user)


@router.get("", response_model=List[UserResponse])
def list_users(system: BankingSystem = Depends(get_banking_system)):
    """All registered users in creation order"""
    return [UserResponse.from_user(user) for user in system.user_directory.list_users()]


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: str, system: BankingSystem = Depends(get_banking_system)):
    return UserResponse.from_user(system.user_directory.get_user(user_id))


@router.get("/{user_id}/accounts", response_model=List[AccountResponse])
def list_user_accounts(user_id: str, system: BankingSystem = Depends(get_banking_system)):
    """Accounts owned by the user"""
    return [
        AccountResponse.from_account(account)
        for account in system.account_manager.list_by_owner(user_id)
    ]
