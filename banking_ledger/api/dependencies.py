"""
Shared FastAPI dependencies
"""

from fastapi import Request

from ..system import BankingSystem


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system
