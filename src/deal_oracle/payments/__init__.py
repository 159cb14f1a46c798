"""
DEAL ORACLE - Payments Module

Payment collaborator interface, the custodial wallet client and the retry
policy used for transfers.
"""

from .collaborator import PaymentCollaborator, TokenBalance, TransferInfo, resolve_payout_asset
from .retry import RetryPolicy, retry_call

__all__ = [
    "PaymentCollaborator",
    "TokenBalance",
    "TransferInfo",
    "resolve_payout_asset",
    "RetryPolicy",
    "retry_call",
]
