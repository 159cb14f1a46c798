"""
Payment Collaborator Interface

The oracle never creates or manages wallets. It only needs to:
- list the escrow wallet's token balances (to resolve the payout asset)
- submit a transfer
- look a transfer up afterwards
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class TokenBalance:
    """One asset held by a wallet."""
    symbol: str
    amount: str
    is_native: bool
    asset_ref: str
    asset_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "amount": self.amount,
            "is_native": self.is_native,
            "asset_ref": self.asset_ref,
            "asset_address": self.asset_address,
        }


@dataclass
class TransferInfo:
    """State of a submitted transfer."""
    transfer_ref: str
    state: Optional[str] = None
    chain_tx_hash: Optional[str] = None
    chain: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_ref": self.transfer_ref,
            "state": self.state,
            "chain_tx_hash": self.chain_tx_hash,
            "chain": self.chain,
        }


class PaymentCollaborator(ABC):
    """Moves escrowed funds. Implementations raise PaymentCollaboratorError."""

    @abstractmethod
    def query_balances(self, wallet_ref: str) -> List[TokenBalance]:
        ...

    @abstractmethod
    def submit_transfer(
        self,
        wallet_ref: str,
        destination_address: str,
        asset_ref: str,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Submit a transfer and return its reference."""
        ...

    @abstractmethod
    def get_transfer(self, transfer_ref: str) -> TransferInfo:
        ...


def resolve_payout_asset(
    balances: Sequence[TokenBalance],
    preferred_symbol: str = "USDC",
) -> Optional[TokenBalance]:
    """
    Pick the asset to pay out in.

    The preferred symbol wins, then any non-native token. The chain's native
    gas asset is never selected.
    """
    candidates = [b for b in balances if not b.is_native and b.asset_ref]
    for balance in candidates:
        if balance.symbol.upper() == preferred_symbol.upper():
            return balance
    return candidates[0] if candidates else None
