"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
import structlog

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "memory://"
os.environ["API_KEY"] = "test-key-12345"

from deal_oracle.core.deal import Evaluation, EvaluationSource
from deal_oracle.core.errors import PaymentCollaboratorError
from deal_oracle.enforcement.release import ReleaseGatekeeper
from deal_oracle.judging.judge import Judge
from deal_oracle.oracle import DealOracle
from deal_oracle.payments.collaborator import PaymentCollaborator, TokenBalance, TransferInfo
from deal_oracle.persistence.store import InMemoryDealStore

ADDRESS_A = "0x" + "a" * 40
ADDRESS_B = "0x" + "b" * 40
DOCS_LINK = "https://developers.circle.com/w3s/docs/transfer-tokens"
WALLET_ID = "wallet-escrow-1"


def submission_text(address: str = ADDRESS_A, bullets: int = 3, proof: Optional[str] = DOCS_LINK) -> str:
    """Answer text in the reference template: bullets, then the trailer lines."""
    lines = [f"- point {i + 1}" for i in range(bullets)]
    lines.append(f"payout_address: {address}")
    if proof:
        lines.append(f"proof_links: {proof}")
    return "\n".join(lines)


class FrozenClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)


class StubJudge(Judge):
    """Returns a fixed score, or one looked up by payout address."""

    def __init__(self, score: float = 0.9, by_address: Optional[dict] = None):
        self.score = score
        self.by_address = by_address or {}
        self.calls: List[str] = []

    def judge(self, requirements, submission_text, proof_links):
        self.calls.append(submission_text)
        score = self.score
        for address, value in self.by_address.items():
            if address in submission_text:
                score = value
        return Evaluation(score=score, reasoning="stub verdict", source=EvaluationSource.LLM)


class FakePayments(PaymentCollaborator):
    """In-memory payment collaborator that records every call."""

    def __init__(self, balances: Optional[List[TokenBalance]] = None, failures: int = 0):
        self.balances = balances if balances is not None else [
            TokenBalance(symbol="ETH", amount="0.5", is_native=True, asset_ref="token-eth"),
            TokenBalance(symbol="USDC", amount="100", is_native=False, asset_ref="token-usdc"),
        ]
        self.failures = failures
        self.transfers: List[dict] = []
        self.attempts = 0

    def query_balances(self, wallet_ref):
        return list(self.balances)

    def submit_transfer(self, wallet_ref, destination_address, asset_ref, amount, idempotency_key=None):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise PaymentCollaboratorError("HTTP 503 from wallet API", status_code=503)
        self.transfers.append({
            "wallet_ref": wallet_ref,
            "destination_address": destination_address,
            "asset_ref": asset_ref,
            "amount": amount,
            "idempotency_key": idempotency_key,
        })
        return f"transfer-{len(self.transfers)}"

    def get_transfer(self, transfer_ref):
        return TransferInfo(
            transfer_ref=transfer_ref,
            state="COMPLETE",
            chain_tx_hash="0x" + "f" * 64,
            chain="BASE-SEPOLIA",
        )


@pytest.fixture(autouse=True)
def reset_logging():
    """The CLI reconfigures structlog; restore defaults after every test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryDealStore()


@pytest.fixture
def judge():
    return StubJudge()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def sleeps():
    """Collects retry delays instead of sleeping."""
    return []


@pytest.fixture
def oracle(store, judge, payments, clock, sleeps):
    gatekeeper = ReleaseGatekeeper(payments=payments, wallet_ref=WALLET_ID, sleep=sleeps.append)
    return DealOracle(
        store=store,
        judge=judge,
        gatekeeper=gatekeeper,
        explorer_tx_url="https://sepolia.basescan.org/tx/{tx_hash}",
        clock=clock,
    )


@pytest.fixture
def open_deal(oracle):
    """A 10 USDC deal with no challenge window and the default 0.75 threshold."""
    return oracle.create(
        title="Explain USDC transfers",
        amount=Decimal("10"),
        requirements="Give exactly three bullet points with official docs links.",
        challenge_minutes=0,
    )
