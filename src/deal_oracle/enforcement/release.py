"""
Release Gatekeeper

Decides whether a deal's escrow may be paid out, and drives the payout.

Checks run in a fixed order and short-circuit:
1. Disputed          -> DISPUTED, not released
2. Challenge window  -> CHALLENGE_WINDOW, not released
3. Already paid      -> replay the recorded outcome, no new transfer
4. Nothing scored    -> NoEvaluationsError
5. Below threshold   -> REJECTED, not released
6. Payout            -> one transfer, retried with backoff
7. Record            -> COMPLETED with payout reference and winner

The idempotency check (3) runs before ranking so evaluations that arrive
after a payout can never influence a repeated release() call.

The gatekeeper mutates the Deal it is handed; persisting it is the caller's
job. On PayoutError the deal is left untouched.
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import structlog

from ..core.deal import Deal, DealStatus, utc_now
from ..core.errors import (
    InvalidTransitionError,
    NoEvaluationsError,
    PaymentCollaboratorError,
    PayoutError,
)
from ..core.ranking import rank_submissions
from ..payments.collaborator import PaymentCollaborator, resolve_payout_asset
from ..payments.retry import RetryPolicy, retry_call

logger = structlog.get_logger()

IDEMPOTENCY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "deal-oracle/payout")


def payout_idempotency_key(deal_id: str, submission_id: str) -> str:
    """Stable per (deal, winner) so a retried transfer is deduplicated upstream."""
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{deal_id}/{submission_id}"))


@dataclass
class ReleaseResult:
    """Outcome of a release attempt."""
    released: bool
    deal_id: str
    status: DealStatus
    reason: Optional[str] = None
    payout_reference: Optional[str] = None
    winner_submission_id: Optional[str] = None
    payout_address: Optional[str] = None
    score: Optional[float] = None
    accept_threshold: Optional[float] = None
    challenge_until: Optional[datetime] = None
    already_released: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "released": self.released,
            "deal_id": self.deal_id,
            "status": self.status.value,
            "reason": self.reason,
            "payout_reference": self.payout_reference,
            "winner_submission_id": self.winner_submission_id,
            "payout_address": self.payout_address,
            "score": self.score,
            "accept_threshold": self.accept_threshold,
            "challenge_until": self.challenge_until.isoformat() if self.challenge_until else None,
            "already_released": self.already_released,
        }


class ReleaseGatekeeper:
    """
    Validates release preconditions and executes the payout once.

    Args:
        payments: Payment collaborator (None disables payouts)
        wallet_ref: Escrow wallet the funds leave from
        asset_symbol: Preferred payout asset symbol
        retry_policy: Backoff for transfer submission
        sleep: Injected for tests
    """

    def __init__(
        self,
        payments: Optional[PaymentCollaborator] = None,
        wallet_ref: Optional[str] = None,
        asset_symbol: str = "USDC",
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.payments = payments
        self.wallet_ref = wallet_ref
        self.asset_symbol = asset_symbol
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def release(self, deal: Deal, now: Optional[datetime] = None) -> ReleaseResult:
        now = now or utc_now()

        # Step 1: Dispute masks every other outcome
        if deal.disputed:
            if deal.status != DealStatus.DISPUTED:
                deal.transition(DealStatus.DISPUTED, now)
            reason = f"Deal is disputed: {deal.dispute_reason or 'no reason provided'}"
            logger.info("release_blocked", deal_id=deal.deal_id, gate="disputed")
            return ReleaseResult(released=False, deal_id=deal.deal_id, status=deal.status, reason=reason)

        # Step 2: Challenge window
        if now < deal.challenge_until:
            if deal.can_transition(DealStatus.CHALLENGE_WINDOW):
                deal.transition(DealStatus.CHALLENGE_WINDOW, now)
            logger.info(
                "release_blocked",
                deal_id=deal.deal_id,
                gate="challenge_window",
                challenge_until=deal.challenge_until.isoformat(),
            )
            return ReleaseResult(
                released=False,
                deal_id=deal.deal_id,
                status=deal.status,
                reason=f"Challenge window still active until {deal.challenge_until.isoformat()}.",
                challenge_until=deal.challenge_until,
            )

        # Step 3: Idempotent replay
        if deal.payout_reference:
            return self._replay(deal)

        # Step 4: Something must be scored
        ranking = rank_submissions(deal.submissions, deal.accept_threshold)
        best = ranking.winner
        if best is None:
            raise NoEvaluationsError(
                f"Deal {deal.deal_id} has no evaluated submissions. Run evaluate first."
            )

        # Step 5: Threshold
        if not ranking.meets_threshold:
            deal.transition(DealStatus.REJECTED, now)
            logger.info(
                "release_blocked",
                deal_id=deal.deal_id,
                gate="threshold",
                score=best.evaluation.score,
                threshold=deal.accept_threshold,
            )
            return ReleaseResult(
                released=False,
                deal_id=deal.deal_id,
                status=deal.status,
                reason=(
                    f"Best score {best.evaluation.score} below threshold {deal.accept_threshold}"
                ),
                winner_submission_id=best.submission_id,
                score=best.evaluation.score,
                accept_threshold=deal.accept_threshold,
            )

        if not deal.can_transition(DealStatus.COMPLETED):
            raise InvalidTransitionError(
                f"Deal {deal.deal_id} cannot be completed from {deal.status.value}"
            )

        # Step 6: Payout
        reference = self._pay(deal, best.submission_id, best.payout_address)

        # Step 7: Record
        deal.payout_reference = reference
        deal.winner_submission_id = best.submission_id
        deal.winner_score = best.evaluation.score
        deal.payout_address = best.payout_address
        deal.transition(DealStatus.COMPLETED, now)

        logger.info(
            "payout_completed",
            deal_id=deal.deal_id,
            payout_reference=reference,
            winner_submission_id=best.submission_id,
            payout_address=best.payout_address,
            score=best.evaluation.score,
        )

        return ReleaseResult(
            released=True,
            deal_id=deal.deal_id,
            status=deal.status,
            payout_reference=reference,
            winner_submission_id=best.submission_id,
            payout_address=best.payout_address,
            score=best.evaluation.score,
            accept_threshold=deal.accept_threshold,
        )

    def _replay(self, deal: Deal) -> ReleaseResult:
        logger.info("release_replayed", deal_id=deal.deal_id, payout_reference=deal.payout_reference)
        return ReleaseResult(
            released=True,
            deal_id=deal.deal_id,
            status=deal.status,
            reason="Already released.",
            payout_reference=deal.payout_reference,
            winner_submission_id=deal.winner_submission_id,
            payout_address=deal.payout_address,
            score=deal.winner_score,
            accept_threshold=deal.accept_threshold,
            already_released=True,
        )

    def _pay(self, deal: Deal, submission_id: str, payout_address: str) -> str:
        if self.payments is None or not self.wallet_ref:
            raise PayoutError("Payment collaborator not configured; funds were not moved.")

        try:
            balances = self.payments.query_balances(self.wallet_ref)
        except PaymentCollaboratorError as e:
            raise PayoutError(f"Could not read escrow balances: {e}") from e

        asset = resolve_payout_asset(balances, self.asset_symbol)
        if asset is None:
            raise PayoutError(
                f"Could not resolve a non-native {self.asset_symbol} asset in the escrow wallet."
            )

        idempotency_key = payout_idempotency_key(deal.deal_id, submission_id)

        def submit() -> str:
            return self.payments.submit_transfer(
                self.wallet_ref,
                payout_address,
                asset.asset_ref,
                deal.amount,
                idempotency_key=idempotency_key,
            )

        try:
            reference = retry_call(
                submit,
                policy=self.retry_policy,
                retry_on=(PaymentCollaboratorError,),
                sleep=self.sleep,
                operation="submit_transfer",
            )
        except PaymentCollaboratorError as e:
            raise PayoutError(
                f"Transfer failed after {self.retry_policy.max_attempts} attempts: {e}"
            ) from e

        if not reference:
            raise PayoutError("Payment collaborator returned no transfer reference.")
        return reference
