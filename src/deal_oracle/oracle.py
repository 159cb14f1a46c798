"""
Deal Oracle Service

Front-end agnostic facade over the gate, judge, ranker and release
gatekeeper. The API server and the CLI are thin wrappers around this class.

Every operation reads the whole deal from the store, works on it in memory,
and writes the whole deal back at most once.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Union
import structlog

from .config import OracleSettings
from .core.deal import Deal, DealStatus, Evaluation, Submission, new_id, utc_now
from .core.errors import InvalidTransitionError, PaymentCollaboratorError, ValidationError
from .core.ranking import Ranking, rank_submissions
from .core.submission_text import parse_proof_links, resolve_payout_address
from .enforcement.gate import GateConfig, SubmissionGate
from .enforcement.release import ReleaseGatekeeper, ReleaseResult
from .judging.judge import Judge, build_judge
from .payments.collaborator import PaymentCollaborator, TransferInfo
from .payments.retry import RetryPolicy
from .persistence.store import DealStore, build_store

logger = structlog.get_logger()

# Statuses that an evaluate pass moves to EVALUATED.
_EVALUABLE_STATUSES = frozenset({
    DealStatus.SUBMITTED,
    DealStatus.EVALUATED,
    DealStatus.CHALLENGE_WINDOW,
})


@dataclass
class EvaluationReport:
    """Result of one evaluate() pass."""
    deal_id: str
    status: DealStatus
    evaluated: List[Submission]
    ranking: Ranking

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_id": self.deal_id,
            "status": self.status.value,
            "evaluated": [
                {
                    "submission_id": s.submission_id,
                    **s.evaluation.to_dict(),
                }
                for s in self.evaluated
            ],
            "ranking": self.ranking.to_dict(),
        }


@dataclass
class Scoreboard:
    """Current standings for a deal."""
    deal_id: str
    title: str
    status: DealStatus
    ranking: Ranking
    pending: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_id": self.deal_id,
            "title": self.title,
            "status": self.status.value,
            "pending_submission_ids": list(self.pending),
            **self.ranking.to_dict(),
        }

    def to_markdown(self) -> str:
        lines = [
            f"# Scoreboard: {self.title}",
            "",
            f"deal_id: `{self.deal_id}`",
            f"status: {self.status.value}",
            f"threshold: {self.ranking.accept_threshold}",
            "",
        ]
        winner = self.ranking.winner
        if winner is None:
            lines.append("_No evaluated submissions._")
        else:
            lines.append(
                f"Winner (tentative): **{winner.submission_id}** (score {winner.evaluation.score})"
            )
            lines.append(f"Meets threshold: **{self.ranking.meets_threshold}**")
            lines.append("")
            lines.append("## Ranked")
            for s in self.ranking.ordered:
                lines.append(
                    f"- **{s.submission_id}** score: {s.evaluation.score} payout: {s.payout_address}"
                )
                if s.evaluation.reasoning:
                    lines.append(f"  - reasoning: {s.evaluation.reasoning[:200]}")
                if s.evaluation.risk_flags:
                    lines.append(f"  - risk_flags: {', '.join(s.evaluation.risk_flags)}")
        if self.pending:
            lines.append("")
            lines.append(f"Pending evaluation: {', '.join(self.pending)}")
        return "\n".join(lines) + "\n"


@dataclass
class PayoutReceipt:
    """What was paid, to whom, and where to see it on chain."""
    deal_id: str
    title: str
    amount: Decimal
    asset_symbol: str
    status: DealStatus
    released: bool
    payout_reference: Optional[str] = None
    winner_submission_id: Optional[str] = None
    payout_address: Optional[str] = None
    score: Optional[float] = None
    transfer: Optional[TransferInfo] = None
    explorer_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_id": self.deal_id,
            "title": self.title,
            "amount": str(self.amount),
            "asset_symbol": self.asset_symbol,
            "status": self.status.value,
            "released": self.released,
            "payout_reference": self.payout_reference,
            "winner_submission_id": self.winner_submission_id,
            "payout_address": self.payout_address,
            "score": self.score,
            "transfer": self.transfer.to_dict() if self.transfer else None,
            "explorer_url": self.explorer_url,
        }

    def to_text(self) -> str:
        """Copy/paste summary block."""
        lines = [
            f"deal_id: {self.deal_id}",
            f"amount: {self.amount} {self.asset_symbol}",
            f"status: {self.status.value}",
        ]
        if self.score is not None:
            lines.append(f"winner_score: {self.score}")
        if self.payout_address:
            lines.append(f"payout_address: {self.payout_address}")
        if self.payout_reference:
            lines.append(f"payout_reference: {self.payout_reference}")
        if self.transfer and self.transfer.chain_tx_hash:
            lines.append(f"tx_hash: {self.transfer.chain_tx_hash}")
        if self.explorer_url:
            lines.append(f"receipt: {self.explorer_url}")
        return "\n".join(lines) + "\n"


def _parse_amount(amount: Union[str, int, float, Decimal, None]) -> Decimal:
    if amount is None or amount == "":
        raise ValidationError("Missing amount")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"Amount must be a positive number, got {amount!r}")
    return value


class DealOracle:
    """
    Deal lifecycle operations.

    Args:
        store: Deal persistence
        judge: Scoring backend for submissions that pass the gate
        gatekeeper: Release preconditions and payout
        gate: Deterministic submission gate
        accept_threshold: Default threshold for new deals
        challenge_minutes: Default challenge window for new deals
        evaluation_workers: Thread pool size for evaluate(); 1 runs inline
        explorer_tx_url: Template with a {tx_hash} field for receipts
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: DealStore,
        judge: Judge,
        gatekeeper: Optional[ReleaseGatekeeper] = None,
        gate: Optional[SubmissionGate] = None,
        accept_threshold: float = 0.75,
        challenge_minutes: float = 60,
        evaluation_workers: int = 1,
        explorer_tx_url: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.judge = judge
        self.gatekeeper = gatekeeper or ReleaseGatekeeper()
        self.gate = gate or SubmissionGate()
        self.accept_threshold = accept_threshold
        self.challenge_minutes = challenge_minutes
        self.evaluation_workers = max(1, evaluation_workers)
        self.explorer_tx_url = explorer_tx_url
        self.clock = clock

    @property
    def payments(self) -> Optional[PaymentCollaborator]:
        return self.gatekeeper.payments

    # ------------------------------------------------------------------
    # create / submit
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        amount: Union[str, int, float, Decimal],
        requirements: str,
        challenge_minutes: Optional[float] = None,
        require_proof_links: bool = True,
        require_official_docs: bool = True,
        accept_threshold: Optional[float] = None,
    ) -> Deal:
        """Open a new deal."""
        title = (title or "").strip()
        requirements = (requirements or "").strip()
        if not title:
            raise ValidationError("Missing title")
        if not requirements:
            raise ValidationError("Missing requirements")
        value = _parse_amount(amount)

        if challenge_minutes is None:
            challenge_minutes = self.challenge_minutes
        if challenge_minutes < 0:
            raise ValidationError("challenge_minutes must be >= 0")

        if accept_threshold is None:
            accept_threshold = self.accept_threshold
        if not 0.0 <= accept_threshold <= 1.0:
            raise ValidationError(f"accept_threshold must be within [0, 1], got {accept_threshold}")

        deal = Deal.open(
            title=title,
            amount=value,
            requirements=requirements,
            challenge_minutes=challenge_minutes,
            require_proof_links=require_proof_links,
            require_official_docs=require_official_docs,
            accept_threshold=accept_threshold,
            now=self.clock(),
        )
        self.store.put(deal)

        logger.info(
            "deal_created",
            deal_id=deal.deal_id,
            amount=str(deal.amount),
            challenge_until=deal.challenge_until.isoformat(),
            accept_threshold=deal.accept_threshold,
        )
        return deal

    def submit(
        self,
        deal_id: str,
        submission_text: str,
        proof_links_csv: Optional[str] = None,
        payout_address: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Append a submission to a deal.

        A submission that already fails a gate is stored with its terminal
        evaluation and is skipped by the next default evaluate() pass.
        """
        if not submission_text or not submission_text.strip():
            raise ValidationError("Missing submission text")

        deal = self.store.get(deal_id)
        if not deal.accepting_submissions:
            raise InvalidTransitionError(
                f"Deal {deal_id} is {deal.status.value} and no longer accepts submissions"
            )

        address = resolve_payout_address(payout_address, submission_text)
        now = self.clock()
        submission = Submission(
            submission_id=new_id("sub"),
            submission_text=submission_text,
            payout_address=address,
            proof_links=parse_proof_links(submission_text, proof_links_csv),
            submitted_at=now,
        )
        submission.evaluation = self.gate.check(deal, submission, now)

        deal.submissions.append(submission)
        if deal.status == DealStatus.OPEN:
            deal.transition(DealStatus.SUBMITTED, now)
        deal.updated_at = now
        self.store.put(deal)

        logger.info(
            "submission_added",
            deal_id=deal_id,
            submission_id=submission.submission_id,
            proof_links=len(submission.proof_links),
            gated=submission.evaluation is not None,
        )
        return {"deal_id": deal_id, "submission_id": submission.submission_id}

    # ------------------------------------------------------------------
    # evaluate
    # ------------------------------------------------------------------

    def _score(self, deal: Deal, submission: Submission, now: datetime) -> Evaluation:
        gated = self.gate.check(deal, submission, now)
        if gated is not None:
            return gated
        return self.judge.judge(deal.requirements, submission.submission_text, submission.proof_links)

    def evaluate(
        self,
        deal_id: str,
        submission_id: Optional[str] = None,
        reevaluate_all: bool = False,
    ) -> EvaluationReport:
        """
        Score submissions and rank the deal.

        Targets, by default, the submissions without an evaluation. Pass
        submission_id to target one, or reevaluate_all to target every one.
        Each target's previous evaluation is replaced, never merged.
        """
        deal = self.store.get(deal_id)
        if not deal.submissions:
            raise ValidationError(f"Deal {deal_id} has no submissions to evaluate")

        if submission_id:
            targets = [deal.get_submission(submission_id)]
        elif reevaluate_all:
            targets = list(deal.submissions)
        else:
            targets = [s for s in deal.submissions if s.evaluation is None]

        now = self.clock()
        if self.evaluation_workers > 1 and len(targets) > 1:
            with ThreadPoolExecutor(max_workers=self.evaluation_workers) as pool:
                results = list(pool.map(lambda s: self._score(deal, s, now), targets))
        else:
            results = [self._score(deal, s, now) for s in targets]

        # Buffer then flush: the record is written once, after every target is scored.
        for submission, evaluation in zip(targets, results):
            submission.evaluation = evaluation
            logger.info(
                "submission_evaluated",
                deal_id=deal_id,
                submission_id=submission.submission_id,
                score=evaluation.score,
                source=evaluation.source.value,
                risk_flags=evaluation.risk_flags,
            )

        if targets and deal.status in _EVALUABLE_STATUSES:
            deal.transition(DealStatus.EVALUATED, now)
        self.store.put(deal)

        ranking = rank_submissions(deal.submissions, deal.accept_threshold)
        return EvaluationReport(deal_id=deal_id, status=deal.status, evaluated=targets, ranking=ranking)

    # ------------------------------------------------------------------
    # release / dispute
    # ------------------------------------------------------------------

    def release(self, deal_id: str) -> ReleaseResult:
        """Run the release gatekeeper and persist its outcome."""
        deal = self.store.get(deal_id)
        result = self.gatekeeper.release(deal, self.clock())
        if not result.already_released:
            self.store.put(deal)
        return result

    def dispute(self, deal_id: str, reason: Optional[str] = None) -> Deal:
        """Flag a deal as disputed. Every later release() returns released=false."""
        deal = self.store.get(deal_id)
        if deal.status == DealStatus.COMPLETED:
            raise InvalidTransitionError(f"Deal {deal_id} is already paid out and cannot be disputed")

        now = self.clock()
        deal.disputed = True
        deal.dispute_reason = (reason or "").strip() or None
        deal.transition(DealStatus.DISPUTED, now)
        self.store.put(deal)

        logger.warning("deal_disputed", deal_id=deal_id, reason=deal.dispute_reason)
        return deal

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------

    def status(self, deal_id: Optional[str] = None) -> Union[Deal, List[Deal]]:
        if deal_id:
            return self.store.get(deal_id)
        return self.store.list()

    def scoreboard(self, deal_id: str) -> Scoreboard:
        deal = self.store.get(deal_id)
        return Scoreboard(
            deal_id=deal.deal_id,
            title=deal.title,
            status=deal.status,
            ranking=rank_submissions(deal.submissions, deal.accept_threshold),
            pending=[s.submission_id for s in deal.submissions if s.evaluation is None],
        )

    def receipt(self, deal_id: str) -> PayoutReceipt:
        """
        Describe the payout for a deal.

        When a payment collaborator is configured the transfer is looked up to
        attach its chain hash and explorer link. A failed lookup leaves those
        fields empty.
        """
        deal = self.store.get(deal_id)
        receipt = PayoutReceipt(
            deal_id=deal.deal_id,
            title=deal.title,
            amount=deal.amount,
            asset_symbol=self.gatekeeper.asset_symbol,
            status=deal.status,
            released=deal.payout_reference is not None,
            payout_reference=deal.payout_reference,
            winner_submission_id=deal.winner_submission_id,
            payout_address=deal.payout_address,
            score=deal.winner_score,
        )

        if deal.payout_reference and self.payments is not None:
            try:
                receipt.transfer = self.payments.get_transfer(deal.payout_reference)
            except PaymentCollaboratorError as e:
                logger.warning(
                    "transfer_lookup_failed",
                    deal_id=deal_id,
                    payout_reference=deal.payout_reference,
                    error=str(e),
                )

        if receipt.transfer and receipt.transfer.chain_tx_hash and self.explorer_tx_url:
            receipt.explorer_url = self.explorer_tx_url.format(tx_hash=receipt.transfer.chain_tx_hash)
        return receipt


def build_oracle(
    settings: Optional[OracleSettings] = None,
    store: Optional[DealStore] = None,
    judge: Optional[Judge] = None,
    payments: Optional[PaymentCollaborator] = None,
    gate_config: Optional[GateConfig] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> DealOracle:
    """Wire a DealOracle from settings; explicit collaborators take precedence."""
    settings = settings or OracleSettings.from_env()

    if judge is None:
        judge = build_judge(
            settings.llm_api_key,
            allow_deterministic_accept=settings.allow_deterministic_accept,
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            timeout=settings.llm_timeout,
        )

    if payments is None and settings.payments_configured:
        from .payments.circle import CircleWalletClient
        payments = CircleWalletClient(
            api_key=settings.circle_api_key,
            entity_secret=settings.circle_entity_secret,
            base_url=settings.circle_base_url,
            timeout=settings.payment_timeout,
        )
    elif payments is None:
        logger.warning("payments_not_configured")

    gatekeeper = ReleaseGatekeeper(
        payments=payments,
        wallet_ref=settings.escrow_wallet_id,
        asset_symbol=settings.payout_asset_symbol,
        retry_policy=retry_policy,
    )

    return DealOracle(
        store=store or build_store(settings.database_url),
        judge=judge,
        gatekeeper=gatekeeper,
        gate=SubmissionGate(gate_config),
        accept_threshold=settings.accept_threshold,
        challenge_minutes=settings.challenge_minutes,
        evaluation_workers=settings.evaluation_workers,
        explorer_tx_url=settings.explorer_tx_url,
    )
