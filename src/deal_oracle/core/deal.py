"""
Deal State Machine and Records

A deal owns an ordered list of submissions; each submission carries at most
one evaluation, replaced wholesale whenever it is re-evaluated.

Invariant: payout_reference is set if and only if status is COMPLETED.

from_dict() is the store boundary. Records written by older tooling used
several spellings for the same field (submissionText, payoutAddress,
circle_tx_id, epoch-millisecond timestamps...). They are normalized here so
nothing downstream has to know about them.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import InvalidTransitionError, NotFoundError, ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate ids like deal-1718000000000-9f2c41ab."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO-8601 strings, or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value) / 1000.0, timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValidationError(f"Unrecognized timestamp: {value!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _first(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _unique(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


class DealStatus(Enum):
    """Deal lifecycle states."""
    OPEN = "OPEN"
    SUBMITTED = "SUBMITTED"
    EVALUATED = "EVALUATED"
    CHALLENGE_WINDOW = "CHALLENGE_WINDOW"
    REJECTED = "REJECTED"
    DISPUTED = "DISPUTED"
    COMPLETED = "COMPLETED"


_ACTIVE_TARGETS = frozenset({
    DealStatus.SUBMITTED,
    DealStatus.EVALUATED,
    DealStatus.CHALLENGE_WINDOW,
    DealStatus.REJECTED,
    DealStatus.DISPUTED,
    DealStatus.COMPLETED,
})

TRANSITIONS: Dict[DealStatus, FrozenSet[DealStatus]] = {
    DealStatus.OPEN: frozenset({
        DealStatus.SUBMITTED,
        DealStatus.CHALLENGE_WINDOW,
        DealStatus.DISPUTED,
    }),
    DealStatus.SUBMITTED: _ACTIVE_TARGETS,
    DealStatus.EVALUATED: _ACTIVE_TARGETS,
    DealStatus.CHALLENGE_WINDOW: _ACTIVE_TARGETS,
    # A rejection is re-decided on the next release() against current scores.
    DealStatus.REJECTED: frozenset({
        DealStatus.REJECTED,
        DealStatus.DISPUTED,
        DealStatus.COMPLETED,
    }),
    DealStatus.DISPUTED: frozenset({DealStatus.DISPUTED}),
    DealStatus.COMPLETED: frozenset({DealStatus.COMPLETED}),
}

# Statuses in which new submissions are refused.
CLOSED_STATUSES = frozenset({
    DealStatus.REJECTED,
    DealStatus.DISPUTED,
    DealStatus.COMPLETED,
})


class EvaluationSource(Enum):
    """Provenance of an evaluation."""
    GATE = "gate"
    LLM = "llm"
    FALLBACK = "fallback"


@dataclass
class Evaluation:
    """A scored verdict for one submission."""
    score: float
    reasoning: str = ""
    missing: List[str] = field(default_factory=list)
    risk_flags: List[str] = field(default_factory=list)
    source: EvaluationSource = EvaluationSource.LLM
    evaluated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.risk_flags = _unique(self.risk_flags)

    @property
    def is_external(self) -> bool:
        return self.source == EvaluationSource.LLM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "reasoning": self.reasoning,
            "missing": list(self.missing),
            "risk_flags": list(self.risk_flags),
            "source": self.source.value,
            "evaluated_at": _iso(self.evaluated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evaluation":
        risk_flags = [str(f) for f in data.get("risk_flags") or []]
        source = data.get("source")
        if source is None:
            if "no_proof" in risk_flags or "format_mismatch" in risk_flags:
                source = EvaluationSource.GATE.value
            elif "no_llm_key" in risk_flags:
                source = EvaluationSource.FALLBACK.value
            else:
                source = EvaluationSource.LLM.value
        return cls(
            score=float(data.get("score", 0)),
            reasoning=str(data.get("reasoning") or ""),
            missing=[str(m) for m in data.get("missing") or []],
            risk_flags=risk_flags,
            source=EvaluationSource(source),
            evaluated_at=parse_timestamp(data.get("evaluated_at")) or utc_now(),
        )


@dataclass
class Submission:
    """A candidate answer to a deal."""
    submission_id: str
    submission_text: str
    payout_address: str
    proof_links: List[str] = field(default_factory=list)
    submitted_at: datetime = field(default_factory=utc_now)
    evaluation: Optional[Evaluation] = None

    def __post_init__(self):
        self.proof_links = _unique(self.proof_links)

    @property
    def score(self) -> Optional[float]:
        return self.evaluation.score if self.evaluation else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "submitted_at": _iso(self.submitted_at),
            "submission_text": self.submission_text,
            "payout_address": self.payout_address,
            "proof_links": list(self.proof_links),
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Submission":
        proof_links = _first(data, "proof_links", "proofLinks", default=[])
        if isinstance(proof_links, str):
            proof_links = [p.strip() for p in proof_links.split(",") if p.strip()]
        evaluation = data.get("evaluation")
        return cls(
            submission_id=str(_first(data, "submission_id", "submissionId", "id")),
            submission_text=str(_first(data, "submission_text", "submissionText", default="")),
            payout_address=str(_first(data, "payout_address", "payoutAddress", default="")),
            proof_links=[str(p) for p in proof_links],
            submitted_at=parse_timestamp(
                _first(data, "submitted_at", "submitted_at_ms", "submittedAt")
            ) or utc_now(),
            evaluation=Evaluation.from_dict(evaluation) if evaluation else None,
        )


@dataclass
class Deal:
    """A funded task awaiting release to its best submission."""
    deal_id: str
    title: str
    amount: Decimal
    requirements: str
    challenge_until: datetime
    status: DealStatus = DealStatus.OPEN
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    require_proof_links: bool = True
    require_official_docs: bool = True
    accept_threshold: float = 0.75
    disputed: bool = False
    dispute_reason: Optional[str] = None
    winner_submission_id: Optional[str] = None
    winner_score: Optional[float] = None
    payout_address: Optional[str] = None
    payout_reference: Optional[str] = None
    submissions: List[Submission] = field(default_factory=list)

    @classmethod
    def open(
        cls,
        title: str,
        amount: Decimal,
        requirements: str,
        challenge_minutes: float = 60,
        require_proof_links: bool = True,
        require_official_docs: bool = True,
        accept_threshold: float = 0.75,
        now: Optional[datetime] = None,
    ) -> "Deal":
        """Create a new OPEN deal whose window closes challenge_minutes from now."""
        now = now or utc_now()
        return cls(
            deal_id=new_id("deal"),
            title=title,
            amount=amount,
            requirements=requirements,
            created_at=now,
            updated_at=now,
            challenge_until=now + timedelta(minutes=challenge_minutes),
            require_proof_links=require_proof_links,
            require_official_docs=require_official_docs,
            accept_threshold=accept_threshold,
        )

    @property
    def accepting_submissions(self) -> bool:
        return self.status not in CLOSED_STATUSES

    def can_transition(self, target: DealStatus) -> bool:
        return target in TRANSITIONS[self.status]

    def transition(self, target: DealStatus, now: Optional[datetime] = None) -> None:
        """Move to target status or raise InvalidTransitionError."""
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Deal {self.deal_id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.updated_at = now or utc_now()

    def get_submission(self, submission_id: str) -> Submission:
        for submission in self.submissions:
            if submission.submission_id == submission_id:
                return submission
        raise NotFoundError(f"Unknown submission {submission_id} for deal {self.deal_id}")

    def evaluated_submissions(self) -> List[Submission]:
        return [s for s in self.submissions if s.evaluation is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_id": self.deal_id,
            "title": self.title,
            "amount": str(self.amount),
            "requirements": self.requirements,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "challenge_until": _iso(self.challenge_until),
            "require_proof_links": self.require_proof_links,
            "require_official_docs": self.require_official_docs,
            "accept_threshold": self.accept_threshold,
            "disputed": self.disputed,
            "dispute_reason": self.dispute_reason,
            "winner_submission_id": self.winner_submission_id,
            "winner_score": self.winner_score,
            "payout_address": self.payout_address,
            "payout_reference": self.payout_reference,
            "submissions": [s.to_dict() for s in self.submissions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deal":
        created_at = parse_timestamp(_first(data, "created_at", "created_at_ms")) or utc_now()
        challenge_until = parse_timestamp(data.get("challenge_until"))
        if challenge_until is None:
            minutes = float(_first(data, "challenge_minutes", default=60))
            challenge_until = created_at + timedelta(minutes=minutes)

        raw_amount = _first(data, "amount", "amount_usdc")
        try:
            amount = Decimal(str(raw_amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount in stored deal: {raw_amount!r}")

        deal = cls(
            deal_id=str(_first(data, "deal_id", "dealId", "id")),
            title=str(data.get("title") or ""),
            amount=amount,
            requirements=str(data.get("requirements") or ""),
            status=DealStatus(data.get("status", DealStatus.OPEN.value)),
            created_at=created_at,
            updated_at=parse_timestamp(data.get("updated_at")) or created_at,
            challenge_until=challenge_until,
            require_proof_links=bool(
                _first(data, "require_proof_links", "requireProofLinks", default=True)
            ),
            require_official_docs=bool(
                _first(data, "require_official_docs", "requireOfficialDocs", default=True)
            ),
            accept_threshold=float(_first(data, "accept_threshold", default=0.75)),
            disputed=bool(data.get("disputed", False)),
            dispute_reason=data.get("dispute_reason"),
            winner_submission_id=data.get("winner_submission_id"),
            winner_score=data.get("winner_score"),
            payout_address=data.get("payout_address"),
            payout_reference=_first(data, "payout_reference", "circle_tx_id"),
            submissions=[Submission.from_dict(s) for s in data.get("submissions") or []],
        )

        # Records written before the payout outcome was stored on the deal
        if deal.payout_reference and deal.winner_submission_id and deal.payout_address is None:
            for submission in deal.submissions:
                if submission.submission_id == deal.winner_submission_id:
                    deal.winner_score = submission.score
                    deal.payout_address = submission.payout_address
                    break
        return deal
