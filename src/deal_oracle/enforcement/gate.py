"""
Deterministic Submission Gate

Cheap, deterministic eligibility checks that run before any scoring:

1. Proof links present (when the deal requires them)
2. At least one official documentation link (when the deal requires it)
3. Bullet format matches the requirements template

A failing gate produces a terminal evaluation and the judge is never called.
Gates are evaluated in order and short-circuit on the first failure.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
import structlog

from ..core.deal import Deal, Evaluation, EvaluationSource, Submission, utc_now

logger = structlog.get_logger()

NO_PROOF = "no_proof"
FORMAT_MISMATCH = "format_mismatch"

# Score assigned when a gate fails.
NO_PROOF_SCORE = 0.0
FORMAT_MISMATCH_SCORE = 0.5


@dataclass
class GateConfig:
    """Tunable gate parameters."""
    allowed_doc_domains: Tuple[str, ...] = ("developers.circle.com", "circle.com")
    # Matches the default deal template (three bullet points).
    expected_bullets: int = 3
    bullet_marker: str = "-"


@dataclass
class GateResult:
    """Outcome of a single gate."""
    passed: bool
    flag: Optional[str] = None
    reason: str = ""
    missing: List[str] = field(default_factory=list)
    score: Optional[float] = None

    def to_evaluation(self, now: Optional[datetime] = None) -> Evaluation:
        return Evaluation(
            score=self.score if self.score is not None else 0.0,
            reasoning=self.reason,
            missing=list(self.missing),
            risk_flags=[self.flag] if self.flag else [],
            source=EvaluationSource.GATE,
            evaluated_at=now or utc_now(),
        )


def proof_links_gate(required: bool, links: Sequence[str]) -> GateResult:
    """Fail with no_proof when links are required but absent."""
    if required and not links:
        return GateResult(
            passed=False,
            flag=NO_PROOF,
            reason="Missing proof links (require_proof_links=true).",
            missing=["proof_links"],
            score=NO_PROOF_SCORE,
        )
    return GateResult(passed=True)


def official_docs_gate(
    required: bool,
    links: Sequence[str],
    allowed_domains: Sequence[str],
) -> GateResult:
    """
    Fail with no_proof unless some link mentions an allowed domain.

    This is a case-sensitive substring heuristic, not URL parsing.
    """
    if not required:
        return GateResult(passed=True)
    if any(domain in str(link) for link in links for domain in allowed_domains):
        return GateResult(passed=True)
    return GateResult(
        passed=False,
        flag=NO_PROOF,
        reason=(
            "Missing official docs link ("
            + " / ".join(allowed_domains)
            + ") in proof_links."
        ),
        missing=["proof_links"],
        score=NO_PROOF_SCORE,
    )


def count_bullets(text: Optional[str], marker: str = "-") -> int:
    """
    Count bullet lines above the payout_address / proof_links trailer.

    Section markers such as "- Include:" are not counted.
    """
    if not text:
        return 0
    section_re = re.compile(rf"^{re.escape(marker)}\s*include\b", re.IGNORECASE)
    count = 0
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith("payout_address:"):
            break
        if line.lower().startswith("proof_links:"):
            break
        if line.startswith(marker) and not section_re.match(line):
            count += 1
    return count


def format_gate(text: Optional[str], expected_bullets: int = 3, marker: str = "-") -> GateResult:
    """No bullets means no opinion; otherwise the count must match exactly."""
    bullets = count_bullets(text, marker)
    if bullets == 0 or bullets == expected_bullets:
        return GateResult(passed=True)
    return GateResult(
        passed=False,
        flag=FORMAT_MISMATCH,
        reason=f"Format mismatch: {bullets} bullets (expected exactly {expected_bullets}).",
        missing=["format"],
        score=FORMAT_MISMATCH_SCORE,
    )


class SubmissionGate:
    """
    Runs the gate policy for a submission against its deal.

    check() returns a terminal Evaluation when a gate fails, or None when the
    submission should be handed to the judge.
    """

    def __init__(self, config: Optional[GateConfig] = None):
        self.config = config or GateConfig()

    def run(self, deal: Deal, submission: Submission) -> GateResult:
        result = proof_links_gate(deal.require_proof_links, submission.proof_links)
        if not result.passed:
            return result

        result = official_docs_gate(
            deal.require_official_docs,
            submission.proof_links,
            self.config.allowed_doc_domains,
        )
        if not result.passed:
            return result

        return format_gate(
            submission.submission_text,
            self.config.expected_bullets,
            self.config.bullet_marker,
        )

    def check(
        self,
        deal: Deal,
        submission: Submission,
        now: Optional[datetime] = None,
    ) -> Optional[Evaluation]:
        result = self.run(deal, submission)
        if result.passed:
            return None

        logger.info(
            "submission_gated",
            deal_id=deal.deal_id,
            submission_id=submission.submission_id,
            flag=result.flag,
            score=result.score,
        )
        return result.to_evaluation(now)
