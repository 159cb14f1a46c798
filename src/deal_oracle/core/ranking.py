"""
Submission Ranking

Total order over evaluated submissions:
    score desc -> submitted_at asc -> submission_id asc

The id comparison is plain lexicographic (code point) order, so two runs over
the same input always produce the same ranking.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .deal import Submission

TIE_BREAK_RULE = ("score desc", "submitted_at asc", "submission_id asc")


def rank_key(submission: Submission) -> Tuple[float, Any, str]:
    return (-submission.evaluation.score, submission.submitted_at, submission.submission_id)


@dataclass
class Ranking:
    """Ranked evaluated submissions and the threshold verdict for the winner."""
    ordered: List[Submission]
    accept_threshold: float

    @property
    def winner(self) -> Optional[Submission]:
        return self.ordered[0] if self.ordered else None

    @property
    def winner_score(self) -> Optional[float]:
        return self.winner.evaluation.score if self.winner else None

    @property
    def meets_threshold(self) -> bool:
        # Inclusive boundary.
        return self.winner is not None and self.winner.evaluation.score >= self.accept_threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tie_break_rule": list(TIE_BREAK_RULE),
            "accept_threshold": self.accept_threshold,
            "winner_submission_id": self.winner.submission_id if self.winner else None,
            "winner_score": self.winner_score,
            "winner_meets_threshold": self.meets_threshold,
            "submissions": [
                {
                    "submission_id": s.submission_id,
                    "submitted_at": s.submitted_at.isoformat(),
                    "payout_address": s.payout_address,
                    "score": s.evaluation.score,
                    "reasoning": s.evaluation.reasoning,
                    "risk_flags": list(s.evaluation.risk_flags),
                    "source": s.evaluation.source.value,
                }
                for s in self.ordered
            ],
        }


def rank_submissions(submissions: Sequence[Submission], accept_threshold: float) -> Ranking:
    """Rank every submission that carries an evaluation; others are ignored."""
    evaluated = [s for s in submissions if s.evaluation is not None]
    return Ranking(ordered=sorted(evaluated, key=rank_key), accept_threshold=accept_threshold)
