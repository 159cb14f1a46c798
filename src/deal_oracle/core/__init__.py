"""
DEAL ORACLE - Core Module

Deal records, the status state machine, submission text parsing and ranking.
"""

from .deal import Deal, DealStatus, Evaluation, EvaluationSource, Submission
from .errors import (
    OracleError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    NoEvaluationsError,
    PayoutError,
    PaymentCollaboratorError,
)
from .ranking import Ranking, rank_submissions

__all__ = [
    "Deal",
    "DealStatus",
    "Evaluation",
    "EvaluationSource",
    "Submission",
    "OracleError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "NoEvaluationsError",
    "PayoutError",
    "PaymentCollaboratorError",
    "Ranking",
    "rank_submissions",
]
