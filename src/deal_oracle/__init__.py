"""
DEAL ORACLE
Escrowed USDC deals released to the best verified submission

Submissions are gated deterministically, scored by a pluggable judge, ranked
with a fixed tie-break, and paid out once the challenge window has elapsed.
"""

from .config import OracleSettings, check_env
from .oracle import DealOracle, EvaluationReport, PayoutReceipt, Scoreboard, build_oracle

__version__ = "1.0.0"

__all__ = [
    "OracleSettings",
    "check_env",
    "DealOracle",
    "EvaluationReport",
    "PayoutReceipt",
    "Scoreboard",
    "build_oracle",
]
