"""
DEAL ORACLE - Enforcement Module

The submission gate and the release gatekeeper: no payout before the window
closes, never for a disputed deal, never twice.
"""

from .gate import GateConfig, GateResult, SubmissionGate
from .release import ReleaseGatekeeper, ReleaseResult

__all__ = [
    "GateConfig",
    "GateResult",
    "SubmissionGate",
    "ReleaseGatekeeper",
    "ReleaseResult",
]
