"""
DEAL ORACLE - Judging Module
"""

from .judge import Judge, LLMJudge, FallbackJudge, build_judge

__all__ = ["Judge", "LLMJudge", "FallbackJudge", "build_judge"]
