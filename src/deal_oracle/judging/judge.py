"""
Submission Judges

The judge scores a submission that passed every gate. Two implementations:

- LLMJudge: one request to an OpenAI-compatible chat-completions endpoint,
  asking for a strict JSON verdict.
- FallbackJudge: used when no judging credential is configured. Scores 0 by
  default; an explicit opt-in switch makes it accept with a fixed 0.8.

Judge failures never raise. They become score-0 evaluations carrying an
identifying risk flag so one bad call cannot abort an evaluation batch.
"""

import json
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence
import httpx
import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaValidationError

from ..core.deal import Evaluation, EvaluationSource

logger = structlog.get_logger()

LLM_HTTP_ERROR = "llm_http_error"
LLM_EMPTY = "llm_empty"
LLM_BAD_JSON = "llm_bad_json"
NO_LLM_KEY = "no_llm_key"
DETERMINISTIC_FALLBACK = "deterministic_fallback"

DETERMINISTIC_ACCEPT_SCORE = 0.8

SYSTEM_PROMPT = "You are a careful evaluator. Output only JSON."

PROMPT_TEMPLATE = """You are the Deal Oracle.

Evaluate whether the SUBMISSION meets the REQUIREMENTS.

REQUIREMENTS:
{requirements}

SUBMISSION:
{submission_text}

PROOF LINKS (if any):
{proof_links}

Return ONLY valid JSON with this schema:
{{
  "score": number,
  "reasoning": string,
  "missing": string[],
  "risk_flags": string[]
}}

"score" is between 0.0 and 1.0. "risk_flags" may include e.g. "unclear", "no_proof", "spam", "unsafe".

Be strict: if proof is required and not present, score must be <= 0.5."""


class JudgeVerdict(BaseModel):
    """Schema the external judge must return."""
    score: float = Field(strict=True)
    reasoning: str = ""
    missing: List[str] = Field(default_factory=list)
    risk_flags: List[str] = Field(default_factory=list)


def clamp_score(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


def build_prompt(requirements: str, submission_text: str, proof_links: Sequence[str]) -> str:
    links = "\n".join(proof_links) if proof_links else "(none)"
    return PROMPT_TEMPLATE.format(
        requirements=requirements,
        submission_text=submission_text,
        proof_links=links,
    )


def extract_json(text: str) -> str:
    """Strip a ```json fence if the model wrapped its answer in one."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")[1:]
        body = []
        for line in lines:
            if line.strip() == "```":
                break
            body.append(line)
        cleaned = "\n".join(body).strip()
    return cleaned


def _failure(flag: str, reasoning: str, extra_flags: Optional[List[str]] = None) -> Evaluation:
    return Evaluation(
        score=0.0,
        reasoning=reasoning,
        missing=[],
        risk_flags=[flag] + (extra_flags or []),
        source=EvaluationSource.LLM,
    )


class Judge(ABC):
    """Scores a submission against deal requirements."""

    @abstractmethod
    def judge(
        self,
        requirements: str,
        submission_text: str,
        proof_links: Sequence[str],
    ) -> Evaluation:
        ...


class FallbackJudge(Judge):
    """Deterministic judge for when no scoring service is configured."""

    def __init__(self, allow_deterministic_accept: bool = False):
        self.allow_deterministic_accept = allow_deterministic_accept

    def judge(
        self,
        requirements: str,
        submission_text: str,
        proof_links: Sequence[str],
    ) -> Evaluation:
        if self.allow_deterministic_accept:
            return Evaluation(
                score=DETERMINISTIC_ACCEPT_SCORE,
                reasoning="Deterministic fallback (no judging credential configured).",
                missing=[],
                risk_flags=[NO_LLM_KEY, DETERMINISTIC_FALLBACK],
                source=EvaluationSource.FALLBACK,
            )
        return Evaluation(
            score=0.0,
            reasoning="Judging credential not set; cannot evaluate automatically.",
            missing=["LLM disabled"],
            risk_flags=[NO_LLM_KEY],
            source=EvaluationSource.FALLBACK,
        )


class LLMJudge(Judge):
    """Judge backed by an OpenAI-compatible chat-completions API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4.1-mini",
        timeout: float = 30.0,
        temperature: float = 0.1,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self._client = client or httpx.Client(timeout=timeout)

    def _request_body(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }

    def judge(
        self,
        requirements: str,
        submission_text: str,
        proof_links: Sequence[str],
    ) -> Evaluation:
        prompt = build_prompt(requirements, submission_text, proof_links)

        try:
            response = self._client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=self._request_body(prompt),
            )
        except httpx.HTTPError as e:
            logger.error("judge_http_error", error=str(e), model=self.model)
            return _failure(LLM_HTTP_ERROR, f"LLM request failed: {type(e).__name__}")

        if response.is_error:
            logger.error("judge_http_error", status_code=response.status_code, model=self.model)
            return _failure(LLM_HTTP_ERROR, f"LLM request failed: HTTP {response.status_code}")

        try:
            envelope = response.json()
        except ValueError:
            logger.warning("judge_bad_envelope", model=self.model)
            return _failure(LLM_BAD_JSON, "LLM response body was not JSON.")

        content = None
        try:
            content = envelope["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        if not content or not str(content).strip():
            logger.warning("judge_empty_content", model=self.model)
            return _failure(LLM_EMPTY, "LLM returned empty content.")

        return self._parse_verdict(str(content))

    def _parse_verdict(self, content: str) -> Evaluation:
        try:
            parsed = json.loads(extract_json(content))
            verdict = JudgeVerdict.model_validate(parsed)
            if math.isnan(verdict.score):
                raise ValueError("score is NaN")
        except (ValueError, SchemaValidationError):
            logger.warning("judge_bad_json", model=self.model, preview=content[:80])
            return _failure(LLM_BAD_JSON, f"LLM returned non-JSON: {content[:200]}")

        evaluation = Evaluation(
            score=clamp_score(verdict.score),
            reasoning=verdict.reasoning,
            missing=list(verdict.missing),
            risk_flags=list(verdict.risk_flags),
            source=EvaluationSource.LLM,
        )
        logger.info("judge_scored", model=self.model, score=evaluation.score)
        return evaluation

    def close(self) -> None:
        self._client.close()


def build_judge(
    api_key: Optional[str],
    allow_deterministic_accept: bool = False,
    base_url: str = "https://api.openai.com/v1",
    model: str = "gpt-4.1-mini",
    timeout: float = 30.0,
) -> Judge:
    """Pick the LLM judge when a credential is present, else the fallback."""
    if api_key:
        return LLMJudge(api_key=api_key, base_url=base_url, model=model, timeout=timeout)

    logger.warning(
        "judge_not_configured",
        deterministic_accept=allow_deterministic_accept,
    )
    return FallbackJudge(allow_deterministic_accept=allow_deterministic_accept)
